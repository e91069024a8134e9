"""Command-line interface entry point for the exercise harvester."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys

from config import load_settings
from src.exercise_harvester.logging_utils import configure_logging, get_logger
from src.exercise_harvester.orchestrator import PipelineError, PipelineOrchestrator

STAGES = ("extract", "classify", "rewrite")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="exercise-harvester",
        description="Harvest exercise problems from a textbook PDF.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level (default comes from HARVEST_LOG_LEVEL).",
    )
    parser.add_argument("--show-settings", action="store_true", help="Print runtime settings and exit.")
    parser.add_argument("-i", "--input", help="Path to the PDF to process.")
    parser.add_argument(
        "--stages",
        default=",".join(STAGES),
        help="Comma-separated stages to run in order (extract,classify,rewrite).",
    )
    parser.add_argument(
        "-e",
        "--export",
        nargs="?",
        const="",
        default=None,
        help="Write the session export, optionally into the given directory.",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent requests per stage.")
    parser.add_argument("--top-k", type=int, default=None, help="Candidates offered per rewrite request.")
    parser.add_argument(
        "--min-confidence", type=float, default=None, help="Default confidence for unscored candidates."
    )
    parser.add_argument("--options-count", type=int, default=None, help="Options per multiple-choice item.")
    parser.add_argument(
        "--accept-all",
        action="store_true",
        help="Accept every converted rewrite into the problem bank.",
    )
    return parser.parse_args(argv)


def _parse_stages(raw: str) -> list[str] | None:
    stages = [part.strip().lower() for part in raw.split(",") if part.strip()]
    if not stages or any(stage not in STAGES for stage in stages):
        return None
    return stages


async def _run(orchestrator: PipelineOrchestrator, pdf_path: Path, stages: list[str]) -> None:
    logger = get_logger(__name__)
    if "extract" in stages:
        await orchestrator.extract_document(pdf_path)
    reports = []
    if "classify" in stages:
        reports.append(await orchestrator.run_classification())
    if "rewrite" in stages:
        reports.append(await orchestrator.run_rewrite())
    for report in reports:
        logger.info(
            "Stage %s: %s (total=%s, completed=%s, skipped=%s, errors=%s)%s",
            report.stage.value,
            report.status.value,
            report.total,
            report.completed,
            report.skipped,
            report.errors,
            f" {report.message}" if report.message else "",
        )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()

    if args.log_level:
        settings.log_level = args.log_level

    configure_logging(settings, force=True)
    logger = get_logger(__name__)
    logger.info("Exercise harvester CLI ready.")

    if args.show_settings:
        logger.info("Active settings: %s", settings.model_dump(exclude={"llm_api_key"}))
        if not args.input:
            return 0

    settings.ensure_directories()

    if not args.input:
        logger.error("No input PDF provided. Use --input to specify a file.")
        return 1

    stages = _parse_stages(args.stages)
    if stages is None:
        logger.error("Invalid --stages value '%s'. Choose from %s.", args.stages, ", ".join(STAGES))
        return 1
    if "extract" not in stages:
        logger.error("The extract stage is required when processing a PDF.")
        return 1

    pdf_path = Path(args.input)
    try:
        orchestrator = PipelineOrchestrator(settings)
        orchestrator.update_settings(
            concurrency=args.concurrency,
            top_k=args.top_k,
            min_confidence=args.min_confidence,
            options_count=args.options_count,
        )
        asyncio.run(_run(orchestrator, pdf_path, stages))
    except PipelineError as exc:
        logger.error("Pipeline failed: %s", exc)
        return 2

    if args.accept_all:
        records = orchestrator.accept_all()
        logger.info("Accepted %s problems into %s", len(records), orchestrator.problem_bank.path)

    if args.export is not None:
        export_path = orchestrator.export_session(Path(args.export) if args.export else None)
        logger.info("Session exported to %s", export_path)

    for stage, counts in orchestrator.stats().items():
        logger.info("Stats %s: %s", stage, counts)
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python
"""Inspect a PDF by segmenting its pages into text blocks."""

from __future__ import annotations

import argparse
import statistics
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import load_settings
from src.exercise_harvester.attachments import LocalAttachmentStore
from src.exercise_harvester.logging_utils import configure_logging, get_logger
from src.exercise_harvester.page_segmenter import ExtractionError, PageSegmenter


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect PDF text-block segmentation.")
    parser.add_argument("--input", type=Path, required=True, help="Path to the PDF file to inspect.")
    parser.add_argument("--dpi", type=int, default=None, help="Override the render DPI.")
    parser.add_argument(
        "--gap",
        type=float,
        default=None,
        help="Override the block gap threshold (pixels at the render DPI).",
    )
    parser.add_argument("--limit", type=int, default=5, help="Number of blocks to print.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = load_settings()
    if args.dpi:
        settings.pdf_render_dpi = args.dpi
    if args.gap is not None:
        settings.block_gap_threshold = args.gap

    configure_logging(settings, force=True)
    logger = get_logger("inspect_pdf")

    segmenter = PageSegmenter(settings, LocalAttachmentStore(settings.attachment_dir))
    try:
        meta, pages, blocks = segmenter.segment_document(args.input)
    except ExtractionError as exc:
        logger.error("Segmentation failed: %s", exc)
        return 1

    logger.info("Segmented %s pages of %s into %s blocks.", meta.page_count, meta.name, len(blocks))
    ocr_pages = sorted({block.page_number for block in blocks if block.requires_ocr})
    if ocr_pages:
        logger.info("Pages needing OCR: %s", ocr_pages)
    lengths = [block.text_length for block in blocks if not block.requires_ocr]
    if lengths:
        logger.info("Median block length: %.0f chars", statistics.median(lengths))

    for block in blocks[: args.limit]:
        snippet = block.text.splitlines()[0] if block.text else "<image>"
        logger.info(
            "%s (%s lines, y=%.0f): %s",
            block.id,
            block.line_count,
            block.rect.y,
            snippet,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""High-level orchestrator driving the extract, classify and rewrite stages."""

from __future__ import annotations

import asyncio
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from config import PipelineSettings, Settings, load_settings
from .attachments import LocalAttachmentStore
from .block_classifier import NO_CANDIDATES_REASON, BlockClassifier, NoExtractableText
from .candidate_rewriter import CandidateRewriter, NoEligibleCandidates, eligible_pool
from .llm_client import LLMClient, TextGenerator
from .logging_utils import get_logger
from .ocr_processor import OCRProcessor
from .page_segmenter import PageSegmenter
from .pipeline import (
    Block,
    BlockStatus,
    ItemResult,
    ProblemRecord,
    RewriteResult,
    RewriteStatus,
    Stage,
    StageReport,
    StageStatus,
)
from .problem_bank import ProblemBank
from .review import ReviewQueue
from .session import Session
from .session_exporter import ImportSource, SessionExporter
from .task_pool import run_bounded

logger = get_logger(__name__)

STALE = "stale"


class PipelineError(RuntimeError):
    """Top-level pipeline failure."""


class PipelineBusyError(PipelineError):
    """Raised when a run or reset is attempted while another run is in progress."""


class PipelineOrchestrator:
    """Run the batch import pipeline for one document session at a time."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        generator: Optional[TextGenerator] = None,
        segmenter: Optional[PageSegmenter] = None,
        ocr_processor: Optional[OCRProcessor] = None,
        classifier: Optional[BlockClassifier] = None,
        rewriter: Optional[CandidateRewriter] = None,
        attachments: Optional[LocalAttachmentStore] = None,
        problem_bank: Optional[ProblemBank] = None,
        exporter: Optional[SessionExporter] = None,
    ):
        self.settings = settings or load_settings()
        self.settings.ensure_directories()

        if generator is None and self.settings.llm_configured:
            generator = LLMClient(self.settings)
        self.generator = generator

        self.attachments = attachments or LocalAttachmentStore(self.settings.attachment_dir)
        self.segmenter = segmenter or PageSegmenter(self.settings, self.attachments)
        self.ocr_processor = ocr_processor or OCRProcessor(self.settings, generator=self.generator)
        self.classifier = classifier
        if self.classifier is None and self.generator is not None:
            self.classifier = BlockClassifier(
                self.settings, self.generator, self.ocr_processor, self.attachments
            )
        self.rewriter = rewriter
        if self.rewriter is None and self.generator is not None:
            translator = self.generator if self.settings.translate_output else None
            self.rewriter = CandidateRewriter(self.settings, self.generator, translator=translator)

        self.problem_bank = problem_bank or ProblemBank(self.settings)
        self.exporter = exporter or SessionExporter(self.settings)
        self.pipeline_settings: PipelineSettings = self.settings.pipeline_settings()
        self.session = Session()
        self.review = ReviewQueue(self.session, self.problem_bank)

    @property
    def busy(self) -> bool:
        return self.session.busy

    def update_settings(self, **changes: Any) -> PipelineSettings:
        """Adjust pipeline settings; in-flight tasks see the new values at use time."""
        for name, value in changes.items():
            if value is None:
                continue
            if name not in PipelineSettings.model_fields:
                raise ValueError(f"Unknown pipeline setting '{name}'")
            setattr(self.pipeline_settings, name, value)
        return self.pipeline_settings

    async def extract_document(self, pdf_path: Path) -> StageReport:
        """
        Segment ``pdf_path`` into pages and blocks, replacing the session content.

        Raises:
            PipelineBusyError: if another run is active.
            PipelineError: if the document cannot be segmented; no pages are kept.
        """
        generation = self._begin()
        self.session.set_stage(Stage.COARSE, StageStatus.PROCESSING)
        logger.info("Starting extraction for %s", pdf_path)
        start = time.perf_counter()
        try:
            meta, pages, blocks = await asyncio.to_thread(self.segmenter.segment_document, Path(pdf_path))
        except Exception as exc:  # pylint: disable=broad-except
            if self._current(generation):
                self.session.clear()
                self.session.set_stage(Stage.COARSE, StageStatus.ERROR, str(exc))
            logger.error("Extraction failed for %s: %s", pdf_path, exc)
            raise PipelineError(str(exc)) from exc
        finally:
            self._finish(generation)

        if not self._current(generation):
            return StageReport(stage=Stage.COARSE, status=StageStatus.IDLE, message="discarded after reset")

        self.session.load_document(meta, pages, blocks)
        self.session.set_stage(Stage.COARSE, StageStatus.COMPLETED)
        logger.info(
            "Extraction finished in %.2fs (%s pages, %s blocks)",
            time.perf_counter() - start,
            len(pages),
            len(blocks),
        )
        return StageReport(
            stage=Stage.COARSE,
            status=StageStatus.COMPLETED,
            total=len(blocks),
            completed=len(blocks),
        )

    async def extract_bytes(self, data: bytes, filename: str = "upload.pdf") -> StageReport:
        """Extract an uploaded PDF provided as bytes."""
        name = Path(filename).name or "upload.pdf"
        with tempfile.TemporaryDirectory(dir=self.settings.temp_dir) as temp_dir:
            temp_path = Path(temp_dir) / name
            temp_path.write_bytes(data)
            return await self.extract_document(temp_path)

    async def run_classification(self) -> StageReport:
        """Classify every block whose status is pending or error."""
        classifier = self._require(self.classifier, "classification")
        targets = [
            block
            for block in self.session.blocks.values()
            if block.status in (BlockStatus.PENDING, BlockStatus.ERROR)
        ]
        generation = self._begin()
        try:
            if not targets:
                return self._nothing_to_do(Stage.DETAILED, "No blocks awaiting classification")

            self.session.set_stage(Stage.DETAILED, StageStatus.PROCESSING)
            logger.info("Classifying %s blocks", len(targets))

            async def task(block: Block, _index: int) -> ItemResult:
                if not self._current(generation):
                    return ItemResult(block.id, STALE, applied=False)
                block.status = BlockStatus.PROCESSING
                try:
                    recovered = await classifier.recover_text(block)
                    if not self._current(generation):
                        return ItemResult(block.id, STALE, applied=False)
                    if recovered is not None:
                        block.text = recovered
                        block.extracted_text = recovered
                        block.text_length = len(recovered)
                        block.requires_ocr = False
                    candidates = await classifier.classify_block(block, self.pipeline_settings.min_confidence)
                except NoExtractableText as exc:
                    if not self._current(generation):
                        return ItemResult(block.id, STALE, applied=False)
                    block.status = BlockStatus.SKIPPED
                    block.skip_reason = str(exc)
                    return ItemResult(block.id, block.status.value, str(exc))
                except Exception as exc:  # pylint: disable=broad-except
                    if not self._current(generation):
                        return ItemResult(block.id, STALE, applied=False)
                    logger.warning("Classification failed for block %s: %s", block.id, exc)
                    block.status = BlockStatus.ERROR
                    block.error_message = str(exc)
                    return ItemResult(block.id, block.status.value, str(exc))

                if not self._current(generation):
                    return ItemResult(block.id, STALE, applied=False)
                self.session.replace_candidates(block.id, candidates)
                block.error_message = None
                if candidates:
                    block.status = BlockStatus.COMPLETED
                    block.skip_reason = None
                else:
                    block.status = BlockStatus.SKIPPED
                    block.skip_reason = NO_CANDIDATES_REASON
                return ItemResult(block.id, block.status.value, block.skip_reason)

            results = await run_bounded(targets, self.pipeline_settings.concurrency, task)
            return self._aggregate(Stage.DETAILED, results, generation)
        finally:
            self._finish(generation)

    async def run_rewrite(self) -> StageReport:
        """Rewrite blocks with eligible candidates whose rewrite is absent, pending or errored."""
        rewriter = self._require(self.rewriter, "rewrite")
        targets = self.rewrite_targets()
        generation = self._begin()
        try:
            if not targets:
                return self._nothing_to_do(Stage.REWRITE, "No blocks with eligible candidates to rewrite")

            self.session.set_stage(Stage.REWRITE, StageStatus.PROCESSING)
            logger.info("Rewriting %s blocks", len(targets))

            async def task(block: Block, _index: int) -> ItemResult:
                if not self._current(generation):
                    return ItemResult(block.id, STALE, applied=False)
                candidates = self.session.candidates_for(block.id)
                try:
                    pool_ids = [c.id for c in eligible_pool(candidates, self.pipeline_settings.top_k)]
                except NoEligibleCandidates:
                    pool_ids = []
                self.session.upsert_rewrite(
                    RewriteResult(
                        id=block.id,
                        block_id=block.id,
                        page_id=block.page_id,
                        candidate_ids=pool_ids,
                        status=RewriteStatus.PROCESSING,
                    )
                )
                try:
                    outcome = await rewriter.rewrite_block(block, candidates, self.pipeline_settings)
                except Exception as exc:  # pylint: disable=broad-except
                    if not self._current(generation):
                        return ItemResult(block.id, STALE, applied=False)
                    logger.warning("Rewrite failed for block %s: %s", block.id, exc)
                    self.session.upsert_rewrite(
                        RewriteResult(
                            id=block.id,
                            block_id=block.id,
                            page_id=block.page_id,
                            candidate_ids=pool_ids,
                            status=RewriteStatus.ERROR,
                            message=str(exc),
                        )
                    )
                    return ItemResult(block.id, RewriteStatus.ERROR.value, str(exc))

                if not self._current(generation):
                    return ItemResult(block.id, STALE, applied=False)
                if outcome.status == RewriteStatus.ERROR:
                    logger.warning("Rewrite of block %s rejected: %s", block.id, outcome.message)
                self.session.upsert_rewrite(
                    RewriteResult(
                        id=block.id,
                        block_id=block.id,
                        page_id=block.page_id,
                        candidate_ids=outcome.candidate_ids or pool_ids,
                        chosen_candidate_id=outcome.chosen_candidate_id,
                        status=outcome.status,
                        patch=outcome.patch,
                        raw_response=outcome.raw_response,
                        reason=outcome.reason,
                        message=outcome.message,
                        quality_report=outcome.quality_report,
                    )
                )
                return ItemResult(block.id, outcome.status.value, outcome.message or outcome.reason)

            results = await run_bounded(targets, self.pipeline_settings.concurrency, task)
            return self._aggregate(Stage.REWRITE, results, generation)
        finally:
            self._finish(generation)

    def rewrite_targets(self) -> List[Block]:
        targets: List[Block] = []
        for block in self.session.blocks.values():
            existing = self.session.rewrites.get(block.id)
            if existing is not None and existing.status not in (RewriteStatus.PENDING, RewriteStatus.ERROR):
                continue
            try:
                eligible_pool(self.session.candidates_for(block.id), self.pipeline_settings.top_k)
            except NoEligibleCandidates:
                continue
            targets.append(block)
        return targets

    async def run_all(self, pdf_path: Path) -> List[StageReport]:
        """Extract, classify and rewrite ``pdf_path`` in sequence."""
        reports = [await self.extract_document(pdf_path)]
        reports.append(await self.run_classification())
        reports.append(await self.run_rewrite())
        return reports

    def reset(self, *, force: bool = False) -> None:
        """
        Discard the session content and restore the configured pipeline settings.

        Raises:
            PipelineBusyError: if a run is active and ``force`` is not set.
        """
        if self.session.busy:
            if not force:
                raise PipelineBusyError("Pipeline is busy; reset with force to discard the active run")
            self.session.generation += 1
            self.session.busy = False
            logger.warning("Forced reset; results of the active run will be discarded")
        self.session.clear()
        self.pipeline_settings = self.settings.pipeline_settings()
        logger.info("Session reset")

    def import_candidates(self, source: ImportSource) -> int:
        self._ensure_idle()
        count = self.exporter.import_candidates(self.session, source)
        if count:
            self.session.set_stage(Stage.DETAILED, StageStatus.COMPLETED)
        return count

    def import_rewrites(self, source: ImportSource) -> int:
        self._ensure_idle()
        count = self.exporter.import_rewrites(self.session, source)
        if count:
            self.session.set_stage(Stage.REWRITE, StageStatus.COMPLETED)
        return count

    def export_session(self, output_dir: Optional[Path] = None) -> Path:
        return self.exporter.export_session(self.session, output_dir)

    def accept_all(self) -> List[ProblemRecord]:
        """Accept every converted, not yet accepted rewrite into the problem bank."""
        records: List[ProblemRecord] = []
        for index, item in enumerate(self.session.reviewable()):
            if item.status != RewriteStatus.CONVERTED or item.accepted:
                continue
            self.review.move(index)
            records.append(self.review.accept())
        return records

    def stats(self) -> Dict[str, Dict[str, int]]:
        return self.session.stats()

    def _begin(self) -> int:
        self._ensure_idle()
        self.session.busy = True
        return self.session.generation

    def _finish(self, generation: int) -> None:
        if self._current(generation):
            self.session.busy = False

    def _current(self, generation: int) -> bool:
        return self.session.generation == generation

    def _ensure_idle(self) -> None:
        if self.session.busy:
            raise PipelineBusyError("Another pipeline run is in progress")

    def _require(self, component, stage: str):
        if component is None:
            raise PipelineError(
                f"Cannot run {stage}: configure HARVEST_LLM_API_KEY and HARVEST_LLM_MODEL"
            )
        return component

    def _nothing_to_do(self, stage: Stage, message: str) -> StageReport:
        self.session.stage_messages[stage] = message
        logger.info(message)
        return StageReport(stage=stage, status=self.session.stage_status[stage], message=message)

    def _aggregate(self, stage: Stage, results: Sequence[ItemResult], generation: int) -> StageReport:
        if not self._current(generation):
            return StageReport(stage=stage, status=StageStatus.IDLE, message="discarded after reset")

        total = len(results)
        completed = sum(1 for result in results if result.status in ("completed", "converted"))
        skipped = sum(1 for result in results if result.status == "skipped")
        errors = sum(1 for result in results if result.status == "error")
        status = StageStatus.ERROR if errors else StageStatus.COMPLETED
        message = f"{errors} of {total} items failed" if errors else None
        self.session.set_stage(stage, status, message)
        logger.info(
            "Stage %s finished: %s completed, %s skipped, %s errors",
            stage.value,
            completed,
            skipped,
            errors,
        )
        return StageReport(
            stage=stage,
            status=status,
            total=total,
            completed=completed,
            skipped=skipped,
            errors=errors,
            message=message,
            items=list(results),
        )

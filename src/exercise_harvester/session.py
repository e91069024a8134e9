"""In-memory state of one batch import session."""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .logging_utils import get_logger
from .pipeline import (
    Block,
    BlockStatus,
    Candidate,
    DocumentMeta,
    Page,
    Rect,
    RewriteResult,
    RewriteStatus,
    Stage,
    StageStatus,
)

logger = get_logger(__name__)


class Session:
    """
    Id-indexed, insertion-ordered collections for one document.

    All mutation happens on the event loop thread, so no locking is needed.
    ``generation`` is bumped by a forced reset; stage tasks compare it against
    the value captured when their run started before applying any result.
    """

    def __init__(self) -> None:
        self.generation = 0
        self.busy = False
        self._reset_content()

    def _reset_content(self) -> None:
        self.document: Optional[DocumentMeta] = None
        self.pages: Dict[str, Page] = {}
        self.blocks: Dict[str, Block] = {}
        self.candidates: Dict[str, Candidate] = {}
        self.candidates_by_block: Dict[str, List[str]] = {}
        self.rewrites: Dict[str, RewriteResult] = {}
        self.stage_status: Dict[Stage, StageStatus] = {stage: StageStatus.IDLE for stage in Stage}
        self.stage_messages: Dict[Stage, Optional[str]] = {stage: None for stage in Stage}
        self.review_cursor = 0
        self.last_error: Optional[str] = None

    def clear(self) -> None:
        self._reset_content()

    def load_document(self, meta: DocumentMeta, pages: Iterable[Page], blocks: Iterable[Block]) -> None:
        """Replace all session content with a freshly segmented document."""
        self._reset_content()
        self.document = meta
        self.pages = {page.id: page for page in pages}
        self.blocks = {block.id: block for block in blocks}

    def set_stage(self, stage: Stage, status: StageStatus, message: Optional[str] = None) -> None:
        self.stage_status[stage] = status
        self.stage_messages[stage] = message
        if status == StageStatus.ERROR and message:
            self.last_error = message

    def candidates_for(self, block_id: str) -> List[Candidate]:
        return [self.candidates[candidate_id] for candidate_id in self.candidates_by_block.get(block_id, [])]

    def replace_candidates(self, block_id: str, candidates: Iterable[Candidate]) -> None:
        """Swap a block's candidates wholesale and drop its now-stale rewrite."""
        for candidate_id in self.candidates_by_block.pop(block_id, []):
            self.candidates.pop(candidate_id, None)
        new_ids: List[str] = []
        for candidate in candidates:
            self.candidates[candidate.id] = candidate
            new_ids.append(candidate.id)
        if new_ids:
            self.candidates_by_block[block_id] = new_ids
        if self.rewrites.pop(block_id, None) is not None:
            logger.debug("Dropped rewrite of block %s after reclassification", block_id)

    def ensure_block(self, block_id: str, page_id: str, page_number: int) -> Block:
        """Return ``block_id``, creating a placeholder block when it is unknown."""
        block = self.blocks.get(block_id)
        if block is None:
            block = Block(
                id=block_id,
                page_id=page_id,
                page_number=page_number,
                index=len(self.blocks),
                rect=Rect(0.0, 0.0, 0.0, 0.0),
                text="",
                line_count=0,
                text_length=0,
                status=BlockStatus.COMPLETED,
            )
            self.blocks[block_id] = block
        return block

    def upsert_rewrite(self, result: RewriteResult) -> RewriteResult:
        """Create or merge the rewrite of a block, keeping its position and creation time."""
        existing = self.rewrites.get(result.id)
        if existing is not None:
            result = replace(result, created_at=existing.created_at)
            if result.problem_id is None:
                result.problem_id = existing.problem_id
        self.rewrites[result.id] = result
        return result

    def reviewable(self) -> List[RewriteResult]:
        return [result for result in self.rewrites.values() if result.status != RewriteStatus.SKIPPED]

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Per-stage counts of the items currently held."""
        blocks = list(self.blocks.values())
        rewrites = list(self.rewrites.values())
        return {
            Stage.COARSE.value: {
                "pages": len(self.pages),
                "blocks": len(blocks),
                "requires_ocr": sum(1 for block in blocks if block.requires_ocr),
            },
            Stage.DETAILED.value: {
                "total": len(blocks),
                "pending": _count(blocks, BlockStatus.PENDING),
                "processing": _count(blocks, BlockStatus.PROCESSING),
                "completed": _count(blocks, BlockStatus.COMPLETED),
                "skipped": _count(blocks, BlockStatus.SKIPPED),
                "errors": _count(blocks, BlockStatus.ERROR),
                "candidates": len(self.candidates),
            },
            Stage.REWRITE.value: {
                "total": len(rewrites),
                "processing": _count(rewrites, RewriteStatus.PROCESSING),
                "converted": _count(rewrites, RewriteStatus.CONVERTED),
                "skipped": _count(rewrites, RewriteStatus.SKIPPED),
                "errors": _count(rewrites, RewriteStatus.ERROR),
                "accepted": sum(1 for result in rewrites if result.accepted),
            },
        }


def _count(items: Iterable, status) -> int:
    return sum(1 for item in items if item.status == status)

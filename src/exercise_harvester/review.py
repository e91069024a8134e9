"""Reviewer overlay over the rewrite results of a session."""

from __future__ import annotations

from typing import Optional

from .logging_utils import get_logger
from .pipeline import ProblemRecord, RewriteResult, RewriteStatus
from .problem_bank import ProblemBank
from .session import Session

logger = get_logger(__name__)

MANUAL_SKIP_REASON = "skipped by reviewer"


class ReviewError(RuntimeError):
    """Raised when a review action is not valid for the current item."""


class NothingToReview(ReviewError):
    """Raised when the reviewable list is empty."""


class ReviewQueue:
    """Cursor over non-skipped rewrites in stable creation order."""

    def __init__(self, session: Session, problem_bank: ProblemBank):
        self.session = session
        self.problem_bank = problem_bank

    @property
    def cursor(self) -> int:
        return self.session.review_cursor

    def __len__(self) -> int:
        return len(self.session.reviewable())

    def current(self) -> Optional[RewriteResult]:
        items = self.session.reviewable()
        if not items:
            return None
        self.session.review_cursor = _clamp(self.session.review_cursor, len(items))
        return items[self.session.review_cursor]

    def move(self, index: int) -> Optional[RewriteResult]:
        """Move the cursor to ``index``, clamped to the reviewable bounds."""
        self.session.review_cursor = _clamp(index, len(self.session.reviewable()))
        return self.current()

    def accept(self) -> ProblemRecord:
        """
        Materialize the current converted rewrite into the problem bank.

        Re-accepting the same rewrite updates its existing record.

        Raises:
            NothingToReview: if there is no current item.
            ReviewError: if the current item is not converted or has no patch.
        """
        item = self._require_current()
        if item.status != RewriteStatus.CONVERTED or item.patch is None:
            raise ReviewError(f"Rewrite {item.id} is not converted and cannot be accepted")

        document = self.session.document
        patch = item.patch
        record = ProblemRecord(
            id=item.problem_id or self.problem_bank.next_id(),
            question=patch.question,
            question_type=patch.question_type,
            options=list(patch.options),
            answer=patch.answer,
            subfield=patch.subfield,
            academic_level=patch.academic_level,
            difficulty=patch.difficulty,
            source=f"{document.name} (Batch Import)" if document else "Batch Import",
            image="",
            image_dependency=0,
        )
        self.problem_bank.upsert(record)
        item.accepted = True
        item.problem_id = record.id

        if self.session.review_cursor + 1 < len(self):
            self.session.review_cursor += 1
        logger.info("Accepted rewrite %s as problem %s", item.id, record.id)
        return record

    def skip(self, reason: Optional[str] = None) -> RewriteResult:
        """Mark the current item skipped; the cursor is clamped to the shorter list."""
        item = self._require_current()
        item.status = RewriteStatus.SKIPPED
        item.reason = reason or MANUAL_SKIP_REASON
        self.session.review_cursor = _clamp(self.session.review_cursor, len(self))
        logger.info("Skipped rewrite %s", item.id)
        return item

    def _require_current(self) -> RewriteResult:
        item = self.current()
        if item is None:
            raise NothingToReview("No rewrite results to review")
        return item


def _clamp(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(int(index), length - 1))

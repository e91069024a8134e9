"""Tests for the session collections, reviewer overlay and problem bank."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from config import Settings
from src.exercise_harvester.pipeline import (
    Block,
    Candidate,
    DocumentMeta,
    ProblemPatch,
    Rect,
    RewriteResult,
    RewriteStatus,
)
from src.exercise_harvester.problem_bank import ProblemBank
from src.exercise_harvester.review import NothingToReview, ReviewError, ReviewQueue
from src.exercise_harvester.session import Session


def _patch(question: str = "What is 2 + 2?") -> ProblemPatch:
    return ProblemPatch(
        question_type="Multiple Choice",
        question=question,
        options=["3", "4", "5", "6"],
        answer="B",
        subfield="Algebra",
        academic_level="K12",
        difficulty="1",
    )


def _rewrite(block_id: str, status: RewriteStatus = RewriteStatus.CONVERTED, **overrides) -> RewriteResult:
    values = dict(
        id=block_id,
        block_id=block_id,
        page_id="doc-p1",
        candidate_ids=[f"{block_id}-q1"],
        chosen_candidate_id=f"{block_id}-q1" if status == RewriteStatus.CONVERTED else None,
        status=status,
        patch=_patch(f"Question for {block_id}") if status == RewriteStatus.CONVERTED else None,
    )
    values.update(overrides)
    return RewriteResult(**values)


def _candidate(block_id: str, n: int) -> Candidate:
    return Candidate(
        id=f"{block_id}-q{n}",
        block_id=block_id,
        page_id="doc-p1",
        page_number=1,
        index=n - 1,
        text="Solve it.",
        classification="exercise",
        has_image=False,
        confidence=0.5,
    )


def _queue(tmp_path: Path, *rewrites: RewriteResult) -> ReviewQueue:
    session = Session()
    session.document = DocumentMeta(name="algebra.pdf", page_count=1)
    for rewrite in rewrites:
        session.upsert_rewrite(rewrite)
    settings = Settings(data_dir=tmp_path / "data", output_dir=tmp_path / "outputs")
    return ReviewQueue(session, ProblemBank(settings))


def test_reviewable_excludes_skipped_in_creation_order(tmp_path):
    queue = _queue(
        tmp_path,
        _rewrite("b0"),
        _rewrite("b1", RewriteStatus.SKIPPED),
        _rewrite("b2", RewriteStatus.ERROR),
    )
    assert [item.id for item in queue.session.reviewable()] == ["b0", "b2"]


def test_upsert_keeps_position_and_created_at():
    session = Session()
    first = session.upsert_rewrite(_rewrite("b0", RewriteStatus.PROCESSING, created_at=1.0))
    session.upsert_rewrite(_rewrite("b1", created_at=2.0))
    updated = session.upsert_rewrite(_rewrite("b0", created_at=99.0))

    assert list(session.rewrites) == ["b0", "b1"]
    assert updated.created_at == first.created_at == 1.0
    assert session.rewrites["b0"].status == RewriteStatus.CONVERTED


def test_replace_candidates_drops_stale_rewrite():
    session = Session()
    session.replace_candidates("b0", [_candidate("b0", 1), _candidate("b0", 2)])
    session.upsert_rewrite(_rewrite("b0"))

    session.replace_candidates("b0", [_candidate("b0", 1)])

    assert [candidate.id for candidate in session.candidates_for("b0")] == ["b0-q1"]
    assert "b0-q2" not in session.candidates
    assert "b0" not in session.rewrites


def test_move_clamps_cursor(tmp_path):
    queue = _queue(tmp_path, _rewrite("b0"), _rewrite("b1"), _rewrite("b2"))

    assert queue.move(10).id == "b2"
    assert queue.cursor == 2
    assert queue.move(-4).id == "b0"
    assert queue.cursor == 0


def test_skip_last_item_clamps_cursor(tmp_path):
    queue = _queue(tmp_path, _rewrite("b0"), _rewrite("b1"), _rewrite("b2"))
    queue.move(2)

    skipped = queue.skip()

    assert skipped.status == RewriteStatus.SKIPPED
    assert skipped.reason == "skipped by reviewer"
    assert queue.cursor == 1
    assert queue.current().id == "b1"
    assert len(queue) == 2


def test_accept_writes_problem_and_advances(tmp_path):
    queue = _queue(tmp_path, _rewrite("b0"), _rewrite("b1"))

    record = queue.accept()

    assert record.source == "algebra.pdf (Batch Import)"
    assert record.question == "Question for b0"
    assert record.image == "" and record.image_dependency == 0
    rewrite = queue.session.rewrites["b0"]
    assert rewrite.accepted is True
    assert rewrite.problem_id == record.id
    assert queue.cursor == 1

    stored = json.loads(queue.problem_bank.path.read_text(encoding="utf-8"))
    assert [item["id"] for item in stored["problems"]] == [record.id]


def test_accept_on_last_item_keeps_cursor(tmp_path):
    queue = _queue(tmp_path, _rewrite("b0"))
    queue.accept()
    assert queue.cursor == 0


def test_reaccept_reuses_problem_id(tmp_path):
    queue = _queue(tmp_path, _rewrite("b0"))
    first = queue.accept()
    queue.session.rewrites["b0"].patch.question = "Edited question"

    second = queue.accept()

    assert second.id == first.id
    problems = queue.problem_bank.load()
    assert len(problems) == 1
    assert problems[0].question == "Edited question"


def test_accept_requires_converted_item(tmp_path):
    queue = _queue(tmp_path, _rewrite("b0", RewriteStatus.ERROR, message="payload missing"))
    with pytest.raises(ReviewError):
        queue.accept()
    assert queue.session.rewrites["b0"].accepted is False


def test_empty_queue_raises_nothing_to_review(tmp_path):
    queue = _queue(tmp_path)
    assert queue.current() is None
    with pytest.raises(NothingToReview):
        queue.accept()
    with pytest.raises(NothingToReview):
        queue.skip("irrelevant")


def test_problem_bank_upsert_and_next_id(tmp_path):
    settings = Settings(data_dir=tmp_path / "data", output_dir=tmp_path / "outputs")
    bank = ProblemBank(settings)
    assert bank.load() == []
    assert bank.next_id() == "1"

    queue = _queue(tmp_path, _rewrite("b0"), _rewrite("b1"))
    queue.accept()
    queue.accept()

    assert [record.id for record in bank.load()] == ["1", "2"]
    assert bank.get("2").question == "Question for b1"
    assert bank.next_id() == "3"


def test_stats_count_stage_items():
    session = Session()
    session.blocks["b0"] = Block(
        id="b0", page_id="p", page_number=1, index=0, rect=Rect(0, 0, 1, 1),
        text="", line_count=0, text_length=0, requires_ocr=True,
    )
    session.upsert_rewrite(_rewrite("b0"))
    session.upsert_rewrite(_rewrite("b1", RewriteStatus.ERROR))

    stats = session.stats()

    assert stats["coarse"]["blocks"] == 1
    assert stats["coarse"]["requires_ocr"] == 1
    assert stats["detailed"]["pending"] == 1
    assert stats["rewrite"]["converted"] == 1
    assert stats["rewrite"]["errors"] == 1

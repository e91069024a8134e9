"""Tests for session export and candidate/rewrite import."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from config import Settings
from src.exercise_harvester.pipeline import (
    Block,
    BlockStatus,
    Candidate,
    DocumentMeta,
    Page,
    ProblemPatch,
    Rect,
    RewriteResult,
    RewriteStatus,
    Stage,
    StageStatus,
)
from src.exercise_harvester.session import Session
from src.exercise_harvester.session_exporter import ImportFormatError, SessionExporter


def _settings(tmp_path: Path, **overrides) -> Settings:
    return Settings(data_dir=tmp_path / "data", output_dir=tmp_path / "outputs", **overrides)


def _session() -> Session:
    session = Session()
    page = Page(id="doc-p1", page_number=1, width=1224, height=1584, rotation=0, render_dpi=144)
    block = Block(
        id="doc-p1-b0",
        page_id="doc-p1",
        page_number=1,
        index=0,
        rect=Rect(10, 20, 300, 40),
        text="1. Solve x + 1 = 2.",
        line_count=1,
        text_length=19,
        status=BlockStatus.COMPLETED,
    )
    session.load_document(DocumentMeta(name="algebra.pdf", page_count=1, fingerprint="doc"), [page], [block])
    session.replace_candidates(
        "doc-p1-b0",
        [
            Candidate(
                id="doc-p1-b0-q1",
                block_id="doc-p1-b0",
                page_id="doc-p1",
                page_number=1,
                index=0,
                text="Solve x + 1 = 2.",
                classification="exercise",
                has_image=False,
                confidence=0.8,
            )
        ],
    )
    session.upsert_rewrite(
        RewriteResult(
            id="doc-p1-b0",
            block_id="doc-p1-b0",
            page_id="doc-p1",
            candidate_ids=["doc-p1-b0-q1"],
            chosen_candidate_id="doc-p1-b0-q1",
            status=RewriteStatus.CONVERTED,
            patch=ProblemPatch(
                question_type="Multiple Choice",
                question="Solve x + 1 = 2.",
                options=["0", "1", "2", "3"],
                answer="B",
                subfield="Algebra",
                academic_level="K12",
                difficulty="1",
            ),
            created_at=10.0,
        )
    )
    session.set_stage(Stage.COARSE, StageStatus.COMPLETED)
    return session


def test_session_payload_is_plain_data(tmp_path):
    payload = SessionExporter(_settings(tmp_path)).session_payload(_session())

    assert payload["document"]["name"] == "algebra.pdf"
    assert payload["stage_status"]["coarse"] == "completed"
    assert payload["blocks"][0]["status"] == "completed"
    assert payload["blocks"][0]["rect"] == {"x": 10, "y": 20, "width": 300, "height": 40}
    assert payload["rewrites"][0]["patch"]["answer"] == "B"
    assert payload["stats"]["rewrite"]["converted"] == 1
    json.dumps(payload)


def test_export_session_writes_json(tmp_path):
    path = SessionExporter(_settings(tmp_path)).export_session(_session())

    assert path.suffix == ".json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["candidates"][0]["id"] == "doc-p1-b0-q1"


def test_export_session_writes_yaml(tmp_path):
    path = SessionExporter(_settings(tmp_path, export_format="yaml")).export_session(_session())

    assert path.suffix == ".yaml"
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["rewrites"][0]["status"] == "converted"


def test_unknown_export_format_falls_back_to_json(tmp_path, caplog):
    path = SessionExporter(_settings(tmp_path, export_format="xml")).export_session(_session())
    assert path.suffix == ".json"
    assert any("Unsupported export format" in record.message for record in caplog.records)


def test_candidates_round_trip_seeds_fresh_session(tmp_path):
    exporter = SessionExporter(_settings(tmp_path))
    exported = json.dumps(exporter.candidates_payload(_session()))

    fresh = Session()
    count = exporter.import_candidates(fresh, exported)

    assert count == 1
    block = fresh.blocks["doc-p1-b0"]
    assert block.status == BlockStatus.COMPLETED
    assert [candidate.id for candidate in fresh.candidates_for("doc-p1-b0")] == ["doc-p1-b0-q1"]
    assert fresh.candidates["doc-p1-b0-q1"].confidence == 0.8


def test_import_candidates_accepts_camel_case_list(tmp_path):
    session = Session()
    entries = [
        {"blockId": "x-p2-b1", "pageId": "x-p2", "pageNumber": 2, "rawText": "Find y.", "hasImage": True, "confidence": 3},
        {"blockId": "x-p2-b1", "text": "Find z.", "skipReason": "dup"},
    ]

    count = SessionExporter(_settings(tmp_path)).import_candidates(session, entries)

    assert count == 2
    first, second = session.candidates_for("x-p2-b1")
    assert first.id == "x-p2-b1-q1" and first.has_image is True and first.confidence == 1.0
    assert second.id == "x-p2-b1-q2" and second.skip_reason == "dup"
    assert session.blocks["x-p2-b1"].page_number == 2


def test_import_rewrites_filters_unknown_candidates(tmp_path):
    session = _session()
    document = {
        "rewrites": [
            {
                "id": "doc-p1-b0",
                "blockId": "doc-p1-b0",
                "pageId": "doc-p1",
                "candidateIds": ["doc-p1-b0-q1", "ghost-q7"],
                "chosenCandidateId": "ghost-q7",
                "status": "processing",
                "createdAt": 5,
                "editedProblemId": "17",
                "patch": {"questionType": "Multiple Choice", "question": "Q", "options": ["a", "b"], "answer": "A"},
            }
        ]
    }

    count = SessionExporter(_settings(tmp_path)).import_rewrites(session, document)

    assert count == 1
    result = session.rewrites["doc-p1-b0"]
    assert result.candidate_ids == ["doc-p1-b0-q1"]
    assert result.chosen_candidate_id is None
    assert result.status == RewriteStatus.PENDING
    assert result.problem_id == "17"
    assert result.patch.options == ["a", "b"]
    # The existing rewrite keeps its creation time.
    assert result.created_at == 10.0


@pytest.mark.parametrize(
    "document",
    [
        "not json: [",
        {"something": []},
        [1, 2],
        [{"text": "no block"}],
    ],
)
def test_import_candidates_rejects_malformed(tmp_path, document):
    with pytest.raises(ImportFormatError):
        SessionExporter(_settings(tmp_path)).import_candidates(Session(), document)


def test_import_rewrites_rejects_unknown_status(tmp_path):
    with pytest.raises(ImportFormatError):
        SessionExporter(_settings(tmp_path)).import_rewrites(
            Session(), [{"blockId": "b0", "status": "finished"}]
        )


def test_import_candidates_marks_existing_block_completed(tmp_path):
    session = _session()
    block = session.blocks["doc-p1-b0"]
    block.status = BlockStatus.ERROR
    block.error_message = "upstream failure"
    entries = [
        {"blockId": "doc-p1-b0", "id": "manual-1", "text": "Find x if x + 2 = 5."},
        {"blockId": "doc-p1-b0", "id": "manual-2", "text": "   "},
    ]

    count = SessionExporter(_settings(tmp_path)).import_candidates(session, entries)

    assert count == 1
    assert [candidate.id for candidate in session.candidates_for("doc-p1-b0")] == ["manual-1"]
    assert block.status == BlockStatus.COMPLETED
    assert block.error_message is None and block.skip_reason is None
    assert session.candidates["manual-1"].confidence == 0.5
    assert "doc-p1-b0" not in session.rewrites


def test_import_candidates_rekeys_ids_owned_by_other_blocks(tmp_path):
    session = _session()
    entries = [
        {"blockId": "doc-p1-b1", "id": "doc-p1-b0-q1", "text": "Compute 3 * 4."},
        {"blockId": "doc-p1-b2", "id": "shared", "text": "Compute 5 * 6."},
        {"blockId": "doc-p1-b3", "id": "shared", "text": "Compute 7 * 8."},
    ]

    SessionExporter(_settings(tmp_path)).import_candidates(session, entries)

    assert [c.id for c in session.candidates_for("doc-p1-b0")] == ["doc-p1-b0-q1"]
    assert session.candidates["doc-p1-b0-q1"].block_id == "doc-p1-b0"
    assert [c.id for c in session.candidates_for("doc-p1-b1")] == ["doc-p1-b1-q1"]
    assert [c.id for c in session.candidates_for("doc-p1-b2")] == ["shared"]
    assert [c.id for c in session.candidates_for("doc-p1-b3")] == ["doc-p1-b3-q1"]
    for block_id in ("doc-p1-b1", "doc-p1-b2", "doc-p1-b3"):
        assert all(c.block_id == block_id for c in session.candidates_for(block_id))

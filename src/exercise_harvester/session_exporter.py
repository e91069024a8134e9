"""Export session state to JSON/YAML and seed sessions from exported lists."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml

from config import Settings
from .logging_utils import get_logger
from .pipeline import BlockStatus, Candidate, ProblemPatch, QualityReport, RewriteResult, RewriteStatus
from .session import Session

logger = get_logger(__name__)

ImportSource = Union[str, bytes, Dict[str, Any], List[Any]]


class ImportFormatError(RuntimeError):
    """Raised when an imported document does not have the expected shape."""


def to_plain(value: Any) -> Any:
    """Convert dataclasses, enums and paths into JSON/YAML-safe structures."""
    if is_dataclass(value) and not isinstance(value, type):
        return to_plain(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {to_plain(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


class SessionExporter:
    """Serialize a session and its candidate/rewrite lists."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def session_payload(self, session: Session) -> Dict[str, Any]:
        return to_plain(
            {
                "document": session.document,
                "stage_status": session.stage_status,
                "stage_messages": session.stage_messages,
                "last_error": session.last_error,
                "review_cursor": session.review_cursor,
                "stats": session.stats(),
                "pages": list(session.pages.values()),
                "blocks": list(session.blocks.values()),
                "candidates": list(session.candidates.values()),
                "rewrites": list(session.rewrites.values()),
            }
        )

    def candidates_payload(self, session: Session) -> Dict[str, Any]:
        return to_plain({"pdf": session.document, "candidates": list(session.candidates.values())})

    def rewrites_payload(self, session: Session) -> Dict[str, Any]:
        return to_plain({"pdf": session.document, "rewrites": list(session.rewrites.values())})

    def write(self, payload: Dict[str, Any], stem: str, output_dir: Optional[Path] = None) -> Path:
        """Write ``payload`` to ``<output_dir>/<stem>.<json|yaml>``."""
        export_format = (self.settings.export_format or "json").lower()
        if export_format not in {"json", "yaml"}:
            logger.warning("Unsupported export format '%s'; defaulting to JSON.", export_format)
            export_format = "json"
        extension = ".yaml" if export_format == "yaml" else ".json"

        target_dir = Path(output_dir or self.settings.output_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        output_path = target_dir / f"{stem}{extension}"
        with output_path.open("w", encoding="utf-8") as handle:
            if export_format == "yaml":
                yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
            else:
                json.dump(payload, handle, indent=2, ensure_ascii=False)

        logger.info("Export written to %s", output_path)
        return output_path

    def export_session(self, session: Session, output_dir: Optional[Path] = None) -> Path:
        return self.write(self.session_payload(session), f"session-{int(time.time())}", output_dir)

    def import_candidates(self, session: Session, source: ImportSource) -> int:
        """
        Seed ``session`` with an exported candidate list.

        Accepts ``[...]`` or ``{"candidates": [...]}`` with snake_case or
        camelCase keys. Entries with blank text are dropped. Each affected
        block has its candidates replaced and is marked completed so the
        classification stage leaves it alone; unknown blocks get a completed
        placeholder. Ids already used by another block are re-keyed to
        ``<block id>-q<n>``.

        Raises:
            ImportFormatError: if the document or an entry is malformed.
        """
        entries = _entries(_load(source), "candidates")
        kept: List[Dict[str, Any]] = []
        for position, entry in enumerate(entries):
            block_id = _text(entry, "block_id", "blockId")
            if not block_id:
                raise ImportFormatError(f"Candidate #{position} has no block id")
            if not _text(entry, "text", "rawText"):
                logger.debug("Dropping candidate #%s of block %s without text", position, block_id)
                continue
            kept.append(entry)

        imported_blocks = {_text(entry, "block_id", "blockId") for entry in kept}
        taken = {
            candidate_id
            for candidate_id, candidate in session.candidates.items()
            if candidate.block_id not in imported_blocks
        }
        grouped: Dict[str, List[Candidate]] = {}
        for entry in kept:
            block_id = _text(entry, "block_id", "blockId")
            page_id = _text(entry, "page_id", "pageId") or block_id.split("-b")[0]
            page_number = _int(entry, 0, "page_number", "pageNumber")
            session.ensure_block(block_id, page_id, page_number)
            bucket = grouped.setdefault(block_id, [])
            candidate_id = _text(entry, "id")
            if not candidate_id or candidate_id in taken:
                candidate_id = _free_id(block_id, len(bucket) + 1, taken)
            taken.add(candidate_id)
            bucket.append(
                Candidate(
                    id=candidate_id,
                    block_id=block_id,
                    page_id=page_id,
                    page_number=page_number,
                    index=len(bucket),
                    text=_text(entry, "text", "rawText"),
                    classification=_text(entry, "classification") or "unspecified",
                    has_image=bool(_value(entry, "has_image", "hasImage")),
                    confidence=_confidence(_value(entry, "confidence")),
                    skip_reason=_text(entry, "skip_reason", "skipReason") or None,
                    notes=_text(entry, "notes") or None,
                )
            )

        for block_id in grouped:
            session.replace_candidates(block_id, [])
        for block_id, candidates in grouped.items():
            session.replace_candidates(block_id, candidates)
            block = session.blocks[block_id]
            block.status = BlockStatus.COMPLETED
            block.error_message = None
            block.skip_reason = None
        count = sum(len(candidates) for candidates in grouped.values())
        logger.info("Imported %s candidates across %s blocks", count, len(grouped))
        return count

    def import_rewrites(self, session: Session, source: ImportSource) -> int:
        """
        Seed ``session`` with an exported rewrite list.

        Candidate ids not present in the session are dropped from each entry.

        Raises:
            ImportFormatError: if the document or an entry is malformed.
        """
        entries = _entries(_load(source), "rewrites")
        count = 0
        for position, entry in enumerate(entries):
            block_id = _text(entry, "block_id", "blockId") or _text(entry, "id")
            if not block_id:
                raise ImportFormatError(f"Rewrite #{position} has no block id")
            page_id = _text(entry, "page_id", "pageId") or block_id.split("-b")[0]
            session.ensure_block(block_id, page_id, _int(entry, 0, "page_number", "pageNumber"))

            known = {candidate.id for candidate in session.candidates_for(block_id)}
            raw_ids = _value(entry, "candidate_ids", "candidateIds") or []
            if not isinstance(raw_ids, list):
                raise ImportFormatError(f"Rewrite #{position} candidate ids must be a list")
            candidate_ids = [str(candidate_id) for candidate_id in raw_ids if str(candidate_id) in known]
            chosen = _text(entry, "chosen_candidate_id", "chosenCandidateId") or None
            if chosen not in candidate_ids:
                chosen = None

            status = _status(_text(entry, "status") or RewriteStatus.PENDING.value, position)
            created_at = _value(entry, "created_at", "createdAt")
            result = RewriteResult(
                id=block_id,
                block_id=block_id,
                page_id=page_id,
                candidate_ids=candidate_ids,
                chosen_candidate_id=chosen,
                status=status,
                patch=_patch(_value(entry, "patch"), position),
                raw_response=_text(entry, "raw_response", "raw"),
                reason=_text(entry, "reason") or None,
                message=_text(entry, "message") or None,
                accepted=bool(_value(entry, "accepted")),
                quality_report=_quality(_value(entry, "quality_report", "qualityReport")),
                problem_id=_text(entry, "problem_id", "editedProblemId") or None,
            )
            if isinstance(created_at, (int, float)) and not isinstance(created_at, bool):
                result.created_at = float(created_at)
            session.upsert_rewrite(result)
            count += 1
        logger.info("Imported %s rewrite results", count)
        return count


def _load(source: ImportSource) -> Any:
    if isinstance(source, bytes):
        source = source.decode("utf-8")
    if isinstance(source, str):
        try:
            return json.loads(source)
        except json.JSONDecodeError:
            try:
                return yaml.safe_load(source)
            except yaml.YAMLError as exc:
                raise ImportFormatError(f"Import document is neither JSON nor YAML: {exc}") from exc
    return source


def _entries(data: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get(key)
    if not isinstance(data, list):
        raise ImportFormatError(f"Expected a list or an object with a '{key}' list")
    for position, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ImportFormatError(f"Entry #{position} in '{key}' is not an object")
    return data


def _value(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return None


def _text(entry: Dict[str, Any], *keys: str) -> str:
    value = _value(entry, *keys)
    return str(value).strip() if value is not None else ""


def _int(entry: Dict[str, Any], default: int, *keys: str) -> int:
    value = _value(entry, *keys)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _confidence(value: Any, default: float = 0.5) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return default


def _free_id(block_id: str, number: int, taken: Set[str]) -> str:
    candidate_id = f"{block_id}-q{number}"
    while candidate_id in taken:
        number += 1
        candidate_id = f"{block_id}-q{number}"
    return candidate_id


def _status(value: str, position: int) -> RewriteStatus:
    try:
        status = RewriteStatus(value.lower())
    except ValueError:
        raise ImportFormatError(f"Rewrite #{position} has unknown status '{value}'") from None
    # A result caught mid-flight when exported is re-run.
    return RewriteStatus.PENDING if status == RewriteStatus.PROCESSING else status


def _patch(value: Any, position: int) -> Optional[ProblemPatch]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ImportFormatError(f"Rewrite #{position} patch must be an object")
    options = _value(value, "options") or []
    return ProblemPatch(
        question_type=_text(value, "question_type", "questionType") or "Multiple Choice",
        question=_text(value, "question"),
        options=[str(option) for option in options] if isinstance(options, list) else [],
        answer=_text(value, "answer"),
        subfield=_text(value, "subfield"),
        academic_level=_text(value, "academic_level", "academicLevel"),
        difficulty=_text(value, "difficulty"),
    )


def _quality(value: Any) -> Optional[QualityReport]:
    if not isinstance(value, dict):
        return None
    return QualityReport(
        difficulty_note=_text(value, "difficulty_note", "difficultyNote"),
        self_contained=bool(_value(value, "self_contained", "selfContained")),
        no_leakage=bool(_value(value, "no_leakage", "noLeakage")),
        single_answer=bool(_value(value, "single_answer", "singleAnswer")),
        quantitative=bool(_value(value, "quantitative")),
        overall="pass" if _text(value, "overall").lower() == "pass" else "fail",
        notes=_text(value, "notes") or None,
    )

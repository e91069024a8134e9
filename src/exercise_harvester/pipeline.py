"""Core data models shared by every stage of the exercise harvester."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Stage(str, Enum):
    """The three pipeline phases, each with its own aggregate status."""

    COARSE = "coarse"
    DETAILED = "detailed"
    REWRITE = "rewrite"


class StageStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class BlockStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"


class RewriteStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONVERTED = "converted"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class Rect:
    """Axis-aligned rectangle in rendered-pixel space (top-left origin)."""

    x: float
    y: float
    width: float
    height: float


@dataclass
class DocumentMeta:
    name: str
    page_count: int
    fingerprint: str = ""


@dataclass
class Page:
    """Metadata for a single rendered document page."""

    id: str
    page_number: int
    width: float
    height: float
    rotation: int
    render_dpi: int
    raster_image: Optional[str] = None  # attachment-store key


@dataclass
class Block:
    """A geometrically coherent run of text lines on one page."""

    id: str
    page_id: str
    page_number: int
    index: int
    rect: Rect
    text: str
    line_count: int
    text_length: int
    status: BlockStatus = BlockStatus.PENDING
    skip_reason: Optional[str] = None
    error_message: Optional[str] = None
    requires_ocr: bool = False
    raster_image: Optional[str] = None
    extracted_text: Optional[str] = None


@dataclass
class Candidate:
    """A sub-span of a block judged to be a standalone exercise."""

    id: str
    block_id: str
    page_id: str
    page_number: int
    index: int
    text: str
    classification: str
    has_image: bool
    confidence: float
    skip_reason: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class QualityReport:
    """Advisory rubric assessment returned alongside a rewrite."""

    difficulty_note: str = ""
    self_contained: bool = False
    no_leakage: bool = False
    single_answer: bool = False
    quantitative: bool = False
    overall: str = "fail"
    notes: Optional[str] = None


@dataclass
class ProblemPatch:
    """Normalized problem fields authored from a chosen candidate."""

    question_type: str
    question: str
    options: List[str]
    answer: str
    subfield: str
    academic_level: str
    difficulty: str


@dataclass
class RewriteResult:
    """Per-block outcome of the selection and rewrite stage."""

    id: str
    block_id: str
    page_id: str
    candidate_ids: List[str]
    chosen_candidate_id: Optional[str] = None
    status: RewriteStatus = RewriteStatus.PENDING
    patch: Optional[ProblemPatch] = None
    raw_response: str = ""
    reason: Optional[str] = None
    message: Optional[str] = None
    accepted: bool = False
    created_at: float = field(default_factory=time.time)
    quality_report: Optional[QualityReport] = None
    problem_id: Optional[str] = None


@dataclass
class ProblemRecord:
    """A reviewed problem materialized into the permanent problem bank."""

    id: str
    question: str
    question_type: str
    options: List[str]
    answer: str
    subfield: str
    academic_level: str
    difficulty: str
    source: str = ""
    image: str = ""
    image_dependency: int = 0


@dataclass
class ItemResult:
    """Typed per-item result returned by every stage task."""

    item_id: str
    status: str
    message: Optional[str] = None
    applied: bool = True


@dataclass
class StageReport:
    """Aggregate outcome of one stage run."""

    stage: Stage
    status: StageStatus
    total: int = 0
    completed: int = 0
    skipped: int = 0
    errors: int = 0
    message: Optional[str] = None
    items: List[ItemResult] = field(default_factory=list)

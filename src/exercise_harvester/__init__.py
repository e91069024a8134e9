"""Expose exercise harvester core modules."""

from .pipeline import (
    Block,
    BlockStatus,
    Candidate,
    DocumentMeta,
    ItemResult,
    Page,
    ProblemPatch,
    ProblemRecord,
    QualityReport,
    Rect,
    RewriteResult,
    RewriteStatus,
    Stage,
    StageReport,
    StageStatus,
)
from .task_pool import run_bounded
from .json_payload import ResponseParseError, extract_json_object
from .llm_client import LLMClient, LLMConfigurationError, TextGenerator
from .attachments import LocalAttachmentStore
from .page_segmenter import ExtractionError, PageSegmenter, SegmentationConfig, TextRun, segment_page
from .ocr_processor import OCRProcessingError, OCRProcessor, OcrUnavailable
from .block_classifier import BlockClassifier, ClassificationParseError, NoExtractableText
from .candidate_rewriter import (
    CandidateRewriter,
    NoEligibleCandidates,
    PayloadMissing,
    ProblemValidationError,
    RewriteOutcome,
    SelectionNotFound,
    eligible_pool,
)
from .session import Session
from .problem_bank import ProblemBank
from .review import NothingToReview, ReviewError, ReviewQueue
from .session_exporter import ImportFormatError, SessionExporter
from .orchestrator import PipelineBusyError, PipelineError, PipelineOrchestrator

__all__ = [
    "Block",
    "BlockStatus",
    "Candidate",
    "DocumentMeta",
    "ItemResult",
    "Page",
    "ProblemPatch",
    "ProblemRecord",
    "QualityReport",
    "Rect",
    "RewriteResult",
    "RewriteStatus",
    "Stage",
    "StageReport",
    "StageStatus",
    "run_bounded",
    "ResponseParseError",
    "extract_json_object",
    "LLMClient",
    "LLMConfigurationError",
    "TextGenerator",
    "LocalAttachmentStore",
    "ExtractionError",
    "PageSegmenter",
    "SegmentationConfig",
    "TextRun",
    "segment_page",
    "OCRProcessingError",
    "OCRProcessor",
    "OcrUnavailable",
    "BlockClassifier",
    "ClassificationParseError",
    "NoExtractableText",
    "CandidateRewriter",
    "NoEligibleCandidates",
    "PayloadMissing",
    "ProblemValidationError",
    "RewriteOutcome",
    "SelectionNotFound",
    "eligible_pool",
    "Session",
    "ProblemBank",
    "NothingToReview",
    "ReviewError",
    "ReviewQueue",
    "ImportFormatError",
    "SessionExporter",
    "PipelineBusyError",
    "PipelineError",
    "PipelineOrchestrator",
]

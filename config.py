"""Project-level configuration helpers for the exercise harvester pipeline."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_SUBFIELDS: Tuple[str, ...] = (
    "Algebra",
    "Analysis",
    "Calculus",
    "Combinatorics",
    "Geometry",
    "Linear Algebra",
    "Number Theory",
    "Probability",
    "Statistics",
)
DEFAULT_ACADEMIC_LEVELS: Tuple[str, ...] = ("K12", "Professional")
DEFAULT_DIFFICULTIES: Tuple[str, ...] = ("1", "2", "3")


class PipelineSettings(BaseModel):
    """Operator-adjustable knobs read by every stage run.

    Out-of-range values are clamped rather than rejected, both at construction
    and when a field is reassigned between runs.
    """

    model_config = ConfigDict(validate_assignment=True)

    concurrency: int = 3
    top_k: int = 3
    min_confidence: float = 0.45
    options_count: int = 5
    target_question_type: str = "Multiple Choice"
    subfields: Tuple[str, ...] = DEFAULT_SUBFIELDS
    academic_levels: Tuple[str, ...] = DEFAULT_ACADEMIC_LEVELS
    difficulties: Tuple[str, ...] = DEFAULT_DIFFICULTIES

    @field_validator("concurrency", mode="before")
    @classmethod
    def _clamp_concurrency(cls, value: Any) -> int:
        return min(10, max(1, int(value)))

    @field_validator("top_k", mode="before")
    @classmethod
    def _clamp_top_k(cls, value: Any) -> int:
        return max(1, int(value))

    @field_validator("min_confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return min(1.0, max(0.0, float(value)))

    @field_validator("options_count", mode="before")
    @classmethod
    def _clamp_options(cls, value: Any) -> int:
        return min(10, max(2, int(value)))

    @property
    def is_multiple_choice(self) -> bool:
        return self.target_question_type.strip().lower() == "multiple choice"


class Settings(BaseModel):
    """Runtime settings loaded from environment variables or defaults."""

    data_dir: Path = Field(default_factory=lambda: Path("data"))
    output_dir: Path = Field(default_factory=lambda: Path("outputs"))
    temp_dir: Path = Field(default_factory=lambda: Path("tmp"))
    log_level: str = "INFO"
    debug: bool = False
    pdf_render_dpi: int = 144
    min_text_length: int = 24
    line_merge_threshold: float = 6.0
    block_gap_threshold: float = 18.0
    space_threshold: float = 12.0
    llm_base_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    llm_timeout: float = 120.0
    llm_stream: bool = False
    classifier_prompt: Optional[str] = None
    generator_prompt: Optional[str] = None
    ocr_backend: str = "llm"
    ocr_model: Optional[str] = None
    ocr_handler: Optional[str] = None
    ocr_warn_threshold: float = 0.6
    translate_output: bool = False
    translator_model: Optional[str] = None
    concurrency: int = 3
    top_k: int = 3
    min_confidence: float = 0.45
    options_count: int = 5
    target_question_type: str = "Multiple Choice"
    subfields: Tuple[str, ...] = DEFAULT_SUBFIELDS
    academic_levels: Tuple[str, ...] = DEFAULT_ACADEMIC_LEVELS
    difficulties: Tuple[str, ...] = DEFAULT_DIFFICULTIES
    export_format: str = "json"
    problem_bank_filename: str = "problems.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings by reading environment variables with the HARVEST_ prefix."""
        defaults = cls()
        env_overrides: Dict[str, Any] = {
            "data_dir": Path(os.getenv("HARVEST_DATA_DIR", str(defaults.data_dir))),
            "output_dir": Path(os.getenv("HARVEST_OUTPUT_DIR", str(defaults.output_dir))),
            "temp_dir": Path(os.getenv("HARVEST_TEMP_DIR", str(defaults.temp_dir))),
            "log_level": os.getenv("HARVEST_LOG_LEVEL", defaults.log_level),
            "debug": _coerce_bool(os.getenv("HARVEST_DEBUG", str(defaults.debug))),
            "pdf_render_dpi": int(os.getenv("HARVEST_PDF_RENDER_DPI", defaults.pdf_render_dpi)),
            "min_text_length": int(os.getenv("HARVEST_MIN_TEXT_LENGTH", defaults.min_text_length)),
            "line_merge_threshold": float(
                os.getenv("HARVEST_LINE_MERGE_THRESHOLD", defaults.line_merge_threshold)
            ),
            "block_gap_threshold": float(
                os.getenv("HARVEST_BLOCK_GAP_THRESHOLD", defaults.block_gap_threshold)
            ),
            "space_threshold": float(os.getenv("HARVEST_SPACE_THRESHOLD", defaults.space_threshold)),
            "llm_base_url": os.getenv("HARVEST_LLM_BASE_URL", defaults.llm_base_url),
            "llm_api_key": os.getenv("HARVEST_LLM_API_KEY", defaults.llm_api_key),
            "llm_model": os.getenv("HARVEST_LLM_MODEL", defaults.llm_model),
            "llm_timeout": float(os.getenv("HARVEST_LLM_TIMEOUT", defaults.llm_timeout)),
            "llm_stream": _coerce_bool(os.getenv("HARVEST_LLM_STREAM", str(defaults.llm_stream))),
            "classifier_prompt": os.getenv("HARVEST_CLASSIFIER_PROMPT", defaults.classifier_prompt),
            "generator_prompt": os.getenv("HARVEST_GENERATOR_PROMPT", defaults.generator_prompt),
            "ocr_backend": os.getenv("HARVEST_OCR_BACKEND", defaults.ocr_backend),
            "ocr_model": os.getenv("HARVEST_OCR_MODEL", defaults.ocr_model),
            "ocr_handler": os.getenv("HARVEST_OCR_HANDLER", defaults.ocr_handler),
            "ocr_warn_threshold": float(
                os.getenv("HARVEST_OCR_WARN_THRESHOLD", defaults.ocr_warn_threshold)
            ),
            "translate_output": _coerce_bool(
                os.getenv("HARVEST_TRANSLATE_OUTPUT", str(defaults.translate_output))
            ),
            "translator_model": os.getenv("HARVEST_TRANSLATOR_MODEL", defaults.translator_model),
            "concurrency": int(os.getenv("HARVEST_CONCURRENCY", defaults.concurrency)),
            "top_k": int(os.getenv("HARVEST_TOP_K", defaults.top_k)),
            "min_confidence": float(os.getenv("HARVEST_MIN_CONFIDENCE", defaults.min_confidence)),
            "options_count": int(os.getenv("HARVEST_OPTIONS_COUNT", defaults.options_count)),
            "target_question_type": os.getenv(
                "HARVEST_QUESTION_TYPE", defaults.target_question_type
            ),
            "subfields": _coerce_list(os.getenv("HARVEST_SUBFIELDS"), defaults.subfields),
            "academic_levels": _coerce_list(
                os.getenv("HARVEST_ACADEMIC_LEVELS"), defaults.academic_levels
            ),
            "difficulties": _coerce_list(os.getenv("HARVEST_DIFFICULTIES"), defaults.difficulties),
            "export_format": os.getenv("HARVEST_EXPORT_FORMAT", defaults.export_format),
            "problem_bank_filename": os.getenv(
                "HARVEST_PROBLEM_BANK_FILENAME", defaults.problem_bank_filename
            ),
        }
        return cls(**env_overrides)

    def ensure_directories(self) -> None:
        """Create directories that the pipeline expects to exist."""
        for path in (self.data_dir, self.output_dir, self.temp_dir, self.attachment_dir):
            path.mkdir(parents=True, exist_ok=True)

    @property
    def attachment_dir(self) -> Path:
        """Directory backing the attachment store (page rasters, OCR sources)."""
        return self.data_dir / "attachments"

    @property
    def problem_bank_path(self) -> Path:
        return self.output_dir / self.problem_bank_filename

    @property
    def llm_configured(self) -> bool:
        return bool((self.llm_api_key or "").strip() and (self.llm_model or "").strip())

    def pipeline_settings(self) -> PipelineSettings:
        """Return a fresh mutable PipelineSettings seeded from these defaults."""
        return PipelineSettings(
            concurrency=self.concurrency,
            top_k=self.top_k,
            min_confidence=self.min_confidence,
            options_count=self.options_count,
            target_question_type=self.target_question_type,
            subfields=self.subfields,
            academic_levels=self.academic_levels,
            difficulties=self.difficulties,
        )


def _coerce_bool(value: str) -> bool:
    if isinstance(value, bool):
        return value
    return value.lower() in {"1", "true", "yes", "y"}


def _coerce_list(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    items = tuple(part.strip() for part in value.split(";") if part.strip())
    return items or default


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Return cached settings, raising a helpful error if validation fails."""
    try:
        settings = Settings.from_env()
        settings.ensure_directories()
        return settings
    except ValidationError as exc:
        raise RuntimeError(f"Invalid application configuration: {exc}") from exc

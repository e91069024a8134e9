"""Classify sub-spans of a text block as standalone exercises."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from config import Settings
from .attachments import LocalAttachmentStore
from .json_payload import ResponseParseError, extract_json_object
from .llm_client import TextGenerator
from .logging_utils import get_logger
from .ocr_processor import OCRProcessor, OcrUnavailable
from .pipeline import Block, Candidate

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You identify mathematics exercises from textbooks and ignore definitions or summaries."
)

CLASSIFIER_INSTRUCTIONS = "\n".join(
    [
        "You will receive a chunk of text extracted from a mathematics textbook.",
        "Return only actual problems that require a learner response (exercise, question, ask, prove).",
        "Ignore pure definitions, theorems, summaries, or example discussions unless they include "
        "an explicit question to solve.",
        "If a problem references diagrams, figures, charts, or images, mark hasImage=true.",
        'Respond with JSON matching the schema: { "problems": [ { "rawText": string, '
        '"classification": string, "hasImage": boolean, "confidence": number, "skipReason": string, '
        '"notes": string } ], "discarded": [ { "reason": string, "snippet": string } ] }. '
        'Include only actual problems inside "problems".',
        "Set confidence between 0 and 1. Use low confidence (<0.4) when unsure whether text is a "
        "standalone problem.",
        'Provide meaningful skipReason when a candidate is discarded inside "discarded".',
    ]
)

NO_CANDIDATES_REASON = "no candidates found"


class NoExtractableText(RuntimeError):
    """Raised when a block has no text to classify, even after OCR."""

    def __init__(self, block_id: str):
        super().__init__("no extractable text")
        self.block_id = block_id


class ClassificationParseError(ResponseParseError):
    """Raised when the classifier reply cannot be decoded."""


class BlockClassifier:
    """Send block text to the text generator and turn the reply into candidates."""

    def __init__(
        self,
        settings: Settings,
        generator: TextGenerator,
        ocr_processor: Optional[OCRProcessor] = None,
        attachments: Optional[LocalAttachmentStore] = None,
    ):
        self.settings = settings
        self.generator = generator
        self.ocr_processor = ocr_processor
        self.attachments = attachments or LocalAttachmentStore(settings.attachment_dir)
        self.system_prompt = (settings.classifier_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT

    async def recover_text(self, block: Block) -> Optional[str]:
        """
        Run OCR against the block raster when the block has no text layer.

        Returns the recovered text, or ``None`` when the block does not need OCR.
        The caller is responsible for persisting the text onto the block.

        Raises:
            OcrUnavailable: if no OCR backend is configured or the raster is missing.
        """
        if block.text.strip() or not block.requires_ocr:
            return None
        if self.ocr_processor is None or not self.ocr_processor.is_available():
            raise OcrUnavailable(f"Block {block.id} requires OCR but no OCR backend is configured")
        if not block.raster_image:
            raise OcrUnavailable(f"Block {block.id} requires OCR but has no page raster")
        image = self.attachments.get(block.raster_image)
        if image is None:
            raise OcrUnavailable(f"Page raster {block.raster_image} not found in attachment store")
        text = await self.ocr_processor.recognize(image)
        logger.info("Recovered %s chars via OCR for block %s", len(text), block.id)
        return text

    async def classify_block(self, block: Block, min_confidence: float) -> List[Candidate]:
        """
        Ask the classifier for exercises inside ``block``.

        Raises:
            NoExtractableText: if the block text is empty; nothing is sent.
            ClassificationParseError: if the reply carries no decodable payload.
        """
        if not block.text.strip():
            raise NoExtractableText(block.id)

        payload = f"Page {block.page_number}, Block {block.id}\n---\n{block.text}"
        raw = await self.generator.generate(
            self.system_prompt,
            f"{CLASSIFIER_INSTRUCTIONS}\n\nText Block:\n{payload}",
            temperature=0.0,
        )
        try:
            parsed = extract_json_object(raw)
        except ResponseParseError as exc:
            raise ClassificationParseError(str(exc)) from exc

        for discarded in _as_list(parsed.get("discarded")):
            if isinstance(discarded, dict):
                logger.debug(
                    "Block %s discarded span (%s): %s",
                    block.id,
                    discarded.get("reason"),
                    str(discarded.get("snippet", ""))[:80],
                )

        candidates = build_candidates(block, _as_list(parsed.get("problems")), min_confidence)
        logger.debug("Block %s yielded %s candidates", block.id, len(candidates))
        return candidates


def build_candidates(
    block: Block, problems: List[Any], min_confidence: float
) -> List[Candidate]:
    """Convert classifier ``problems`` entries into candidates of ``block``."""
    entries: List[Dict[str, Any]] = [
        problem
        for problem in problems
        if isinstance(problem, dict)
        and isinstance(problem.get("rawText"), str)
        and problem["rawText"].strip()
    ]
    candidates: List[Candidate] = []
    for index, entry in enumerate(entries):
        candidates.append(
            Candidate(
                id=f"{block.id}-q{index + 1}",
                block_id=block.id,
                page_id=block.page_id,
                page_number=block.page_number,
                index=index,
                text=entry["rawText"].strip(),
                classification=_clean(entry.get("classification")) or "unspecified",
                has_image=bool(entry.get("hasImage")),
                confidence=_confidence(entry.get("confidence"), min_confidence),
                skip_reason=_clean(entry.get("skipReason")),
                notes=_clean(entry.get("notes")),
            )
        )
    return candidates


def _confidence(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return min(1.0, max(0.0, float(value)))


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []

"""OCR processing utilities for the exercise harvester pipeline."""

from __future__ import annotations

import asyncio
import importlib
import io
from typing import Callable, List, Optional

from PIL import Image
import pytesseract
from pytesseract import Output

from config import Settings
from .llm_client import TextGenerator
from .logging_utils import get_logger

logger = get_logger(__name__)

OCR_SYSTEM_PROMPT = (
    "You are an OCR engine. Transcribe all readable text from the image into plain UTF-8 text. "
    "Preserve math expressions as text (no LaTeX unless present), keep line breaks where "
    "meaningful, and do not add commentary."
)
OCR_USER_PROMPT = "Extract all readable text from this image. Return plain text only."


class OCRProcessingError(RuntimeError):
    """Raised when OCR fails for a given image."""


class OcrUnavailable(OCRProcessingError):
    """Raised when text recovery is needed but no OCR backend is configured."""


class OCRProcessor:
    """Recover text from rendered page images using configurable backends.

    Backends: ``llm`` (vision request through the text generator), ``tesseract``,
    ``module:function`` (custom callable taking a PIL image and returning text)
    and ``none``.
    """

    def __init__(
        self,
        settings: Settings,
        generator: Optional[TextGenerator] = None,
        backend: Optional[str] = None,
        custom_callable: Optional[Callable[[Image.Image], str]] = None,
    ):
        self.settings = settings
        self.generator = generator
        self.backend = (backend or settings.ocr_backend or "none").strip()
        self.custom_callable = custom_callable or self._load_custom_callable()

    def is_available(self) -> bool:
        if self.custom_callable is not None:
            return True
        if self.backend == "llm":
            return self.generator is not None
        if self.backend == "tesseract":
            return True
        return False

    async def recognize(self, image_bytes: bytes) -> str:
        """Return the text recognized in a PNG image."""
        if not self.is_available():
            raise OcrUnavailable(f"OCR backend '{self.backend}' is not available")
        if not image_bytes:
            raise OCRProcessingError("No image data to recognize")

        if self.custom_callable is not None:
            text = await asyncio.to_thread(self._run_custom, image_bytes)
        elif self.backend == "llm":
            text = await self._run_llm(image_bytes)
        else:
            text = await asyncio.to_thread(self._run_tesseract, image_bytes)
        logger.debug("OCR (%s) recovered %s chars", self.backend, len(text))
        return text.strip()

    async def _run_llm(self, image_bytes: bytes) -> str:
        try:
            return await self.generator.generate(
                OCR_SYSTEM_PROMPT,
                OCR_USER_PROMPT,
                image=image_bytes,
                temperature=0.0,
                model=self.settings.ocr_model,
            )
        except Exception as exc:  # pylint: disable=broad-except
            raise OCRProcessingError(f"Vision OCR request failed: {exc}") from exc

    def _run_custom(self, image_bytes: bytes) -> str:
        with Image.open(io.BytesIO(image_bytes)) as image:
            try:
                result = self.custom_callable(image)
            except Exception as exc:  # pylint: disable=broad-except
                raise OCRProcessingError(f"Custom OCR backend failed: {exc}") from exc
        return result if isinstance(result, str) else str(result or "")

    def _run_tesseract(self, image_bytes: bytes) -> str:
        with Image.open(io.BytesIO(image_bytes)) as image:
            try:
                text = pytesseract.image_to_string(image)
                data = pytesseract.image_to_data(image, output_type=Output.DICT)
            except pytesseract.TesseractNotFoundError as exc:
                raise OcrUnavailable(
                    "Tesseract binary not found. Install tesseract or configure another OCR backend."
                ) from exc

        avg_conf = self._calculate_average_confidence(data.get("text", []), data.get("conf", []))
        if avg_conf is not None and avg_conf < self.settings.ocr_warn_threshold:
            logger.warning(
                "Low OCR confidence (avg=%.2f). Adjust DPI or review the source PDF.",
                avg_conf,
            )
        return text

    @staticmethod
    def _calculate_average_confidence(words: List[str], confidences: List[object]) -> Optional[float]:
        values: List[float] = []
        for word, confidence in zip(words, confidences):
            if not str(word).strip():
                continue
            try:
                conf_value = float(confidence)
            except (TypeError, ValueError):
                continue
            if conf_value < 0:
                continue
            values.append(min(max(conf_value / 100.0, 0.0), 1.0))
        if not values:
            return None
        return sum(values) / len(values)

    def _load_custom_callable(self) -> Optional[Callable[[Image.Image], str]]:
        backend_path = self.backend
        if backend_path in {"none", ""}:
            return None
        if backend_path in {"llm", "tesseract"}:
            handler_path = self.settings.ocr_handler
            if not handler_path:
                return None
            backend_path = handler_path
        try:
            module_name, func_name = backend_path.rsplit(":", 1)
        except ValueError:
            raise OCRProcessingError(
                "Custom OCR backend must be specified as 'module:function'."
            ) from None

        module = importlib.import_module(module_name)
        callable_obj = getattr(module, func_name, None)
        if callable_obj is None:
            raise OCRProcessingError(f"Function '{func_name}' not found in module '{module_name}'.")
        return callable_obj

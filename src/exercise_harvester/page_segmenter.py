"""Geometric segmentation of PDF text layers into ordered text blocks."""

from __future__ import annotations

import hashlib
import io
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
from PIL import Image
from pdf2image import convert_from_path

from config import Settings
from .attachments import LocalAttachmentStore
from .logging_utils import get_logger
from .pipeline import Block, BlockStatus, DocumentMeta, Page, Rect

logger = get_logger(__name__)

Matrix = Tuple[float, float, float, float, float, float]

_WHITESPACE = re.compile(r"\s+")


class ExtractionError(RuntimeError):
    """Raised when a document or one of its pages cannot be rendered or parsed."""


@dataclass(frozen=True)
class SegmentationConfig:
    target_dpi: int = 144
    min_text_length: int = 24
    line_merge_threshold: float = 6.0
    block_gap_threshold: float = 18.0
    space_threshold: float = 12.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SegmentationConfig":
        return cls(
            target_dpi=settings.pdf_render_dpi,
            min_text_length=settings.min_text_length,
            line_merge_threshold=settings.line_merge_threshold,
            block_gap_threshold=settings.block_gap_threshold,
            space_threshold=settings.space_threshold,
        )

    @property
    def scale(self) -> float:
        return self.target_dpi / 72.0


@dataclass(frozen=True)
class TextRun:
    """A positioned text run in PDF user space (bottom-left origin).

    ``transform`` maps text space to user space; ``width`` and ``height`` are
    the run's advance width and glyph height in user-space units.
    """

    text: str
    transform: Matrix
    width: float
    height: float = 0.0


@dataclass
class RunBox:
    text: str
    left: float
    right: float
    top: float
    bottom: float
    height: float


@dataclass
class LineGroup:
    items: List[RunBox] = field(default_factory=list)
    top: float = 0.0
    bottom: float = 0.0


@dataclass
class Line:
    text: str
    left: float
    right: float
    top: float
    bottom: float
    height: float


@dataclass
class PageSegmentation:
    page: Page
    blocks: List[Block]


def compose_transforms(first: Matrix, second: Matrix) -> Matrix:
    """Return the affine transform that applies ``first`` and then ``second``."""
    a1, b1, c1, d1, e1, f1 = first
    a2, b2, c2, d2, e2, f2 = second
    return (
        a1 * a2 + b1 * c2,
        a1 * b2 + b1 * d2,
        c1 * a2 + d1 * c2,
        c1 * b2 + d1 * d2,
        e1 * a2 + f1 * c2 + e2,
        e1 * b2 + f1 * d2 + f2,
    )


def viewport_transform(page_height: float, scale: float) -> Matrix:
    """Map PDF user space onto a top-left-origin pixel raster."""
    return (scale, 0.0, 0.0, -scale, 0.0, page_height * scale)


def run_to_box(run: TextRun, viewport: Matrix) -> RunBox:
    a, b, c, d, e, f = compose_transforms(run.transform, viewport)
    scale_x = math.hypot(viewport[0], viewport[1]) or 1.0
    scale_y = math.hypot(viewport[2], viewport[3]) or 1.0
    width = run.width * scale_x
    height = run.height * scale_y if run.height else (math.hypot(c, d) or scale_y)
    # f is the baseline measured from the top edge once the viewport flips y.
    bottom = f
    top = bottom - height
    return RunBox(text=run.text, left=e, right=e + width, top=top, bottom=bottom, height=height)


def group_lines(boxes: Iterable[RunBox], threshold: float) -> List[LineGroup]:
    lines: List[LineGroup] = []
    for box in boxes:
        match = next((line for line in lines if abs(line.top - box.top) <= threshold), None)
        if match is None:
            lines.append(LineGroup(items=[box], top=box.top, bottom=box.bottom))
            continue
        match.items.append(box)
        match.top = min(match.top, box.top)
        match.bottom = max(match.bottom, box.bottom)
    lines.sort(key=lambda line: line.top)
    for line in lines:
        line.items.sort(key=lambda item: item.left)
    return lines


def assemble_line(group: LineGroup, space_threshold: float) -> Line:
    pieces: List[str] = []
    last_right = group.items[0].left if group.items else 0.0
    for item in group.items:
        if item.left - last_right > space_threshold:
            pieces.append(" ")
        pieces.append(item.text)
        last_right = item.right
    text = _WHITESPACE.sub(" ", "".join(pieces)).strip()
    return Line(
        text=text,
        left=min(item.left for item in group.items),
        right=max(item.right for item in group.items),
        top=min(item.top for item in group.items),
        bottom=max(item.bottom for item in group.items),
        height=max(item.height for item in group.items),
    )


def group_blocks(lines: Sequence[Line], gap_threshold: float) -> List[List[Line]]:
    groups: List[List[Line]] = []
    current: List[Line] = []
    for line in lines:
        if current and line.top - current[-1].bottom > gap_threshold:
            groups.append(current)
            current = []
        current.append(line)
    if current:
        groups.append(current)
    return groups


def segment_page(
    runs: Sequence[TextRun],
    *,
    page_id: str,
    page_number: int,
    page_height: float,
    config: SegmentationConfig,
    raster_image: Optional[str] = None,
    page_width: Optional[float] = None,
) -> List[Block]:
    """
    Turn one page's text runs into ordered blocks.

    ``page_width`` and ``page_height`` are in PDF points. A page that yields no
    block long enough to keep gets a single full-page block flagged for OCR.
    """
    viewport = viewport_transform(page_height, config.scale)
    boxes = [run_to_box(run, viewport) for run in runs if run.text.strip()]
    lines = [
        line
        for line in (assemble_line(group, config.space_threshold) for group in group_lines(boxes, config.line_merge_threshold))
        if line.text
    ]

    blocks: List[Block] = []
    for group in group_blocks(lines, config.block_gap_threshold):
        block = _block_from_lines(group, page_id, page_number, len(blocks), config)
        if block is not None:
            block.raster_image = raster_image
            blocks.append(block)

    if not blocks:
        width_px = (page_width if page_width is not None else 0.0) * config.scale
        blocks.append(
            Block(
                id=f"{page_id}-img",
                page_id=page_id,
                page_number=page_number,
                index=0,
                rect=Rect(0.0, 0.0, width_px, page_height * config.scale),
                text="",
                line_count=0,
                text_length=0,
                requires_ocr=True,
                raster_image=raster_image,
            )
        )
    return blocks


def _block_from_lines(
    lines: Sequence[Line],
    page_id: str,
    page_number: int,
    index: int,
    config: SegmentationConfig,
) -> Optional[Block]:
    combined = "\n".join(line.text for line in lines).strip()
    if len(combined) < config.min_text_length:
        return None
    left = min(line.left for line in lines)
    right = max(line.right for line in lines)
    top = min(line.top for line in lines)
    bottom = max(line.bottom for line in lines)
    return Block(
        id=f"{page_id}-b{index}",
        page_id=page_id,
        page_number=page_number,
        index=index,
        rect=Rect(left, top, right - left, bottom - top),
        text=combined,
        line_count=len(lines),
        text_length=len(combined),
        status=BlockStatus.PENDING,
    )


class PageSegmenter:
    """Open a PDF, rasterize each page once and segment its text layer."""

    def __init__(
        self,
        settings: Settings,
        attachments: LocalAttachmentStore,
        config: Optional[SegmentationConfig] = None,
    ):
        self.settings = settings
        self.attachments = attachments
        self.config = config or SegmentationConfig.from_settings(settings)

    def segment_document(self, pdf_path: Path) -> Tuple[DocumentMeta, List[Page], List[Block]]:
        """
        Segment every page of ``pdf_path``.

        Returns:
            Document metadata, pages in order and all blocks in reading order.

        Raises:
            ExtractionError: if the file cannot be opened or any page fails.
        """
        pdf_path = Path(pdf_path).resolve()
        if not pdf_path.exists():
            raise ExtractionError(f"PDF not found: {pdf_path}")

        fingerprint = _fingerprint(pdf_path)
        try:
            document = fitz.open(pdf_path)
        except Exception as exc:  # pylint: disable=broad-except
            raise ExtractionError(f"Unable to open {pdf_path.name}: {exc}") from exc

        pages: List[Page] = []
        blocks: List[Block] = []
        with document:
            for page_index in range(len(document)):
                page_number = page_index + 1
                try:
                    result = self._segment_page(document, pdf_path, page_index, fingerprint)
                except ExtractionError:
                    raise
                except Exception as exc:  # pylint: disable=broad-except
                    raise ExtractionError(f"Page {page_number} could not be parsed: {exc}") from exc
                pages.append(result.page)
                blocks.extend(result.blocks)
                logger.debug("Page %s: %s blocks", page_number, len(result.blocks))

        meta = DocumentMeta(name=pdf_path.name, page_count=len(pages), fingerprint=fingerprint)
        logger.info("Segmented %s pages into %s blocks from %s", len(pages), len(blocks), pdf_path.name)
        return meta, pages, blocks

    def _segment_page(
        self, document: fitz.Document, pdf_path: Path, page_index: int, fingerprint: str
    ) -> PageSegmentation:
        page = document.load_page(page_index)
        page_number = page_index + 1
        page_id = f"{fingerprint}-p{page_number}"
        page_width = page.rect.width
        page_height = page.rect.height

        runs = list(extract_text_runs(page))
        raster_key = self.attachments.save(
            f"pages/{page_id}.png", self._rasterize(page, pdf_path, page_number)
        )
        blocks = segment_page(
            runs,
            page_id=page_id,
            page_number=page_number,
            page_height=page_height,
            page_width=page_width,
            config=self.config,
            raster_image=raster_key,
        )
        meta = Page(
            id=page_id,
            page_number=page_number,
            width=page_width * self.config.scale,
            height=page_height * self.config.scale,
            rotation=page.rotation,
            render_dpi=self.config.target_dpi,
            raster_image=raster_key,
        )
        return PageSegmentation(page=meta, blocks=blocks)

    def _rasterize(self, page: fitz.Page, pdf_path: Path, page_number: int) -> bytes:
        try:
            return self._render_with_pymupdf(page)
        except Exception as primary_error:  # pylint: disable=broad-except
            logger.warning(
                "PyMuPDF rendering failed for page %s (%s). Falling back to pdf2image.",
                page_number,
                primary_error,
            )
            try:
                return self._render_with_pdf2image(pdf_path, page_number)
            except Exception as fallback_error:  # pylint: disable=broad-except
                raise ExtractionError(
                    f"Unable to render page {page_number} with PyMuPDF or pdf2image: {fallback_error}"
                ) from fallback_error

    def _render_with_pymupdf(self, page: fitz.Page) -> bytes:
        zoom = self.config.scale
        pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom))
        mode = "RGBA" if pixmap.alpha else "RGB"
        image = Image.frombytes(mode, [pixmap.width, pixmap.height], pixmap.samples)
        if pixmap.alpha:
            image = image.convert("RGB")
        return _png_bytes(image)

    def _render_with_pdf2image(self, pdf_path: Path, page_number: int) -> bytes:
        images = convert_from_path(
            pdf_path, dpi=self.config.target_dpi, first_page=page_number, last_page=page_number
        )
        if not images:
            raise ExtractionError(f"pdf2image returned no image for page {page_number}")
        return _png_bytes(images[0])


def extract_text_runs(page: fitz.Page) -> Iterable[TextRun]:
    """Yield PyMuPDF spans as user-space text runs."""
    page_height = page.rect.height
    content = page.get_text("dict")
    for block in content.get("blocks", []):
        if block.get("type") != 0:
            continue
        for line in block.get("lines", []):
            cos, sin = line.get("dir", (1.0, 0.0))
            for span in line.get("spans", []):
                text = span.get("text", "")
                if not text.strip():
                    continue
                size = float(span.get("size") or 0.0)
                origin_x, origin_y = span.get("origin", (span["bbox"][0], span["bbox"][3]))
                x0, y0, x1, y1 = span["bbox"]
                # PyMuPDF reports y downwards; user space runs y upwards.
                transform: Matrix = (
                    size * cos,
                    -size * sin,
                    size * sin,
                    size * cos,
                    origin_x,
                    page_height - origin_y,
                )
                width = (x1 - x0) if abs(cos) >= abs(sin) else (y1 - y0)
                yield TextRun(text=text, transform=transform, width=width, height=size)


def _png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _fingerprint(pdf_path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(pdf_path, "rb") as handle:
        for chunk in iter(lambda: handle.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()[:12]

"""Tests for geometric page segmentation."""

from __future__ import annotations

from pathlib import Path

import pytest
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from config import Settings
from src.exercise_harvester.attachments import LocalAttachmentStore
from src.exercise_harvester.page_segmenter import (
    ExtractionError,
    PageSegmenter,
    SegmentationConfig,
    TextRun,
    compose_transforms,
    run_to_box,
    segment_page,
    viewport_transform,
)
from src.exercise_harvester.pipeline import BlockStatus

PAGE_HEIGHT = 800.0
LINE_ONE = "1. Solve the equation 2x + 3 = 11 for x."
LINE_TWO = "2. Compute the derivative of x^2 sin x."


def _run(text: str, left: float, top: float, *, size: float = 10.0, width: float = 100.0) -> TextRun:
    """Build a run whose glyph box starts at ``top`` pixels from the page top at 72 DPI."""
    baseline_from_top = top + size
    return TextRun(
        text=text,
        transform=(size, 0.0, 0.0, size, left, PAGE_HEIGHT - baseline_from_top),
        width=width,
        height=size,
    )


def _segment(runs, **config):
    options = {"target_dpi": 72}
    options.update(config)
    return segment_page(
        runs,
        page_id="doc-p1",
        page_number=1,
        page_height=PAGE_HEIGHT,
        page_width=600.0,
        config=SegmentationConfig(**options),
        raster_image="pages/doc-p1.png",
    )


def test_compose_applies_first_then_second():
    scale = viewport_transform(100.0, 2.0)
    translate = (1.0, 0.0, 0.0, 1.0, 10.0, 20.0)
    composed = compose_transforms(translate, scale)
    assert composed == (2.0, 0.0, 0.0, -2.0, 20.0, 160.0)


def test_run_box_measures_top_from_page_top():
    box = run_to_box(_run("x", 50.0, 100.0), viewport_transform(PAGE_HEIGHT, 2.0))
    assert box.left == pytest.approx(100.0)
    assert box.top == pytest.approx(200.0)
    assert box.bottom == pytest.approx(220.0)
    assert box.right == pytest.approx(300.0)


def test_gap_equal_to_threshold_stays_in_block():
    # First line spans 100..110, so a top of 128 is exactly an 18 pixel gap.
    blocks = _segment([_run(LINE_ONE, 72, 100), _run(LINE_TWO, 72, 128)])

    assert len(blocks) == 1
    assert blocks[0].text == f"{LINE_ONE}\n{LINE_TWO}"
    assert blocks[0].line_count == 2


def test_gap_above_threshold_starts_new_block():
    blocks = _segment([_run(LINE_ONE, 72, 100), _run(LINE_TWO, 72, 128.5)])

    assert [block.id for block in blocks] == ["doc-p1-b0", "doc-p1-b1"]
    assert [block.text for block in blocks] == [LINE_ONE, LINE_TWO]
    assert all(block.raster_image == "pages/doc-p1.png" for block in blocks)
    assert all(block.status == BlockStatus.PENDING for block in blocks)


def test_minimum_text_length_is_inclusive():
    kept = _segment([_run("x" * 24, 72, 100)])
    assert kept[0].id == "doc-p1-b0"
    assert kept[0].text_length == 24
    assert kept[0].requires_ocr is False

    dropped = _segment([_run("x" * 23, 72, 100)])
    assert [block.id for block in dropped] == ["doc-p1-img"]


def test_empty_page_gets_single_ocr_block():
    blocks = _segment([_run("   ", 72, 100)])

    assert len(blocks) == 1
    block = blocks[0]
    assert block.id == "doc-p1-img"
    assert block.requires_ocr is True
    assert block.text == ""
    assert block.raster_image == "pages/doc-p1.png"
    assert block.rect.width == pytest.approx(600.0)
    assert block.rect.height == pytest.approx(PAGE_HEIGHT)


def test_runs_on_one_line_are_ordered_and_spaced():
    runs = [
        _run("for x.", 260, 101, width=40),
        _run("Solve", 72, 100, width=40),
        _run("2x+3=11", 122, 100, width=60),
        _run("exactly", 190, 100, width=60),
    ]
    blocks = _segment(runs, min_text_length=1)

    # Gaps: Solve->2x+3=11 is 10px (no space), 2x+3=11->exactly is 8px, exactly->for is 10px.
    assert blocks[0].text == "Solve2x+3=11exactlyfor x."

    spaced = _segment(
        [_run("Solve", 72, 100, width=40), _run("for x.", 140, 100, width=40)],
        min_text_length=1,
    )
    assert spaced[0].text == "Solve for x."


def test_segmentation_is_deterministic():
    runs = [_run(LINE_ONE, 72, 100), _run(LINE_TWO, 72, 200), _run("tail text that is long enough", 72, 300)]
    first = _segment(runs)
    second = _segment(list(runs))
    assert [(b.id, b.text, b.rect) for b in first] == [(b.id, b.text, b.rect) for b in second]


def _settings(tmp_path: Path) -> Settings:
    settings = Settings(
        data_dir=tmp_path / "data",
        output_dir=tmp_path / "outputs",
        temp_dir=tmp_path / "tmp",
        pdf_render_dpi=72,
    )
    settings.ensure_directories()
    return settings


def _build_sample_pdf(tmp_path: Path) -> Path:
    pdf_path = tmp_path / "sample.pdf"
    pdf_canvas = canvas.Canvas(str(pdf_path), pagesize=letter)
    pdf_canvas.drawString(72, 720, LINE_ONE)
    pdf_canvas.drawString(72, 705, "Show every step of your work clearly.")
    pdf_canvas.drawString(72, 600, LINE_TWO)
    pdf_canvas.showPage()
    pdf_canvas.showPage()
    pdf_canvas.save()
    return pdf_path


def test_segment_document_with_pymupdf(tmp_path):
    pdf_path = _build_sample_pdf(tmp_path)
    settings = _settings(tmp_path)
    store = LocalAttachmentStore(settings.attachment_dir)
    segmenter = PageSegmenter(settings, store)

    meta, pages, blocks = segmenter.segment_document(pdf_path)

    assert meta.name == "sample.pdf"
    assert meta.page_count == 2
    assert [page.page_number for page in pages] == [1, 2]
    assert pages[0].id == f"{meta.fingerprint}-p1"
    assert pages[0].render_dpi == 72

    first_page = [block for block in blocks if block.page_number == 1]
    assert [block.id for block in first_page] == [f"{pages[0].id}-b0", f"{pages[0].id}-b1"]
    assert first_page[0].text.splitlines()[0] == LINE_ONE
    assert first_page[0].line_count == 2
    assert first_page[1].text == LINE_TWO

    second_page = [block for block in blocks if block.page_number == 2]
    assert [block.id for block in second_page] == [f"{pages[1].id}-img"]
    assert second_page[0].requires_ocr is True

    raster = store.get(pages[0].raster_image)
    assert raster is not None and raster.startswith(b"\x89PNG")


def test_segment_document_is_deterministic(tmp_path):
    pdf_path = _build_sample_pdf(tmp_path)
    settings = _settings(tmp_path)
    segmenter = PageSegmenter(settings, LocalAttachmentStore(settings.attachment_dir))

    _, _, first = segmenter.segment_document(pdf_path)
    _, _, second = segmenter.segment_document(pdf_path)

    assert [(b.id, b.text, b.rect) for b in first] == [(b.id, b.text, b.rect) for b in second]


def test_segment_document_falls_back_to_pdf2image(tmp_path, monkeypatch):
    pdf_path = _build_sample_pdf(tmp_path)
    settings = _settings(tmp_path)
    segmenter = PageSegmenter(settings, LocalAttachmentStore(settings.attachment_dir))
    called = []

    def fail(page):
        raise RuntimeError("boom")

    def fake_fallback(path, page_number):
        called.append(page_number)
        return b"fallback-png"

    monkeypatch.setattr(segmenter, "_render_with_pymupdf", fail)
    monkeypatch.setattr(segmenter, "_render_with_pdf2image", fake_fallback)

    _, pages, _ = segmenter.segment_document(pdf_path)

    assert called == [1, 2]
    assert segmenter.attachments.get(pages[0].raster_image) == b"fallback-png"


def test_segment_document_missing_pdf(tmp_path):
    settings = _settings(tmp_path)
    segmenter = PageSegmenter(settings, LocalAttachmentStore(settings.attachment_dir))
    with pytest.raises(ExtractionError):
        segmenter.segment_document(tmp_path / "missing.pdf")


def test_segment_document_unreadable_pdf(tmp_path):
    bogus = tmp_path / "bogus.pdf"
    bogus.write_text("not a pdf")
    settings = _settings(tmp_path)
    segmenter = PageSegmenter(settings, LocalAttachmentStore(settings.attachment_dir))
    with pytest.raises(ExtractionError):
        segmenter.segment_document(bogus)

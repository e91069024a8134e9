"""Tests for the block classification stage."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from config import Settings
from src.exercise_harvester.attachments import LocalAttachmentStore
from src.exercise_harvester.block_classifier import (
    BlockClassifier,
    ClassificationParseError,
    NoExtractableText,
)
from src.exercise_harvester.json_payload import ResponseParseError
from src.exercise_harvester.ocr_processor import OCRProcessor, OcrUnavailable
from src.exercise_harvester.pipeline import Block, Rect


class _StubGenerator:
    def __init__(self, reply: str):
        self.reply = reply
        self.calls = []

    async def generate(self, system_prompt, user_prompt, *, image=None, temperature=0.0, model=None):
        self.calls.append({"system": system_prompt, "user": user_prompt, "temperature": temperature})
        return self.reply


class _StubOCR:
    def __init__(self, text: str = "Recovered exercise text", available: bool = True):
        self.text = text
        self.available = available
        self.images = []

    def is_available(self) -> bool:
        return self.available

    async def recognize(self, image_bytes: bytes) -> str:
        self.images.append(image_bytes)
        return self.text


def _settings(tmp_path: Path, **overrides) -> Settings:
    settings = Settings(data_dir=tmp_path / "data", output_dir=tmp_path / "outputs", **overrides)
    settings.ensure_directories()
    return settings


def _block(text: str = "1. Find x if 2x = 4.\n2. Prove that 1 + 1 = 2.", **overrides) -> Block:
    values = dict(
        id="doc-p1-b0",
        page_id="doc-p1",
        page_number=1,
        index=0,
        rect=Rect(0, 0, 100, 40),
        text=text,
        line_count=2,
        text_length=len(text),
    )
    values.update(overrides)
    return Block(**values)


def test_classify_block_builds_candidates(tmp_path, caplog):
    reply = json.dumps(
        {
            "problems": [
                {"id": "model-1", "rawText": " Find x if 2x = 4. ", "classification": "exercise", "confidence": 0.9},
                {"rawText": "   "},
                {"rawText": "Prove that 1 + 1 = 2.", "hasImage": True, "confidence": 7, "notes": " proof "},
                {"rawText": "Evaluate the sum.", "confidence": "high", "skipReason": ""},
            ],
            "discarded": [{"reason": "definition", "snippet": "A group is..."}],
        }
    )
    generator = _StubGenerator(f"```json\n{reply}\n```")
    classifier = BlockClassifier(_settings(tmp_path), generator)

    with caplog.at_level(logging.DEBUG):
        candidates = asyncio.run(classifier.classify_block(_block(), min_confidence=0.45))

    assert [candidate.id for candidate in candidates] == ["doc-p1-b0-q1", "doc-p1-b0-q2", "doc-p1-b0-q3"]
    first, second, third = candidates
    assert first.text == "Find x if 2x = 4."
    assert first.classification == "exercise"
    assert first.confidence == 0.9
    assert second.has_image is True
    assert second.confidence == 1.0
    assert second.notes == "proof"
    assert second.classification == "unspecified"
    assert third.confidence == 0.45
    assert third.skip_reason is None
    assert [candidate.index for candidate in candidates] == [0, 1, 2]
    assert all(candidate.page_id == "doc-p1" for candidate in candidates)

    call = generator.calls[0]
    assert call["temperature"] == 0.0
    assert "Page 1, Block doc-p1-b0" in call["user"]
    assert any("discarded span" in record.message for record in caplog.records)


def test_classify_block_without_problems_returns_empty(tmp_path):
    classifier = BlockClassifier(_settings(tmp_path), _StubGenerator('{"problems": [], "discarded": []}'))
    assert asyncio.run(classifier.classify_block(_block(), 0.4)) == []


def test_empty_text_raises_without_calling_generator(tmp_path):
    generator = _StubGenerator("{}")
    classifier = BlockClassifier(_settings(tmp_path), generator)

    with pytest.raises(NoExtractableText, match="no extractable text"):
        asyncio.run(classifier.classify_block(_block(text="  "), 0.4))
    assert generator.calls == []


def test_unparseable_reply_raises_parse_error(tmp_path):
    classifier = BlockClassifier(_settings(tmp_path), _StubGenerator("I could not find any problems."))

    with pytest.raises(ClassificationParseError) as excinfo:
        asyncio.run(classifier.classify_block(_block(), 0.4))
    assert isinstance(excinfo.value, ResponseParseError)


def test_custom_system_prompt_is_used(tmp_path):
    generator = _StubGenerator('{"problems": []}')
    classifier = BlockClassifier(_settings(tmp_path, classifier_prompt="Only geometry."), generator)
    asyncio.run(classifier.classify_block(_block(), 0.4))
    assert generator.calls[0]["system"] == "Only geometry."


def test_recover_text_reads_raster_from_attachments(tmp_path):
    settings = _settings(tmp_path)
    store = LocalAttachmentStore(settings.attachment_dir)
    store.save("pages/doc-p1.png", b"png-bytes")
    ocr = _StubOCR()
    classifier = BlockClassifier(settings, _StubGenerator("{}"), ocr, store)
    block = _block(text="", id="doc-p1-img", requires_ocr=True, raster_image="pages/doc-p1.png")

    text = asyncio.run(classifier.recover_text(block))

    assert text == "Recovered exercise text"
    assert ocr.images == [b"png-bytes"]


def test_recover_text_skips_blocks_with_text(tmp_path):
    ocr = _StubOCR()
    classifier = BlockClassifier(_settings(tmp_path), _StubGenerator("{}"), ocr)
    assert asyncio.run(classifier.recover_text(_block())) is None
    assert ocr.images == []


def test_recover_text_without_ocr_backend(tmp_path):
    settings = _settings(tmp_path, ocr_backend="none")
    classifier = BlockClassifier(settings, _StubGenerator("{}"), OCRProcessor(settings))
    block = _block(text="", requires_ocr=True, raster_image="pages/doc-p1.png")

    with pytest.raises(OcrUnavailable):
        asyncio.run(classifier.recover_text(block))


def test_recover_text_missing_raster(tmp_path):
    classifier = BlockClassifier(_settings(tmp_path), _StubGenerator("{}"), _StubOCR())
    block = _block(text="", requires_ocr=True, raster_image="pages/missing.png")

    with pytest.raises(OcrUnavailable):
        asyncio.run(classifier.recover_text(block))

"""Locate and decode the structured payload embedded in a free-form model reply."""

from __future__ import annotations

import json
from typing import Any, Dict


class ResponseParseError(RuntimeError):
    """Raised when a model reply carries no decodable JSON object."""


_DECODER = json.JSONDecoder()


def extract_json_object(raw: str) -> Dict[str, Any]:
    """
    Return the outermost JSON object embedded in ``raw``.

    Each ``{`` is tried in order as a start position and decoded with a real
    JSON decoder, so braces inside string literals never end the object early
    and code fences or commentary around the payload are ignored. A brace that
    is rejected on its very first token (prose such as ``{see below}`` or TeX
    such as ``\\frac{1}{2}``) is skipped. A brace that starts decoding and then
    breaks is reported as malformed instead of falling through to one of its
    nested objects.

    Raises:
        ResponseParseError: when no JSON object can be recovered.
    """
    if not raw or not raw.strip():
        raise ResponseParseError("Model reply is empty")

    text = raw.strip()
    index = text.find("{")
    if index == -1:
        raise ResponseParseError("Model reply does not contain a JSON object")

    empty: Dict[str, Any] | None = None
    while index != -1:
        try:
            value, _ = _DECODER.raw_decode(text, index)
        except json.JSONDecodeError as exc:
            if exc.pos > _first_token(text, index):
                raise ResponseParseError(
                    f"Model reply contains malformed JSON: {exc.msg} (char {exc.pos})"
                ) from exc
        else:
            if isinstance(value, dict) and value:
                return value
            if isinstance(value, dict) and empty is None:
                empty = value
        index = text.find("{", index + 1)

    if empty is not None:
        return empty
    raise ResponseParseError("Model reply does not contain a JSON object")


def _first_token(text: str, brace: int) -> int:
    position = brace + 1
    while position < len(text) and text[position].isspace():
        position += 1
    return position

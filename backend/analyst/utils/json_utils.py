"""
JSON extraction and parsing utilities for model responses.

Models often return JSON wrapped in markdown code fences or with
surrounding chatter, even in JSON response mode.

Example:
    from analyst.utils.json_utils import decode_model_json

    decode_model_json('```json\\n{"quotes": []}\\n```')
    # {'quotes': []}
"""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```\s*$")


class ModelJSONError(ValueError):
    """Model text is empty or not decodable JSON."""

    def __init__(self, message: str, empty: bool = False):
        super().__init__(message)
        self.empty = empty


def strip_code_fences(text: str) -> str:
    """
    Remove a markdown code fence around the payload.

    Handles a closed fence anywhere in the text and an unclosed leading
    fence (truncated responses).

    Example:
        >>> strip_code_fences('```json\\n{"a": 1}\\n```')
        '{"a": 1}'
    """
    if not text:
        return ""

    cleaned = text.strip()
    block = _FENCE_BLOCK.search(cleaned)
    if block:
        return block.group(1).strip()

    cleaned = _LEADING_FENCE.sub("", cleaned)
    return _TRAILING_FENCE.sub("", cleaned).strip()


def extract_json(text: str) -> str:
    """
    Return the first balanced JSON object or array embedded in text.

    Brackets inside string literals are ignored. An unbalanced tail is
    returned as-is so the decoder reports the real error.

    Example:
        >>> extract_json('Sure! {"quotes": [{"quote": "a}b"}]} Hope this helps.')
        '{"quotes": [{"quote": "a}b"}]}'
    """
    cleaned = strip_code_fences(text)
    starts = [index for index in (cleaned.find("{"), cleaned.find("[")) if index != -1]
    if not starts:
        return ""

    start = min(starts)
    closing = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escaped = False

    for offset, char in enumerate(cleaned[start:]):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in closing:
            stack.append(closing[char])
        elif stack and char == stack[-1]:
            stack.pop()
            if not stack:
                return cleaned[start : start + offset + 1]

    return cleaned[start:]


def decode_model_json(text: str, provider_label: str = "Model") -> Any:
    """
    Decode model output text into JSON.

    Tries the de-fenced text first, then the first balanced JSON
    object/array inside it.

    Args:
        text: Raw text returned by the model
        provider_label: Name used in error messages ("Gemini")

    Returns:
        Decoded JSON value

    Raises:
        ModelJSONError: Text is empty ("empty response") or undecodable ("invalid JSON")
    """
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        raise ModelJSONError(f"{provider_label} returned an empty response.", empty=True)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    candidate = extract_json(cleaned)
    if candidate:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            preview = cleaned[:200] + "..." if len(cleaned) > 200 else cleaned
            logger.debug(f"Failed to parse model JSON: {e}. Input: {preview}")

    raise ModelJSONError(f"{provider_label} returned invalid JSON.")

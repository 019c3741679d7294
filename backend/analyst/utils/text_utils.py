"""
Text normalization helpers shared by shaping, validation and ranking.

Example:
    from analyst.utils.text_utils import normalize_token, clamp_text

    normalize_token("Order-Book")   # 'order book'
    clamp_text("a" * 300, 260)      # 259 chars + '…'
"""

import re

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_TOKEN = re.compile(r"[a-z0-9]+")

ELLIPSIS = "…"


def collapse_whitespace(value: str) -> str:
    """Collapse runs of whitespace to single spaces and trim."""
    return _WHITESPACE.sub(" ", value or "").strip()


def normalize_token(value: str) -> str:
    """
    Lowercase and replace non-alphanumerics with single spaces.

    Example:
        >>> normalize_token("  Order-Book/Backlog ")
        'order book backlog'
    """
    return _NON_ALNUM.sub(" ", (value or "").lower()).strip()


def normalize_compact(value: str) -> str:
    """
    Lowercase and drop every non-alphanumeric character.

    Example:
        >>> normalize_compact("Order-Book")
        'orderbook'
    """
    return _NON_ALNUM.sub("", (value or "").lower())


def tokenize(value: str) -> list[str]:
    """Lowercase alphanumeric tokens in order of appearance."""
    return _TOKEN.findall((value or "").lower())


def clamp_text(value: str, max_chars: int) -> str:
    """
    Trim text to max_chars, ending with an ellipsis when cut.

    Args:
        value: Text to clamp
        max_chars: Maximum length including the ellipsis

    Returns:
        Original text when it fits, else a shortened copy
    """
    if max_chars <= 0 or len(value) <= max_chars:
        return value
    return value[: max_chars - 1].rstrip() + ELLIPSIS


def capitalize_first(value: str) -> str:
    """Uppercase the first character, leaving the rest untouched."""
    if not value:
        return value
    return value[0].upper() + value[1:]

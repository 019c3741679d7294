"""
Shared utilities.

Modules:
    json_utils: JSON extraction and decoding of model responses
    text_utils: Whitespace, token and length normalization
"""

from analyst.utils.json_utils import (
    ModelJSONError,
    decode_model_json,
    extract_json,
    strip_code_fences,
)
from analyst.utils.text_utils import (
    capitalize_first,
    clamp_text,
    collapse_whitespace,
    normalize_compact,
    normalize_token,
    tokenize,
)

__all__ = [
    # json_utils
    "ModelJSONError",
    "decode_model_json",
    "extract_json",
    "strip_code_fences",
    # text_utils
    "capitalize_first",
    "clamp_text",
    "collapse_whitespace",
    "normalize_compact",
    "normalize_token",
    "tokenize",
]

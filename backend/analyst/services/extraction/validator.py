"""
Response validation and repair.

validate() checks a decoded model response against a declarative policy and
returns a normalized copy; the input is never mutated. Cosmetic problems are
repaired (trimming, re-casing, enum bucketing, boilerplate removal, length
clamping); only structurally unrecoverable problems produce an error.

Check order:
    1. root is an object
    2. required root strings
    3. root enums and text sanitation
    4. array cardinality, then per item: required strings, enums, text, hook
    5. root hook (cross-item repairs such as de-duplication)

Every repair is idempotent, so validating a normalized value returns it
unchanged with no error.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from analyst.utils.text_utils import capitalize_first, clamp_text, collapse_whitespace

# Hooks mutate the (copied) object and may return an error message.
ItemHook = Callable[[dict, int, dict], "str | None"]
RootHook = Callable[[dict, dict], "str | None"]


@dataclass
class ValidationResult:
    """
    Outcome of validate().

    Attributes:
        error: None when valid, else a human-readable reason
        value: Normalized copy of the candidate (also returned on error)
        stats: Repair counters (e.g. "normalizedPageCount")
    """

    error: str | None
    value: Any
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def normalized_page_count(self) -> int:
        return self.stats.get("normalizedPageCount", 0)


# =============================================================================
# Policies
# =============================================================================


@dataclass(frozen=True)
class EnumRule:
    """Regex rule that buckets free text into an allowed value."""

    bucket: str
    pattern: re.Pattern

    @classmethod
    def of(cls, bucket: str, regex: str) -> "EnumRule":
        return cls(bucket, re.compile(regex, re.IGNORECASE))


@dataclass(frozen=True)
class EnumPolicy:
    """
    Allowed values plus prioritized repair rules.

    Attributes:
        allowed: Canonical allowed values
        rules: Tried in order when there is no exact match
        catch_all: Bucket used when no rule matches (None = reject)
    """

    allowed: tuple[str, ...]
    rules: tuple[EnumRule, ...] = ()
    catch_all: str | None = None

    def coerce(self, value: Any) -> str | None:
        """
        Map a value to an allowed bucket.

        Exact (case-insensitive) match first, then the first matching
        rule, then the catch-all.

        Returns:
            Allowed value, or None when it cannot be placed
        """
        text = collapse_whitespace(value) if isinstance(value, str) else ""
        lowered = text.lower()
        for allowed in self.allowed:
            if allowed.lower() == lowered:
                return allowed
        if text:
            for rule in self.rules:
                if rule.pattern.search(text):
                    return rule.bucket
        return self.catch_all


@dataclass(frozen=True)
class TextPolicy:
    """
    Free-text sanitation.

    Attributes:
        max_chars: Clamp length (0 = unlimited)
        banned_openers: Leading boilerplate removed repeatedly
        capitalize: Uppercase the first character
    """

    max_chars: int = 0
    banned_openers: re.Pattern | None = None
    capitalize: bool = False

    def sanitize(self, value: str) -> str:
        text = collapse_whitespace(value)
        if self.banned_openers is not None:
            while True:
                stripped = self.banned_openers.sub("", text, count=1).strip()
                if stripped == text:
                    break
                text = stripped
        if self.capitalize:
            text = capitalize_first(text)
        if self.max_chars:
            text = clamp_text(text, self.max_chars)
        return text


@dataclass(frozen=True)
class ArrayPolicy:
    """
    Policy for an array of objects.

    Attributes:
        field_name: Root field holding the array
        min_items: Minimum cardinality
        max_items: Maximum cardinality (None = unbounded)
        required_fields: Item fields that must be non-empty strings
        optional_fields: Item string fields trimmed when present
        enums: Item field -> EnumPolicy
        texts: Item field -> TextPolicy
        item_hook: Extra per-item repair/check
        label: Item name used in messages ("Quote")
    """

    field_name: str
    min_items: int = 0
    max_items: int | None = None
    required_fields: tuple[str, ...] = ()
    optional_fields: tuple[str, ...] = ()
    enums: dict[str, EnumPolicy] = field(default_factory=dict)
    texts: dict[str, TextPolicy] = field(default_factory=dict)
    item_hook: ItemHook | None = None
    label: str = "Item"


@dataclass(frozen=True)
class ObjectPolicy:
    """
    Policy for the response root.

    Attributes:
        required_fields: Root fields that must be non-empty strings
        optional_fields: Root string fields trimmed when present
        transforms: Field -> idempotent string transform applied after trimming
        enums: Root field -> EnumPolicy
        texts: Root field -> TextPolicy
        arrays: Array policies
        root_hook: Cross-field repair/check run last
    """

    required_fields: tuple[str, ...] = ()
    optional_fields: tuple[str, ...] = ()
    transforms: dict[str, Callable[[str], str]] = field(default_factory=dict)
    enums: dict[str, EnumPolicy] = field(default_factory=dict)
    texts: dict[str, TextPolicy] = field(default_factory=dict)
    arrays: tuple[ArrayPolicy, ...] = ()
    root_hook: RootHook | None = None


# =============================================================================
# Validation
# =============================================================================


def _coerce_string(value: Any) -> str | None:
    """Trimmed string for str/number values, None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None
    return value.strip()


def _check_strings(
    target: dict,
    required: tuple[str, ...],
    optional: tuple[str, ...],
    transforms: dict[str, Callable[[str], str]],
    where: str,
) -> str | None:
    for name in required:
        text = _coerce_string(target.get(name))
        if text and name in transforms:
            text = transforms[name](text)
        if not text:
            return f"Missing or invalid field '{name}'{where}."
        target[name] = text

    for name in optional:
        if name not in target or target[name] is None:
            continue
        text = _coerce_string(target[name])
        if text is None:
            return f"Invalid field '{name}'{where}."
        target[name] = transforms[name](text) if name in transforms else text
    return None


def _apply_enums(target: dict, enums: dict[str, EnumPolicy], where: str) -> str | None:
    for name, enum_policy in enums.items():
        coerced = enum_policy.coerce(target.get(name))
        if coerced is None:
            return f"Invalid value for '{name}'{where}."
        target[name] = coerced
    return None


def _apply_texts(target: dict, texts: dict[str, TextPolicy], where: str) -> str | None:
    for name, text_policy in texts.items():
        if name not in target:
            continue
        raw = _coerce_string(target[name])
        if raw is None:
            return f"Invalid field '{name}'{where}."
        sanitized = text_policy.sanitize(raw)
        if not sanitized and raw:
            return f"Field '{name}'{where} is empty after normalization."
        target[name] = sanitized
    return None


def _validate_array(root: dict, policy: ArrayPolicy, stats: dict) -> str | None:
    items = root.get(policy.field_name)
    if items is None and policy.min_items == 0:
        root[policy.field_name] = []
        return None
    if not isinstance(items, list):
        return f"Field '{policy.field_name}' must be an array."
    if len(items) < policy.min_items:
        return f"Field '{policy.field_name}' must contain at least {policy.min_items} item(s)."
    if policy.max_items is not None and len(items) > policy.max_items:
        return f"Field '{policy.field_name}' must contain at most {policy.max_items} item(s)."

    for index, item in enumerate(items):
        where = f" in {policy.label} #{index + 1}"
        if not isinstance(item, dict):
            return f"{policy.label} #{index + 1} is not an object."
        error = (
            _check_strings(item, policy.required_fields, policy.optional_fields, {}, where)
            or _apply_enums(item, policy.enums, where)
            or _apply_texts(item, policy.texts, where)
        )
        if error:
            return error
        if policy.item_hook is not None:
            error = policy.item_hook(item, index, stats)
            if error:
                return error
    return None


def validate(raw: Any, policy: ObjectPolicy) -> ValidationResult:
    """
    Validate and normalize a decoded model response.

    Args:
        raw: Decoded JSON value (not mutated)
        policy: Endpoint policy

    Returns:
        ValidationResult with a normalized copy and optional error
    """
    value = copy.deepcopy(raw)
    stats: dict[str, int] = {}

    if not isinstance(value, dict):
        return ValidationResult("Model response is not a JSON object.", value, stats)

    error = (
        _check_strings(value, policy.required_fields, policy.optional_fields, policy.transforms, "")
        or _apply_enums(value, policy.enums, "")
        or _apply_texts(value, policy.texts, "")
    )
    if error:
        return ValidationResult(error, value, stats)

    for array_policy in policy.arrays:
        error = _validate_array(value, array_policy, stats)
        if error:
            return ValidationResult(error, value, stats)

    if policy.root_hook is not None:
        error = policy.root_hook(value, stats)
        if error:
            return ValidationResult(error, value, stats)

    return ValidationResult(None, value, stats)

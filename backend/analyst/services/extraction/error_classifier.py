"""
Upstream error classification.

Model providers do not expose a stable machine-readable error taxonomy, so
failures are classified by case-insensitive substring matching over the error
text plus the HTTP status. Rules are data: add a ClassificationRule to RULES
(and bump RULESET_VERSION) to teach the classifier a new upstream phrasing.

Example:
    result = classify("Quota exceeded. Please retry in 12.5s.", 429)
    result.error_class   # ErrorClass.RATE_LIMITED
    result.retry_after   # 13
"""

import math
import re
from dataclasses import dataclass
from enum import Enum

RULESET_VERSION = "2026.10"

RETRY_AFTER_PATTERN = re.compile(r"retry in\s+([\d.]+)\s*s", re.IGNORECASE)


class ErrorClass(str, Enum):
    """Taxonomy tag for a failed upstream invocation."""

    RATE_LIMITED = "rate_limited"
    SCHEMA_CONSTRAINED = "schema_constrained"
    OVERLOADED = "overloaded"
    TIMEOUT = "timeout"
    LOCATION_BLOCKED = "location_blocked"
    IMAGE_UNPROCESSABLE = "image_unprocessable"
    TRANSIENT_UPSTREAM = "transient_upstream"
    STRUCTURED_OUTPUT_INVALID = "structured_output_invalid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassificationRule:
    """
    One classification rule.

    A rule matches when any needle occurs in the lowercased message
    or the HTTP status is one of `statuses`.

    Attributes:
        error_class: Tag assigned on match
        needles: Lowercase substrings to look for
        statuses: HTTP statuses that imply this tag
    """

    error_class: ErrorClass
    needles: tuple[str, ...] = ()
    statuses: tuple[int, ...] = ()

    def matches(self, message: str, http_status: int | None) -> bool:
        if http_status is not None and http_status in self.statuses:
            return True
        return any(needle in message for needle in self.needles)


@dataclass(frozen=True)
class ClassifiedError:
    """
    Classified upstream failure.

    Attributes:
        error_class: Taxonomy tag
        message: Human-readable upstream message
        retry_after: Seconds to wait before retrying (rate limits only)
        http_status: Upstream HTTP status if there was a response
    """

    error_class: ErrorClass
    message: str
    retry_after: int | None = None
    http_status: int | None = None


# Order matters: first match wins. Phrase rules that are more specific than
# a bare status code come first (a 429 body may also say "resource exhausted",
# a 400 body may carry "location is not supported").
RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        ErrorClass.LOCATION_BLOCKED,
        needles=("location is not supported",),
    ),
    ClassificationRule(
        ErrorClass.RATE_LIMITED,
        needles=(
            "quota",
            "rate limit",
            "too many requests",
            "resource exhausted",
            "resource_exhausted",
            "generate_content_free_tier_requests",
        ),
        statuses=(429,),
    ),
    ClassificationRule(
        ErrorClass.SCHEMA_CONSTRAINED,
        needles=(
            "too many states",
            "specified schema produces a constraint",
            "schema produces a constraint",
        ),
    ),
    ClassificationRule(
        ErrorClass.IMAGE_UNPROCESSABLE,
        needles=("unable to process input image",),
    ),
    ClassificationRule(
        ErrorClass.STRUCTURED_OUTPUT_INVALID,
        needles=("invalid json", "unable to parse json", "empty response"),
    ),
    ClassificationRule(
        ErrorClass.OVERLOADED,
        needles=("overload", "high demand", "temporarily unavailable"),
        statuses=(503,),
    ),
    ClassificationRule(
        ErrorClass.TIMEOUT,
        needles=("timed out", "timeout", "deadline exceeded"),
        statuses=(408,),
    ),
    ClassificationRule(
        ErrorClass.TRANSIENT_UPSTREAM,
        needles=(
            "upstream connect error",
            "connection reset",
            "bad gateway",
            "internal error",
        ),
        statuses=(500, 502, 504, 524),
    ),
)


def parse_retry_after(message: str, header_value: str | None = None) -> int | None:
    """
    Parse a retry-after hint in whole seconds.

    An explicit Retry-After header (delta-seconds) wins over the
    "retry in N.Ns" phrasing found in provider error messages.
    Fractions round up, and the result is at least 1.

    Args:
        message: Upstream error message
        header_value: Optional Retry-After header value

    Returns:
        Seconds to wait, or None when no hint is present
    """
    if header_value:
        try:
            return max(1, math.ceil(float(header_value.strip())))
        except ValueError:
            pass  # HTTP-date form is not used by our providers

    match = RETRY_AFTER_PATTERN.search(message or "")
    if not match:
        return None
    try:
        return max(1, math.ceil(float(match.group(1))))
    except ValueError:
        return None


class Classifier:
    """
    Rule-table classifier.

    Extra rules are consulted before the built-in table, so a deployment
    can add or override phrasings without touching call sites.

    Example:
        classifier = Classifier(extra_rules=[
            ClassificationRule(ErrorClass.OVERLOADED, needles=("capacity",)),
        ])
        classifier.classify("No capacity available", None).error_class
    """

    def __init__(self, extra_rules: list[ClassificationRule] | None = None):
        self.rules: tuple[ClassificationRule, ...] = tuple(extra_rules or ()) + RULES

    def classify_class(self, message: str, http_status: int | None = None) -> ErrorClass:
        """Return only the taxonomy tag for a message/status pair."""
        lowered = (message or "").lower()
        for rule in self.rules:
            if rule.matches(lowered, http_status):
                return rule.error_class
        return ErrorClass.UNKNOWN

    def classify(
        self,
        message: str,
        http_status: int | None = None,
        retry_after_header: str | None = None,
    ) -> ClassifiedError:
        """
        Classify an upstream failure.

        Args:
            message: Upstream error text
            http_status: Upstream HTTP status, None for transport failures
            retry_after_header: Optional Retry-After header value

        Returns:
            ClassifiedError with tag, message and retry-after hint
        """
        error_class = self.classify_class(message, http_status)
        retry_after = None
        if error_class == ErrorClass.RATE_LIMITED:
            retry_after = parse_retry_after(message, retry_after_header)
        return ClassifiedError(
            error_class=error_class,
            message=message or f"Upstream request failed with status {http_status}.",
            retry_after=retry_after,
            http_status=http_status,
        )


_default_classifier = Classifier()


def classify(
    message: str,
    http_status: int | None = None,
    retry_after_header: str | None = None,
) -> ClassifiedError:
    """Classify with the built-in rule table."""
    return _default_classifier.classify(message, http_status, retry_after_header)

import pytest

from analyst.services.extraction.error_classifier import (
    ClassificationRule,
    Classifier,
    ErrorClass,
    classify,
    parse_retry_after,
)


@pytest.mark.parametrize(
    "message, status, expected",
    [
        ("User location is not supported for the API use.", 400, ErrorClass.LOCATION_BLOCKED),
        ("Resource has been exhausted (e.g. check quota).", 429, ErrorClass.RATE_LIMITED),
        ("", 429, ErrorClass.RATE_LIMITED),
        ("generate_content_free_tier_requests limit hit", 400, ErrorClass.RATE_LIMITED),
        ("The specified schema produces a constraint that has too many states", 400, ErrorClass.SCHEMA_CONSTRAINED),
        ("Unable to process input image. Please retry.", 400, ErrorClass.IMAGE_UNPROCESSABLE),
        ("Gemini returned invalid JSON.", None, ErrorClass.STRUCTURED_OUTPUT_INVALID),
        ("Gemini returned an empty response.", None, ErrorClass.STRUCTURED_OUTPUT_INVALID),
        ("The model is overloaded. Please try again later.", 503, ErrorClass.OVERLOADED),
        ("", 503, ErrorClass.OVERLOADED),
        ("Deadline exceeded", None, ErrorClass.TIMEOUT),
        ("", 408, ErrorClass.TIMEOUT),
        ("upstream connect error or disconnect/reset before headers", None, ErrorClass.TRANSIENT_UPSTREAM),
        ("", 502, ErrorClass.TRANSIENT_UPSTREAM),
        ("", 524, ErrorClass.TRANSIENT_UPSTREAM),
        ("Invalid argument: temperature", 400, ErrorClass.UNKNOWN),
    ],
)
def test_rule_table(message, status, expected):
    assert classify(message, status).error_class == expected


def test_location_rule_wins_over_status():
    # A 429 body that reports an unsupported location is still location_blocked
    assert classify("User location is not supported", 429).error_class == ErrorClass.LOCATION_BLOCKED


def test_rate_limit_retry_after_from_message():
    result = classify("Quota exceeded. Please retry in 12.5s.", 429)
    assert result.error_class == ErrorClass.RATE_LIMITED
    assert result.retry_after == 13
    assert result.http_status == 429


def test_retry_after_header_wins():
    result = classify("Please retry in 40s", 429, retry_after_header="7")
    assert result.retry_after == 7


def test_retry_after_only_for_rate_limits():
    assert classify("overloaded, retry in 5s", 503).retry_after is None


def test_parse_retry_after():
    assert parse_retry_after("please RETRY IN 0.2s") == 1
    assert parse_retry_after("no hint here") is None
    assert parse_retry_after("", "Wed, 21 Oct 2015 07:28:00 GMT") is None


def test_empty_message_gets_status_message():
    assert classify("", 500).message == "Upstream request failed with status 500."


def test_extra_rules_take_precedence():
    classifier = Classifier(extra_rules=[ClassificationRule(ErrorClass.OVERLOADED, needles=("no capacity",))])
    assert classifier.classify_class("No capacity available right now", 400) == ErrorClass.OVERLOADED
    assert classifier.classify_class("quota", 429) == ErrorClass.RATE_LIMITED

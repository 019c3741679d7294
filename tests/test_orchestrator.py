import pytest

from conftest import StubClient, failure

from analyst.services.ai_clients.base import InvocationRequest
from analyst.services.extraction.attempt_planner import plan_for
from analyst.services.extraction.error_classifier import ErrorClass
from analyst.services.extraction.orchestrator import (
    AttemptState,
    ExtractionFailed,
    ExtractionOrchestrator,
    FallbackPolicy,
    map_error_status,
)
from analyst.services.extraction.validator import ObjectPolicy, validate

FLASH = "gemini-2.5-flash"
FLASH3 = "gemini-3-flash-preview"
PRO = "gemini-3-pro-preview"


def request_factory(attempt):
    return InvocationRequest(prompt="p", response_schema={}, request_id="req-orch")


def require_company(raw):
    return validate(raw, ObjectPolicy(required_fields=("companyName",)))


@pytest.mark.asyncio
async def test_first_success_stops_the_walk(topology):
    client = StubClient("gemini", {FLASH: [{"companyName": "Acme"}]})
    result = await ExtractionOrchestrator({"gemini": client}).run(
        plan_for("gemini", None, topology), request_factory, require_company
    )

    assert result.value == {"companyName": "Acme"}
    assert result.attempts_made == 1
    assert not result.fallback_used
    assert client.models_called == [FLASH]


@pytest.mark.asyncio
async def test_falls_back_in_plan_order(topology):
    client = StubClient(
        "gemini",
        {
            FLASH: [failure(ErrorClass.OVERLOADED)],
            FLASH3: [failure(ErrorClass.RATE_LIMITED, retry_after=10)],
            PRO: [{"companyName": "Acme"}],
        },
    )
    result = await ExtractionOrchestrator({"gemini": client}).run(
        plan_for("gemini", None, topology), request_factory, require_company
    )

    assert client.models_called == [FLASH, FLASH3, PRO]
    assert result.attempt.model == PRO
    assert result.fallback_used
    assert [record.state for record in result.trace] == [
        AttemptState.FALLING_BACK,
        AttemptState.FALLING_BACK,
        AttemptState.SUCCEEDED,
    ]


@pytest.mark.asyncio
async def test_never_invokes_more_than_plan_length(topology):
    client = StubClient("gemini", default=failure(ErrorClass.TIMEOUT))
    plan = plan_for("gemini", None, topology)

    with pytest.raises(ExtractionFailed) as exc_info:
        await ExtractionOrchestrator({"gemini": client}).run(plan, request_factory)

    assert len(client.calls) == len(plan) == 3
    failed = exc_info.value
    assert failed.classified.error_class == ErrorClass.TIMEOUT
    assert failed.attempt.model == PRO
    assert failed.trace[-1].state == AttemptState.FAILED


@pytest.mark.asyncio
async def test_non_eligible_class_is_terminal(topology):
    client = StubClient("gemini", default=failure(ErrorClass.UNKNOWN, "Invalid argument"))

    with pytest.raises(ExtractionFailed) as exc_info:
        await ExtractionOrchestrator({"gemini": client}).run(
            plan_for("gemini", None, topology), request_factory
        )

    assert len(client.calls) == 1
    assert exc_info.value.mapping.status_code == 424


@pytest.mark.asyncio
async def test_endpoint_policy_can_narrow_fallback(topology):
    client = StubClient("gemini", default=failure(ErrorClass.RATE_LIMITED, retry_after=13))
    policy = FallbackPolicy.excluding(ErrorClass.RATE_LIMITED)

    with pytest.raises(ExtractionFailed) as exc_info:
        await ExtractionOrchestrator({"gemini": client}, policy).run(
            plan_for("gemini", None, topology), request_factory
        )

    assert len(client.calls) == 1
    assert exc_info.value.classified.retry_after == 13


@pytest.mark.asyncio
async def test_validation_failure_falls_back(topology):
    client = StubClient(
        "openrouter",
        {
            "minimax/minimax-01": [{"quotes": []}],
            "qwen/qwen3-vl-235b-a22b-instruct": [{"companyName": "Acme"}],
        },
    )
    result = await ExtractionOrchestrator({"openrouter": client}).run(
        plan_for("openrouter", None, topology), request_factory, require_company
    )

    assert result.attempt.model == "qwen/qwen3-vl-235b-a22b-instruct"
    assert result.trace[0].error_class == ErrorClass.STRUCTURED_OUTPUT_INVALID


@pytest.mark.asyncio
async def test_last_validation_failure_reports_reason(topology):
    client = StubClient("openrouter", default={"quotes": []})

    with pytest.raises(ExtractionFailed) as exc_info:
        await ExtractionOrchestrator({"openrouter": client}).run(
            plan_for("openrouter", None, topology), request_factory, require_company
        )

    failed = exc_info.value
    assert len(client.calls) == 2
    assert failed.mapping.status_code == 422
    assert failed.mapping.reason_code == "VALIDATION_FAILED"
    assert "companyName" in failed.validation_error


@pytest.mark.parametrize(
    "error_class, status, code, reason",
    [
        (ErrorClass.RATE_LIMITED, 429, "RATE_LIMIT", "UPSTREAM_RATE_LIMIT"),
        (ErrorClass.SCHEMA_CONSTRAINED, 422, "UPSTREAM_ERROR", "MODEL_SCHEMA_INCOMPATIBLE"),
        (ErrorClass.STRUCTURED_OUTPUT_INVALID, 422, "UPSTREAM_ERROR", "VALIDATION_FAILED"),
        (ErrorClass.OVERLOADED, 424, "UPSTREAM_ERROR", "UPSTREAM_OVERLOAD"),
        (ErrorClass.TIMEOUT, 424, "UPSTREAM_ERROR", "UPSTREAM_TIMEOUT"),
        (ErrorClass.LOCATION_BLOCKED, 424, "UPSTREAM_ERROR", "UPSTREAM_LOCATION_UNSUPPORTED"),
        (ErrorClass.IMAGE_UNPROCESSABLE, 424, "UPSTREAM_ERROR", "UPSTREAM_IMAGE_PROCESSING"),
        (ErrorClass.TRANSIENT_UPSTREAM, 424, "UPSTREAM_ERROR", "UPSTREAM_TRANSIENT"),
        (ErrorClass.UNKNOWN, 424, "UPSTREAM_ERROR", "UPSTREAM_FAILURE"),
    ],
)
def test_status_mapping(error_class, status, code, reason):
    mapping = map_error_status(error_class)
    assert (mapping.status_code, mapping.code, mapping.reason_code) == (status, code, reason)

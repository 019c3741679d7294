import pytest

from analyst.config import Settings
from analyst.services.extraction.attempt_planner import (
    AttemptPlan,
    InvalidModelError,
    InvalidProviderError,
    load_provider_topology,
    plan_for,
)
from analyst.services.extraction.error_classifier import ErrorClass


def models(plan: AttemptPlan) -> list[str]:
    return [attempt.model for attempt in plan]


def test_topology_loads_both_providers(topology):
    assert topology.default_provider == "gemini"
    gemini = topology.get("gemini")
    assert gemini.kind == "hosted"
    assert gemini.max_attempts == 6
    assert ErrorClass.RATE_LIMITED not in gemini.retryable_classes
    assert ErrorClass.OVERLOADED in gemini.retryable_classes
    assert ErrorClass.LOCATION_BLOCKED not in gemini.retryable_classes
    assert topology.get("openrouter").retryable_classes == frozenset()


@pytest.mark.parametrize(
    "requested, expected",
    [
        (None, ["gemini-2.5-flash", "gemini-3-flash-preview", "gemini-3-pro-preview"]),
        ("gemini-2.5-flash", ["gemini-2.5-flash", "gemini-3-flash-preview", "gemini-3-pro-preview"]),
        ("gemini-3-flash-preview", ["gemini-3-flash-preview", "gemini-2.5-flash", "gemini-3-pro-preview"]),
        ("gemini-3-pro-preview", ["gemini-3-pro-preview", "gemini-3-flash-preview", "gemini-2.5-flash"]),
    ],
)
def test_hosted_order(topology, requested, expected):
    plan = plan_for("gemini", requested, topology)
    assert models(plan) == expected
    assert plan.requested.model == expected[0]
    assert all(attempt.provider == "gemini" for attempt in plan)


@pytest.mark.parametrize(
    "requested, expected",
    [
        (None, ["minimax/minimax-01", "qwen/qwen3-vl-235b-a22b-instruct"]),
        ("qwen/qwen3-vl-235b-a22b-instruct", ["qwen/qwen3-vl-235b-a22b-instruct", "minimax/minimax-01"]),
        ("deepseek/deepseek-v3.2", ["deepseek/deepseek-v3.2", "minimax/minimax-01"]),
    ],
)
def test_aggregator_order(topology, requested, expected):
    assert models(plan_for("openrouter", requested, topology)) == expected


def test_plan_has_no_duplicates(topology):
    for provider, model in topology.all_models():
        planned = models(plan_for(provider, model, topology))
        assert len(planned) == len(set(planned))
        assert planned[0] == model


def test_default_provider_when_omitted(topology):
    assert plan_for(None, None, topology).requested.provider == "gemini"


def test_unknown_provider(topology):
    with pytest.raises(InvalidProviderError) as exc_info:
        plan_for("mistral", None, topology)
    assert exc_info.value.reason_code == "INVALID_PROVIDER"


def test_model_not_allowed(topology):
    with pytest.raises(InvalidModelError) as exc_info:
        plan_for("gemini", "minimax/minimax-01", topology)
    assert exc_info.value.reason_code == "INVALID_MODEL"


def test_empty_plan_rejected():
    with pytest.raises(ValueError):
        AttemptPlan(())


def test_fixed_conditions_are_never_retried_in_place(tmp_path):
    (tmp_path / "providers.yaml").write_text(
        "providers:\n"
        "  gemini:\n"
        "    kind: hosted\n"
        "    credential_env: GEMINI_API_KEY\n"
        "    endpoint: https://example.test/{model}\n"
        "    default_model: gemini-2.5-flash\n"
        "    retryable: [overloaded, location_blocked, rate_limited]\n",
        encoding="utf-8",
    )
    topology = load_provider_topology(Settings(config_dir=tmp_path))

    assert topology.get("gemini").retryable_classes == frozenset({ErrorClass.OVERLOADED})

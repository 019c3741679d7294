"""
Attempt planning across providers and model tiers.

Builds the ordered list of (provider, model) attempts the orchestrator walks
for one request. Topology is passed in explicitly (see ProviderTopology), so
tests can plan against synthetic providers.

Example:
    topology = load_provider_topology(settings)
    attempt_plan = plan_for("gemini", "gemini-3-pro-preview", topology)
    [a.model for a in attempt_plan]
    # ['gemini-3-pro-preview', 'gemini-3-flash-preview', 'gemini-2.5-flash']
"""

from dataclasses import dataclass, field
from typing import Iterator, Literal

from analyst.config import Settings, load_providers_config
from analyst.services.extraction.error_classifier import ErrorClass

ProviderKind = Literal["hosted", "aggregator"]

# Not transient for a given model: the orchestrator falls back instead
NEVER_RETRIED = frozenset({ErrorClass.RATE_LIMITED, ErrorClass.LOCATION_BLOCKED})


class PlanningError(ValueError):
    """Requested provider or model cannot be planned."""

    reason_code = "BAD_REQUEST"


class InvalidProviderError(PlanningError):
    """Provider is not configured."""

    reason_code = "INVALID_PROVIDER"


class InvalidModelError(PlanningError):
    """Model is not on the provider allow-list."""

    reason_code = "INVALID_MODEL"


@dataclass(frozen=True)
class ProviderSpec:
    """
    Static description of one upstream provider.

    Attributes:
        name: Provider identifier ("gemini", "openrouter")
        kind: "hosted" rotates a model tier, "aggregator" uses primary/backup
        credential_env: Environment variable holding the API key
        endpoint_template: Endpoint URL, may contain "{model}"
        max_attempts: Tries per model inside one attempt (inner retry loop)
        default_model: Model used when the caller does not pick one
        allowed_models: Models a caller may request
        model_tiers: Fallback models, fast -> deep (hosted) or primary, backup
        retryable_classes: Error classes retried inside one attempt
    """

    name: str
    kind: ProviderKind
    credential_env: str
    endpoint_template: str
    max_attempts: int
    default_model: str
    allowed_models: tuple[str, ...]
    model_tiers: tuple[str, ...]
    retryable_classes: frozenset[ErrorClass] = frozenset()

    def endpoint_for(self, model: str) -> str:
        return self.endpoint_template.replace("{model}", model)


@dataclass(frozen=True)
class ProviderTopology:
    """All configured providers plus the default one."""

    providers: dict[str, ProviderSpec]
    default_provider: str

    def get(self, name: str | None) -> ProviderSpec:
        """
        Resolve a provider by name.

        Args:
            name: Provider name, None for the default provider

        Raises:
            InvalidProviderError: Unknown provider
        """
        key = (name or self.default_provider).strip().lower()
        spec = self.providers.get(key)
        if spec is None:
            raise InvalidProviderError(
                f"Invalid provider '{name}'. Allowed: {', '.join(sorted(self.providers))}"
            )
        return spec

    def all_models(self) -> list[tuple[str, str]]:
        """List (provider, model) pairs for every allowed model."""
        return [
            (spec.name, model)
            for spec in self.providers.values()
            for model in spec.allowed_models
        ]


@dataclass(frozen=True)
class Attempt:
    """One (provider, model) pairing tried by the orchestrator."""

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


@dataclass(frozen=True)
class AttemptPlan:
    """Ordered attempts, consumed left to right, each at most once."""

    attempts: tuple[Attempt, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.attempts:
            raise ValueError("AttemptPlan requires at least one attempt")

    def __len__(self) -> int:
        return len(self.attempts)

    def __iter__(self) -> Iterator[Attempt]:
        return iter(self.attempts)

    def __getitem__(self, index: int) -> Attempt:
        return self.attempts[index]

    @property
    def requested(self) -> Attempt:
        return self.attempts[0]


def _hosted_order(requested: str, tiers: tuple[str, ...]) -> list[str]:
    """
    Requested model first, then the rest of the tier by distance.

    Nearest tier goes next; on a tie the faster (lower index) tier wins.
    Models outside the tier sort as if they were the fastest tier.
    """
    origin = tiers.index(requested) if requested in tiers else 0
    others = [model for model in tiers if model != requested]
    others.sort(key=lambda model: (abs(tiers.index(model) - origin), tiers.index(model)))
    return [requested, *others]


def _aggregator_order(requested: str, tiers: tuple[str, ...]) -> list[str]:
    """Requested model plus the first of primary/backup that differs from it."""
    backup = next((model for model in tiers[:2] if model != requested), None)
    return [requested, backup] if backup else [requested]


def plan(requested_model: str | None, spec: ProviderSpec) -> AttemptPlan:
    """
    Build the attempt plan for one provider.

    Args:
        requested_model: Caller's model, None for the provider default
        spec: Provider topology entry

    Returns:
        AttemptPlan starting with the requested (or default) model

    Raises:
        InvalidModelError: Model is not allowed for this provider
    """
    model = (requested_model or "").strip() or spec.default_model
    if model not in spec.allowed_models:
        raise InvalidModelError(
            f"Invalid model '{model}' for provider '{spec.name}'. "
            f"Allowed: {', '.join(spec.allowed_models)}"
        )

    if spec.kind == "hosted":
        models = _hosted_order(model, spec.model_tiers)
    else:
        models = _aggregator_order(model, spec.model_tiers)

    return AttemptPlan(tuple(Attempt(spec.name, m) for m in models))


def plan_for(
    provider: str | None,
    model: str | None,
    topology: ProviderTopology,
) -> AttemptPlan:
    """Resolve provider from topology, then plan its attempts."""
    return plan(model, topology.get(provider))


def load_provider_topology(settings: Settings | None = None) -> ProviderTopology:
    """
    Build ProviderTopology from config/providers.yaml.

    Args:
        settings: Optional settings instance

    Returns:
        Immutable topology shared read-only by all requests
    """
    config = load_providers_config(settings)
    providers: dict[str, ProviderSpec] = {}

    for name, entry in config.get("providers", {}).items():
        tiers = tuple(entry.get("tiers") or [entry["default_model"]])
        providers[name] = ProviderSpec(
            name=name,
            kind=entry.get("kind", "hosted"),
            credential_env=entry["credential_env"],
            endpoint_template=entry["endpoint"],
            max_attempts=int(entry.get("max_attempts", 1)),
            default_model=entry["default_model"],
            allowed_models=tuple(entry.get("allowed_models") or tiers),
            model_tiers=tiers,
            retryable_classes=frozenset(
                ErrorClass(value) for value in entry.get("retryable") or []
            )
            - NEVER_RETRIED,
        )

    default_provider = config.get("default_provider") or next(iter(providers))
    return ProviderTopology(providers=providers, default_provider=default_provider)

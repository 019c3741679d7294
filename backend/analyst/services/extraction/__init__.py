"""
Structured-extraction engine.

Control flow for one request:
    input_shaper -> orchestrator (attempt_planner x provider clients x
    error_classifier) -> validator -> ranker

Modules:
    error_classifier: Rule-table classification of upstream failures
    attempt_planner: Provider topology and ordered (provider, model) attempts
    input_shaper: Keyword windowing and chunk-local page mapping
    orchestrator: Fallback state machine and caller-facing status mapping
    validator: Declarative validation with normalized copies
    ranker: Quality scoring and Jaccard de-duplication
"""

from analyst.services.extraction.attempt_planner import (
    Attempt,
    AttemptPlan,
    InvalidModelError,
    InvalidProviderError,
    PlanningError,
    ProviderSpec,
    ProviderTopology,
    load_provider_topology,
    plan,
    plan_for,
)
from analyst.services.extraction.error_classifier import (
    ClassificationRule,
    ClassifiedError,
    Classifier,
    ErrorClass,
    classify,
    parse_retry_after,
)
from analyst.services.extraction.orchestrator import (
    AttemptState,
    ErrorMapping,
    ExtractionFailed,
    ExtractionOrchestrator,
    FallbackPolicy,
    OrchestrationResult,
    map_error_status,
)
from analyst.services.extraction.validator import (
    ArrayPolicy,
    EnumPolicy,
    EnumRule,
    ObjectPolicy,
    TextPolicy,
    ValidationResult,
    validate,
)

__all__ = [
    # error_classifier
    "ClassificationRule",
    "ClassifiedError",
    "Classifier",
    "ErrorClass",
    "classify",
    "parse_retry_after",
    # attempt_planner
    "Attempt",
    "AttemptPlan",
    "InvalidModelError",
    "InvalidProviderError",
    "PlanningError",
    "ProviderSpec",
    "ProviderTopology",
    "load_provider_topology",
    "plan",
    "plan_for",
    # orchestrator
    "AttemptState",
    "ErrorMapping",
    "ExtractionFailed",
    "ExtractionOrchestrator",
    "FallbackPolicy",
    "OrchestrationResult",
    "map_error_status",
    # validator
    "ArrayPolicy",
    "EnumPolicy",
    "EnumRule",
    "ObjectPolicy",
    "TextPolicy",
    "ValidationResult",
    "validate",
]

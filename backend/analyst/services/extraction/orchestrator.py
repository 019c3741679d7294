"""
Extraction orchestrator.

Walks an AttemptPlan one (provider, model) element at a time, validating each
successful response, and falls back to the next element only when the failure
class is fallback-eligible for the endpoint. At most one upstream call is in
flight per request, and the plan is never walked past its last element.

State machine per element:
    PENDING -> INVOKING -> VALIDATING -> SUCCEEDED
                    |            |
                    +------------+--> FALLING_BACK (next element) | FAILED
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping

from analyst.services.extraction.attempt_planner import Attempt, AttemptPlan
from analyst.services.extraction.error_classifier import ClassifiedError, ErrorClass
from analyst.services.extraction.validator import ValidationResult

if TYPE_CHECKING:
    from analyst.services.ai_clients.base import InvocationRequest, ProviderClient

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    """Orchestrator state for one plan element."""

    PENDING = "pending"
    INVOKING = "invoking"
    VALIDATING = "validating"
    SUCCEEDED = "succeeded"
    FALLING_BACK = "falling_back"
    FAILED = "failed"


DEFAULT_FALLBACK_CLASSES = frozenset(
    error_class for error_class in ErrorClass if error_class != ErrorClass.UNKNOWN
)


@dataclass(frozen=True)
class FallbackPolicy:
    """
    Error classes that let the orchestrator advance to the next attempt.

    Example:
        # Endpoint that should surface rate limits immediately
        policy = FallbackPolicy.excluding(ErrorClass.RATE_LIMITED)
    """

    eligible: frozenset[ErrorClass] = DEFAULT_FALLBACK_CLASSES

    def allows(self, error_class: ErrorClass) -> bool:
        return error_class in self.eligible

    @classmethod
    def excluding(cls, *classes: ErrorClass) -> "FallbackPolicy":
        return cls(DEFAULT_FALLBACK_CLASSES - frozenset(classes))


DEFAULT_POLICY = FallbackPolicy()


# =============================================================================
# Caller-facing error mapping
# =============================================================================


@dataclass(frozen=True)
class ErrorMapping:
    """
    HTTP status and machine-readable codes for a terminal failure.

    retry_advice is one of "retry", "retry_later", "do_not_retry".
    """

    status_code: int
    code: str
    reason_code: str
    retry_advice: str


ERROR_MAPPINGS: dict[ErrorClass, ErrorMapping] = {
    ErrorClass.RATE_LIMITED: ErrorMapping(429, "RATE_LIMIT", "UPSTREAM_RATE_LIMIT", "retry_later"),
    ErrorClass.SCHEMA_CONSTRAINED: ErrorMapping(
        422, "UPSTREAM_ERROR", "MODEL_SCHEMA_INCOMPATIBLE", "do_not_retry"
    ),
    ErrorClass.STRUCTURED_OUTPUT_INVALID: ErrorMapping(
        422, "UPSTREAM_ERROR", "VALIDATION_FAILED", "retry"
    ),
    ErrorClass.OVERLOADED: ErrorMapping(424, "UPSTREAM_ERROR", "UPSTREAM_OVERLOAD", "retry_later"),
    ErrorClass.TIMEOUT: ErrorMapping(424, "UPSTREAM_ERROR", "UPSTREAM_TIMEOUT", "retry"),
    ErrorClass.LOCATION_BLOCKED: ErrorMapping(
        424, "UPSTREAM_ERROR", "UPSTREAM_LOCATION_UNSUPPORTED", "do_not_retry"
    ),
    ErrorClass.IMAGE_UNPROCESSABLE: ErrorMapping(
        424, "UPSTREAM_ERROR", "UPSTREAM_IMAGE_PROCESSING", "retry"
    ),
    ErrorClass.TRANSIENT_UPSTREAM: ErrorMapping(
        424, "UPSTREAM_ERROR", "UPSTREAM_TRANSIENT", "retry"
    ),
    ErrorClass.UNKNOWN: ErrorMapping(424, "UPSTREAM_ERROR", "UPSTREAM_FAILURE", "retry_later"),
}


def map_error_status(error_class: ErrorClass) -> ErrorMapping:
    """Map an error class to its caller-facing status and codes."""
    return ERROR_MAPPINGS.get(error_class, ERROR_MAPPINGS[ErrorClass.UNKNOWN])


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class AttemptRecord:
    """Trace entry for one plan element."""

    index: int
    attempt: Attempt
    state: AttemptState
    error_class: ErrorClass | None = None
    message: str = ""
    tries: int = 0
    elapsed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.attempt.provider,
            "model": self.attempt.model,
            "state": self.state.value,
            "errorClass": self.error_class.value if self.error_class else None,
            "tries": self.tries,
        }


@dataclass
class OrchestrationResult:
    """
    Successful orchestration.

    Attributes:
        value: Validated (normalized) result
        attempt: Attempt that produced it
        plan: Plan that was walked
        trace: One record per element tried
        validation: Validation result, None when no validator was given
    """

    value: Any
    attempt: Attempt
    plan: AttemptPlan
    trace: list[AttemptRecord] = field(default_factory=list)
    validation: ValidationResult | None = None

    @property
    def attempts_made(self) -> int:
        return len(self.trace)

    @property
    def fallback_used(self) -> bool:
        return self.attempt != self.plan.requested


class ExtractionFailed(Exception):
    """
    Terminal orchestration failure.

    Attributes:
        classified: Classified error of the last element tried
        attempt: Last attempt
        plan: Plan that was walked
        trace: One record per element tried
        validation_error: Validator message when the last failure was a policy violation
    """

    def __init__(
        self,
        classified: ClassifiedError,
        attempt: Attempt,
        plan: AttemptPlan,
        trace: list[AttemptRecord],
        validation_error: str | None = None,
    ):
        self.classified = classified
        self.attempt = attempt
        self.plan = plan
        self.trace = trace
        self.validation_error = validation_error
        super().__init__(classified.message)

    @property
    def mapping(self) -> ErrorMapping:
        return map_error_status(self.classified.error_class)


# =============================================================================
# Orchestrator
# =============================================================================


Validate = Callable[[Any], ValidationResult]
RequestFactory = Callable[[Attempt], "InvocationRequest"]


class ExtractionOrchestrator:
    """
    Drives AttemptPlan x provider clients with centralized fallback.

    Example:
        orchestrator = ExtractionOrchestrator(clients)
        result = await orchestrator.run(plan, lambda attempt: request, validate)
        result.value
    """

    def __init__(
        self,
        clients: Mapping[str, "ProviderClient"],
        policy: FallbackPolicy = DEFAULT_POLICY,
    ):
        """
        Initialize orchestrator.

        Args:
            clients: Provider name -> client
            policy: Fallback-eligible error classes for this endpoint
        """
        self.clients = clients
        self.policy = policy

    async def run(
        self,
        plan: AttemptPlan,
        request_factory: RequestFactory,
        validate: Validate | None = None,
        label: str = "extraction",
    ) -> OrchestrationResult:
        """
        Walk the plan until success or a terminal failure.

        Args:
            plan: Ordered attempts
            request_factory: Builds the request for an attempt (prompts may differ per provider)
            validate: Validator applied to each decoded response
            label: Name used in log lines

        Returns:
            OrchestrationResult for the first attempt that validated

        Raises:
            ExtractionFailed: Last attempt failed, or a failure was not fallback-eligible
            KeyError: Plan names a provider with no client
        """
        trace: list[AttemptRecord] = []
        total = len(plan)

        for index, attempt in enumerate(plan):
            client = self.clients[attempt.provider]
            request = request_factory(attempt)
            request_id = request.request_id

            logger.info(f"[{request_id}] {label}: attempt {index + 1}/{total} -> {attempt}")
            outcome = await client.invoke(attempt.model, request)

            validation_error = None
            if outcome.ok:
                validation = validate(outcome.value) if validate else None
                if validation is None or validation.error is None:
                    trace.append(
                        AttemptRecord(
                            index=index,
                            attempt=attempt,
                            state=AttemptState.SUCCEEDED,
                            tries=outcome.tries,
                            elapsed=outcome.elapsed,
                        )
                    )
                    value = validation.value if validation else outcome.value
                    if index > 0:
                        logger.info(f"[{request_id}] {label}: succeeded on fallback {attempt}")
                    return OrchestrationResult(
                        value=value,
                        attempt=attempt,
                        plan=plan,
                        trace=trace,
                        validation=validation,
                    )

                validation_error = validation.error
                classified = ClassifiedError(
                    ErrorClass.STRUCTURED_OUTPUT_INVALID,
                    f"Model response failed validation: {validation_error}",
                )
                logger.warning(f"[{request_id}] {label}: {attempt} failed validation: {validation_error}")
            else:
                classified = outcome.error

            has_next = index + 1 < total
            falls_back = has_next and self.policy.allows(classified.error_class)
            trace.append(
                AttemptRecord(
                    index=index,
                    attempt=attempt,
                    state=AttemptState.FALLING_BACK if falls_back else AttemptState.FAILED,
                    error_class=classified.error_class,
                    message=classified.message,
                    tries=outcome.tries,
                    elapsed=outcome.elapsed,
                )
            )

            if falls_back:
                logger.warning(
                    f"[{request_id}] {label}: {attempt} -> {classified.error_class.value}, "
                    f"falling back to {plan[index + 1]}"
                )
                continue

            logger.error(
                f"[{request_id}] {label}: failed on {attempt} "
                f"({classified.error_class.value}) after {index + 1}/{total} attempts"
            )
            raise ExtractionFailed(classified, attempt, plan, trace, validation_error)

        # Unreachable: the last element either returns or raises
        raise RuntimeError("Attempt plan exhausted without a terminal outcome")

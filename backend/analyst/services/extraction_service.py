"""
Shared base for endpoint extraction services.

Each endpoint service loads its prompt and response schema, shapes its input,
and hands a request factory plus validator to the orchestrator. Planning
happens before any upstream call so invalid provider/model selections fail
fast.
"""

import logging
from typing import Any, Callable, Mapping

from analyst.config import Settings, load_prompt, load_response_schema
from analyst.services.ai_clients.base import ContentPart, InvocationRequest, ProviderClient
from analyst.services.extraction.attempt_planner import (
    Attempt,
    AttemptPlan,
    ProviderTopology,
    plan_for,
)
from analyst.services.extraction.orchestrator import (
    DEFAULT_POLICY,
    ExtractionOrchestrator,
    FallbackPolicy,
    OrchestrationResult,
)
from analyst.services.extraction.validator import ValidationResult

logger = logging.getLogger(__name__)


class InvalidInputError(ValueError):
    """
    Caller input that passed schema parsing but cannot be processed.

    Attributes:
        reason_code: Machine-readable reason for the 400 envelope
    """

    reason_code = "INVALID_REQUEST"

    def __init__(self, message: str, reason_code: str | None = None):
        super().__init__(message)
        if reason_code:
            self.reason_code = reason_code


class ExtractionService:
    """
    Base class for one extraction endpoint.

    Subclasses set `feature` (prompt/schema folder name) and may narrow
    `fallback_policy`.

    Example:
        service = ChatterAnalyzer(settings, topology, clients)
        plan = service.plan("gemini", None)
        result = await service.analyze(request, plan, request_id)
    """

    feature: str = ""
    fallback_policy: FallbackPolicy = DEFAULT_POLICY

    def __init__(
        self,
        settings: Settings,
        topology: ProviderTopology,
        clients: Mapping[str, ProviderClient],
    ):
        """
        Initialize service.

        Args:
            settings: Application settings
            topology: Provider topology used for planning
            clients: Provider name -> client (opened by the caller)
        """
        self.settings = settings
        self.topology = topology
        self.clients = clients
        self.system_prompt = load_prompt(self.feature, "system", settings)
        self.response_schema = load_response_schema(self.feature, settings)

    def plan(self, provider: str | None, model: str | None) -> AttemptPlan:
        """
        Build the attempt plan for a caller's provider/model selection.

        Raises:
            PlanningError: Unknown provider or disallowed model
        """
        return plan_for(provider, model, self.topology)

    async def _orchestrate(
        self,
        attempt_plan: AttemptPlan,
        prompt: str,
        request_id: str,
        validate: Callable[[Any], ValidationResult],
        parts: list[ContentPart] | None = None,
    ) -> OrchestrationResult:
        """Run the orchestrator with one prompt for every attempt."""

        def build_request(attempt: Attempt) -> InvocationRequest:
            return InvocationRequest(
                prompt=prompt,
                response_schema=self.response_schema,
                request_id=request_id,
                parts=list(parts or []),
                system_prompt=self.system_prompt,
            )

        orchestrator = ExtractionOrchestrator(self.clients, self.fallback_policy)
        return await orchestrator.run(attempt_plan, build_request, validate, label=self.feature)

    @staticmethod
    def response_meta(result: OrchestrationResult, request_id: str) -> dict[str, Any]:
        """Metadata block attached to every successful response."""
        return {
            "requestId": request_id,
            "provider": result.attempt.provider,
            "model": result.attempt.model,
            "requestedModel": result.plan.requested.model,
            "fallbackUsed": result.fallback_used,
            "attempts": [record.to_dict() for record in result.trace],
        }

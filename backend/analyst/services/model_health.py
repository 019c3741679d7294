"""
Per-model health checks.

Sends a tiny structured request to every configured (provider, model) pair
with a single try and a short deadline, and reports one state per model.
"""

import asyncio
import logging
import time
from typing import Mapping

from analyst.config import Settings
from analyst.models.schemas import HealthReport, ModelHealth, ModelHealthState
from analyst.services.ai_clients.base import (
    InvocationOutcome,
    InvocationRequest,
    MissingCredentialError,
    ProviderClient,
)
from analyst.services.extraction.attempt_planner import ProviderTopology
from analyst.services.extraction.error_classifier import ClassifiedError, ErrorClass

logger = logging.getLogger(__name__)

HEALTH_PROMPT = 'Reply with the JSON object {"status": "ok"}.'
HEALTH_SCHEMA = {
    "type": "OBJECT",
    "properties": {"status": {"type": "STRING"}},
    "required": ["status"],
}

INVALID_KEY_MARKERS = ("api key not valid", "invalid api key", "permission denied", "unauthorized")

STATE_BY_CLASS = {
    ErrorClass.RATE_LIMITED: ModelHealthState.RATE_LIMITED,
    ErrorClass.OVERLOADED: ModelHealthState.OVERLOADED,
    ErrorClass.TIMEOUT: ModelHealthState.TIMEOUT,
    ErrorClass.LOCATION_BLOCKED: ModelHealthState.LOCATION_UNSUPPORTED,
}


def health_state_for(error: ClassifiedError) -> ModelHealthState:
    """Map a classified check failure to a health state."""
    if error.http_status in (401, 403):
        return ModelHealthState.INVALID_KEY
    lowered = error.message.lower()
    if any(marker in lowered for marker in INVALID_KEY_MARKERS):
        return ModelHealthState.INVALID_KEY
    return STATE_BY_CLASS.get(error.error_class, ModelHealthState.UPSTREAM_ERROR)


class ModelHealthChecker:
    """
    Checks every model in the provider topology.

    Example:
        checker = ModelHealthChecker(settings, topology, clients)
        report = await checker.check_all(request_id)
    """

    def __init__(
        self,
        settings: Settings,
        topology: ProviderTopology,
        clients: Mapping[str, ProviderClient],
    ):
        self.settings = settings
        self.topology = topology
        self.clients = clients

    async def check_model(self, provider: str, model: str, request_id: str) -> ModelHealth:
        """Check one model with a single try."""
        request = InvocationRequest(
            prompt=HEALTH_PROMPT,
            response_schema=HEALTH_SCHEMA,
            request_id=request_id,
        )
        started = time.monotonic()
        try:
            outcome: InvocationOutcome = await self.clients[provider].invoke(
                model,
                request,
                max_attempts=1,
                timeout=self.settings.health_timeout_sec,
            )
        except MissingCredentialError as e:
            return ModelHealth(
                provider=provider,
                model=model,
                state=ModelHealthState.MISSING_KEY,
                message=e.message,
            )

        latency_ms = int((time.monotonic() - started) * 1000)
        if outcome.ok:
            return ModelHealth(
                provider=provider,
                model=model,
                state=ModelHealthState.OK,
                latency_ms=latency_ms,
            )

        state = health_state_for(outcome.error)
        logger.info(f"[{request_id}] health: {provider}/{model} -> {state.value}")
        return ModelHealth(
            provider=provider,
            model=model,
            state=state,
            message=outcome.error.message,
            latency_ms=latency_ms,
        )

    async def check_all(self, request_id: str) -> HealthReport:
        """Check all configured models concurrently."""
        results = await asyncio.gather(
            *(
                self.check_model(provider, model, request_id)
                for provider, model in self.topology.all_models()
            )
        )
        healthy = sum(1 for result in results if result.state == ModelHealthState.OK)
        logger.info(f"[{request_id}] health: {healthy}/{len(results)} models ok")
        return HealthReport(ok=healthy == len(results), models=list(results))

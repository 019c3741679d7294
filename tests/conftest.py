"""Shared fixtures: settings pointed at the repo config, stub provider clients."""

from pathlib import Path
from typing import Any

import pytest

from analyst.config import Settings
from analyst.services.ai_clients.base import InvocationOutcome, InvocationRequest, MissingCredentialError
from analyst.services.extraction.attempt_planner import ProviderTopology, load_provider_topology
from analyst.services.extraction.error_classifier import ClassifiedError, ErrorClass

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        config_dir=CONFIG_DIR,
        gemini_api_key="test-gemini-key",
        openrouter_api_key="test-openrouter-key",
        retry_base_ms=0,
        retry_cap_ms=0,
        request_timeout_sec=5,
    )


@pytest.fixture
def topology(settings: Settings) -> ProviderTopology:
    return load_provider_topology(settings)


def failure(error_class: ErrorClass, message: str = "upstream failed", **kwargs) -> ClassifiedError:
    return ClassifiedError(error_class, message, **kwargs)


class StubClient:
    """
    Provider client double.

    `responses` maps model -> list of results consumed in order. A result is a
    JSON value (success), a ClassifiedError (failure) or an exception (raised).
    """

    def __init__(self, name: str, responses: dict[str, list[Any]] | None = None, default: Any = None):
        self.name = name
        self.responses = {model: list(items) for model, items in (responses or {}).items()}
        self.default = default
        self.calls: list[tuple[str, InvocationRequest]] = []
        self.call_options: list[dict[str, Any]] = []

    async def invoke(
        self,
        model: str,
        request: InvocationRequest,
        max_attempts: int | None = None,
        timeout: float | None = None,
    ) -> InvocationOutcome:
        self.calls.append((model, request))
        self.call_options.append({"max_attempts": max_attempts, "timeout": timeout})
        queue = self.responses.get(model)
        result = queue.pop(0) if queue else self.default
        if callable(result) and not isinstance(result, type):
            result = result(model, request)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, ClassifiedError):
            return InvocationOutcome(provider=self.name, model=model, error=result)
        return InvocationOutcome(provider=self.name, model=model, value=result)

    @property
    def models_called(self) -> list[str]:
        return [model for model, _ in self.calls]


class MissingKeyClient(StubClient):
    async def invoke(self, model, request, max_attempts=None, timeout=None):
        self.calls.append((model, request))
        raise MissingCredentialError(f"Server is missing {self.name.upper()}_API_KEY.", provider=self.name, model=model)

"""
AI Clients package for model providers.

This package provides a unified invocation interface for providers:
- GeminiClient: Gemini generateContent API (hosted, inner retries)
- OpenRouterClient: OpenRouter chat completions (aggregator, one try per model)

Usage:
    from analyst.services.ai_clients import open_clients, InvocationRequest

    async with open_clients(topology, settings) as clients:
        outcome = await clients["gemini"].invoke("gemini-2.5-flash", request)
"""

from analyst.services.ai_clients.base import (
    AIClientError,
    BaseProviderClient,
    ContentPart,
    InvocationOutcome,
    InvocationRequest,
    MissingCredentialError,
    ProviderClient,
    UpstreamCallError,
    wait_capped_exponential_jitter,
)
from analyst.services.ai_clients.gemini_client import GeminiClient
from analyst.services.ai_clients.openrouter_client import OpenRouterClient
from analyst.services.ai_clients.registry import CLIENT_TYPES, build_clients, open_clients

__all__ = [
    # Protocol and base classes
    "ProviderClient",
    "BaseProviderClient",
    "ContentPart",
    "InvocationRequest",
    "InvocationOutcome",
    "wait_capped_exponential_jitter",
    # Errors
    "AIClientError",
    "MissingCredentialError",
    "UpstreamCallError",
    # Implementations
    "GeminiClient",
    "OpenRouterClient",
    "CLIENT_TYPES",
    "build_clients",
    "open_clients",
]

"""
Client construction from provider topology.

Clients are created per request and closed when the request finishes;
nothing is pooled across requests.

Example:
    async with open_clients(topology, settings) as clients:
        outcome = await clients["gemini"].invoke("gemini-2.5-flash", request)
"""

from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator

import httpx

from analyst.config import Settings
from analyst.services.ai_clients.base import BaseProviderClient
from analyst.services.ai_clients.gemini_client import GeminiClient
from analyst.services.ai_clients.openrouter_client import OpenRouterClient
from analyst.services.extraction.attempt_planner import ProviderTopology

# Provider name -> client implementation
CLIENT_TYPES: dict[str, type[BaseProviderClient]] = {
    "gemini": GeminiClient,
    "openrouter": OpenRouterClient,
}


def build_clients(
    topology: ProviderTopology,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, BaseProviderClient]:
    """
    Create one client per configured provider.

    Args:
        topology: Provider topology
        settings: Application settings (credentials, timeouts, backoff)
        transport: Optional httpx transport shared by all clients

    Returns:
        Provider name -> client mapping

    Raises:
        KeyError: Provider has no client implementation
    """
    clients: dict[str, BaseProviderClient] = {}
    for name, spec in topology.providers.items():
        client_cls = CLIENT_TYPES.get(name)
        if client_cls is None:
            raise KeyError(f"No client implementation for provider '{name}'")
        clients[name] = client_cls.from_settings(spec, settings, transport=transport)
    return clients


@asynccontextmanager
async def open_clients(
    topology: ProviderTopology,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[dict[str, BaseProviderClient]]:
    """Build clients and close them all on exit."""
    async with AsyncExitStack() as stack:
        clients = build_clients(topology, settings, transport)
        for client in clients.values():
            await stack.enter_async_context(client)
        yield clients

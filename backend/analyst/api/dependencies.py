"""
Shared FastAPI dependencies.

The provider topology is loaded once at startup and kept on app.state.
Clients are opened per request through `get_clients` and closed when the
response is sent. Tests override `get_clients` (and `get_settings`) with
stubs via `app.dependency_overrides`.
"""

import uuid
from typing import AsyncIterator

from fastapi import Depends, Request

from analyst.config import Settings, get_settings
from analyst.services.ai_clients.base import ProviderClient
from analyst.services.ai_clients.registry import open_clients
from analyst.services.extraction.attempt_planner import ProviderTopology, load_provider_topology

REQUEST_ID_HEADER = "X-Request-ID"


def get_topology(request: Request, settings: Settings = Depends(get_settings)) -> ProviderTopology:
    """Topology loaded at startup; loaded here once if the app started without lifespan."""
    topology = getattr(request.app.state, "topology", None)
    if topology is None:
        topology = load_provider_topology(settings)
        request.app.state.topology = topology
    return topology


async def get_clients(
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
) -> AsyncIterator[dict[str, ProviderClient]]:
    """Per-request provider clients."""
    async with open_clients(topology, settings) as clients:
        yield clients


def get_request_id(request: Request) -> str:
    """Request id from X-Request-ID, or a new uuid4 (stable per request)."""
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        header = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        request_id = header[:128] or str(uuid.uuid4())
        request.state.request_id = request_id
    return request_id

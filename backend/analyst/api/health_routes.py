"""
API routes for per-model health checks.
"""

from fastapi import APIRouter, Depends

from analyst.api.dependencies import get_clients, get_request_id, get_topology
from analyst.config import Settings, get_settings
from analyst.models.schemas import HealthReport
from analyst.services.ai_clients.base import ProviderClient
from analyst.services.extraction.attempt_planner import ProviderTopology
from analyst.services.model_health import ModelHealthChecker

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("/models", response_model_by_alias=True)
async def check_models(
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> HealthReport:
    """
    Check every configured model once.

    Returns:
        HealthReport with one state per (provider, model)
    """
    checker = ModelHealthChecker(settings, topology, clients)
    return await checker.check_all(request_id)

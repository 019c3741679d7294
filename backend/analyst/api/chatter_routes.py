"""
API routes for earnings-call quote extraction ("The Chatter").
"""

import logging

from fastapi import APIRouter, Depends

from analyst.api.dependencies import get_clients, get_request_id, get_topology
from analyst.config import Settings, get_settings
from analyst.models.schemas import ChatterRequest
from analyst.services.ai_clients.base import ProviderClient
from analyst.services.chatter_analyzer import ChatterAnalyzer
from analyst.services.extraction.attempt_planner import ProviderTopology, plan_for

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/chatter", tags=["chatter"])


@router.post("/analyze")
async def analyze_chatter(
    body: ChatterRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Extract company metadata and ranked management quotes.

    Returns:
        companyName, fiscalPeriod, nseScrip, marketCapCategory, industry,
        companyDescription, quotes (up to 20) and meta
    """
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/chatter/analyze: {len(body.transcript)} chars, "
        f"plan {[str(attempt) for attempt in attempt_plan]}"
    )
    analyzer = ChatterAnalyzer(settings, topology, clients)
    return await analyzer.analyze(body.transcript, attempt_plan, request_id)

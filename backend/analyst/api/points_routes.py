"""
API routes for investor-deck slide selection ("Points & Figures").
"""

import logging

from fastapi import APIRouter, Depends

from analyst.api.dependencies import get_clients, get_request_id, get_topology
from analyst.api.errors import bad_request
from analyst.config import Settings, get_settings
from analyst.models.schemas import POINTS_MAX_TOTAL_IMAGE_CHARS, PointsRequest
from analyst.services.ai_clients.base import ProviderClient
from analyst.services.extraction.attempt_planner import ProviderTopology, plan_for
from analyst.services.extraction.input_shaper import PageChunk
from analyst.services.points_analyzer import PointsAnalyzer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/points", tags=["points"])


@router.post("/analyze")
async def analyze_points(
    body: PointsRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Select the most insightful slides of a deck (or one chunk of it).

    Page numbers in the response are chunk-local (1..len(pageImages)).

    Raises:
        ApiError: 400 when the aggregate image payload is too large
    """
    if body.total_image_chars > POINTS_MAX_TOTAL_IMAGE_CHARS:
        raise bad_request(
            f"Page images total {body.total_image_chars} characters; "
            f"limit is {POINTS_MAX_TOTAL_IMAGE_CHARS}.",
            "PAYLOAD_TOO_LARGE",
        )

    page_count = len(body.page_images)
    chunk = PageChunk.from_request(body.chunk_start_page, body.chunk_end_page, page_count)
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/points/analyze: {page_count} pages, "
        f"plan {[str(attempt) for attempt in attempt_plan]}"
    )
    analyzer = PointsAnalyzer(settings, topology, clients)
    return await analyzer.analyze(body.page_images, chunk, attempt_plan, request_id)

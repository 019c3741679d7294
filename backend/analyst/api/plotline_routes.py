"""
API routes for keyword narratives ("Plotline"): extraction, summary and story.
"""

import logging

from fastapi import APIRouter, Depends

from analyst.api.dependencies import get_clients, get_request_id, get_topology
from analyst.config import Settings, get_settings
from analyst.models.schemas import PlotlineRequest, PlotlineStoryRequest, PlotlineSummaryRequest
from analyst.services.ai_clients.base import ProviderClient
from analyst.services.extraction.attempt_planner import ProviderTopology, plan_for
from analyst.services.plotline_extractor import PlotlineExtractor
from analyst.services.plotline_summarizer import PlotlineSummarizer
from analyst.services.plotline_writer import PlotlineWriter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/plotline", tags=["plotline"])


@router.post("/analyze")
async def analyze_plotline(
    body: PlotlineRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Extract quotes about the requested keywords.

    An empty quotes array is a valid result when no keyword is discussed.
    """
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/plotline/analyze: {len(body.transcript)} chars, "
        f"keywords={body.keywords}"
    )
    extractor = PlotlineExtractor(settings, topology, clients)
    return await extractor.extract(body.transcript, body.keywords, attempt_plan, request_id)


@router.post("/summarize")
async def summarize_plotline(
    body: PlotlineSummaryRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Summarize matched quotes per company.

    Returns:
        companyNarratives, masterThemeBullets, meta
    """
    companies = PlotlineSummarizer.prepare(body.companies, body.keywords)
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/plotline/summarize: {len(companies)} companies, "
        f"keywords={body.keywords}"
    )
    summarizer = PlotlineSummarizer(settings, topology, clients)
    return await summarizer.summarize(companies, body.keywords, attempt_plan, request_id)


@router.post("/write")
async def write_plotline(
    body: PlotlineStoryRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Write the long-form story.

    Always 200 once the input is valid: upstream failures yield the
    deterministic story (storySource "fallback").
    """
    companies = PlotlineWriter.prepare(body.companies, body.keywords)
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/plotline/write: {len(companies)} companies, "
        f"plan {'given' if body.plan else 'built locally'}"
    )
    writer = PlotlineWriter(settings, topology, clients)
    return await writer.write(companies, body.keywords, body.plan, attempt_plan, request_id)

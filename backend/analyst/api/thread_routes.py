"""
API routes for social threads: shortlist, draft and single-tweet rewrite.
"""

import logging

from fastapi import APIRouter, Depends

from analyst.api.dependencies import get_clients, get_request_id, get_topology
from analyst.config import Settings, get_settings
from analyst.models.schemas import ShortlistRequest, ThreadDraftRequest, ThreadRegenerateRequest
from analyst.services.ai_clients.base import ProviderClient
from analyst.services.extraction.attempt_planner import ProviderTopology, plan_for
from analyst.services.thread_shortlister import ThreadShortlister, build_candidates
from analyst.services.thread_writer import ThreadDrafter, TweetRegenerator, check_unique_ids

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/thread", tags=["thread"])


@router.post("/shortlist")
async def shortlist_thread(
    body: ShortlistRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Shortlist quotes for a thread.

    Returns:
        shortlistedQuoteIds (model picks first, then local ranking), modelPickCount, meta
    """
    # Duplicate ids are a caller error; reject before planning any upstream call
    build_candidates(body.quotes)
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/thread/shortlist: {len(body.quotes)} quotes, "
        f"max {body.max_candidates}, {body.max_per_company}/company"
    )
    shortlister = ThreadShortlister(settings, topology, clients)
    return await shortlister.shortlist(
        body.quotes,
        body.max_candidates,
        body.max_per_company,
        attempt_plan,
        request_id,
    )


@router.post("/generate")
async def generate_thread(
    body: ThreadDraftRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Draft a thread from selected quotes.

    Returns:
        introTweet, insightTweets (one per quote, in order), outroTweet, meta
    """
    check_unique_ids(body.selected_quotes)
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(f"[{request_id}] POST /api/thread/generate: {len(body.selected_quotes)} quotes")
    drafter = ThreadDrafter(settings, topology, clients)
    return await drafter.draft(body.selected_quotes, body.edition_metadata, attempt_plan, request_id)


@router.post("/regenerate")
async def regenerate_tweet(
    body: ThreadRegenerateRequest,
    request_id: str = Depends(get_request_id),
    settings: Settings = Depends(get_settings),
    topology: ProviderTopology = Depends(get_topology),
    clients: dict[str, ProviderClient] = Depends(get_clients),
) -> dict:
    """
    Rewrite one tweet, avoiding the texts already used in the thread.

    Returns:
        tweet, meta
    """
    TweetRegenerator.check_target(body.tweet_kind, body.target_quote)
    attempt_plan = plan_for(body.provider, body.model, topology)
    logger.info(
        f"[{request_id}] POST /api/thread/regenerate: {body.tweet_kind.value}, "
        f"{len(body.used_tweet_texts)} used"
    )
    regenerator = TweetRegenerator(settings, topology, clients)
    return await regenerator.regenerate(
        body.tweet_kind,
        body.target_quote,
        body.current_tweet,
        body.used_tweet_texts,
        body.edition_metadata,
        attempt_plan,
        request_id,
    )

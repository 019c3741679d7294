"""
Investor-deck slide selection ("Points & Figures").

Sends deck pages as inline images, asks for the most insightful slides with
chunk-local page numbers, repairs absolute page numbers the model echoes
anyway, and keeps the top slides by quality.
"""

import logging
import re
from typing import Any

from analyst.config import load_prompt
from analyst.services.ai_clients.base import ContentPart
from analyst.services.chatter_analyzer import MARKET_CAP_POLICY, ROOT_FIELDS, normalize_scrip
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.input_shaper import PageChunk, describe_chunk, resolve_page
from analyst.services.extraction.ranker import SIGNAL_TERMS, Candidate, ScoringProfile, select
from analyst.services.extraction.validator import (
    ArrayPolicy,
    ObjectPolicy,
    TextPolicy,
    validate,
)
from analyst.services.extraction_service import ExtractionService

logger = logging.getLogger(__name__)

TOP_SLIDES = 3
DUPLICATE_THRESHOLD = 0.5
STRICT_MIN_CONTEXT_CHARS = 80

GENERIC_OPENERS = re.compile(
    r"^(in this slide|this slide shows|the slide shows)\b\s*[:,-]?\s*",
    re.IGNORECASE,
)

CONTEXT_TEXT = TextPolicy(max_chars=900, banned_openers=GENERIC_OPENERS, capitalize=True)

SLIDE_PROFILE = ScoringProfile(
    signal_terms=SIGNAL_TERMS + (
        "cagr", "tam", "unit economics", "segment", "geography", "market structure",
        "customer", "penetration", "export", "realization",
    ),
    quality_band=(80, 600),
    long_chars=900,
    short_chars=STRICT_MIN_CONTEXT_CHARS,
)


def _coerce_page(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def build_points_policy(
    page_count: int,
    chunk: PageChunk | None = None,
    strict: bool = False,
) -> ObjectPolicy:
    """
    Validation policy for one deck request.

    Args:
        page_count: Number of page images sent
        chunk: Absolute page range of this request, if chunked
        strict: Reject generic openers and short context instead of repairing

    Returns:
        ObjectPolicy with page resolution bound to this request
    """

    def repair_slide(item: dict, index: int, stats: dict) -> str | None:
        label = f"Slide #{index + 1}"
        page = _coerce_page(item.get("selectedPageNumber"))
        if page is None:
            return f"{label} has an invalid 'selectedPageNumber'."

        resolution = resolve_page(page, page_count, chunk)
        if resolution is None:
            return f"{label} page number {page} is out of range."
        if resolution.remapped:
            stats["normalizedPageCount"] = stats.get("normalizedPageCount", 0) + 1
            logger.debug(f"{label}: absolute page {page} -> local {resolution.local_page}")
        item["selectedPageNumber"] = resolution.local_page

        raw_context = item["context"]
        if strict and GENERIC_OPENERS.match(raw_context):
            return f"{label} context must not start with generic narration."
        context = CONTEXT_TEXT.sanitize(raw_context)
        if not context:
            return f"{label} has empty context after normalization."
        if strict and len(context) < STRICT_MIN_CONTEXT_CHARS:
            return f"{label} context is too short for an insight-led explanation."
        item["context"] = context
        return None

    return ObjectPolicy(
        required_fields=ROOT_FIELDS,
        transforms={"nseScrip": normalize_scrip},
        enums={"marketCapCategory": MARKET_CAP_POLICY},
        arrays=(
            ArrayPolicy(
                field_name="slides",
                min_items=1,
                max_items=max(page_count, TOP_SLIDES),
                required_fields=("context",),
                optional_fields=("whyThisSlide",),
                item_hook=repair_slide,
                label="Slide",
            ),
        ),
    )


def select_slides(slides: list[dict], limit: int = TOP_SLIDES) -> list[dict]:
    """
    Keep the best distinct slides, ordered by page.

    A page selected twice counts as one slide.
    """
    candidates = [
        Candidate(
            id=str(slide["selectedPageNumber"]),
            text=slide["context"],
            secondary_text=slide.get("whyThisSlide") or "",
            natural_key=slide["selectedPageNumber"],
            payload=slide,
        )
        for slide in slides
    ]
    selected = select(
        candidates,
        max_count=limit,
        similarity_threshold=DUPLICATE_THRESHOLD,
        profile=SLIDE_PROFILE,
        relaxed_fill=True,
    )
    return [candidate.payload for candidate in selected]


class PointsAnalyzer(ExtractionService):
    """
    Slide selection for one deck (or one chunk of a deck).

    Example:
        analyzer = PointsAnalyzer(settings, topology, clients)
        result = await analyzer.analyze(images, None, analyzer.plan(None, None), request_id)
    """

    feature = "points"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    async def analyze(
        self,
        page_images: list[str],
        chunk: PageChunk | None,
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Select the top slides.

        Args:
            page_images: Page images as data URIs (or bare base64 JPEG)
            chunk: Absolute page range of these images, if chunked
            attempt_plan: Planned attempts
            request_id: Correlation id

        Returns:
            Response payload: metadata, slides, normalizedPageCount, meta

        Raises:
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        page_count = len(page_images)
        parts = [ContentPart.from_data_uri(image) for image in page_images]
        prompt = (
            self.user_template.replace("{top_slides}", str(TOP_SLIDES))
            .replace("{page_note}", describe_chunk(chunk, page_count))
        )

        policy = build_points_policy(page_count, chunk, self.settings.strict_content_checks)
        result = await self._orchestrate(
            attempt_plan,
            prompt,
            request_id,
            lambda raw: validate(raw, policy),
            parts=parts,
        )

        value = dict(result.value)
        value["slides"] = select_slides(value["slides"])
        value["normalizedPageCount"] = result.validation.normalized_page_count if result.validation else 0
        chunk_label = f" ({chunk.start}-{chunk.end})" if chunk else ""
        logger.info(
            f"[{request_id}] points: {page_count} pages{chunk_label}, "
            f"{len(value['slides'])} slides, {value['normalizedPageCount']} remapped via {result.attempt}"
        )
        value["meta"] = self.response_meta(result, request_id)
        return value

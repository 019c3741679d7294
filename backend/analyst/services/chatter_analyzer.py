"""
Earnings-call quote extraction ("The Chatter").

Extracts company metadata and material management remarks from a transcript,
then ranks and de-duplicates the remarks down to the newsletter's quota.
"""

import logging
import re
from typing import Any

from analyst.config import load_prompt
from analyst.models.schemas import MarketCapCategory, QuoteCategory
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.ranker import Candidate, ScoringProfile, select
from analyst.services.extraction.validator import (
    ArrayPolicy,
    EnumPolicy,
    EnumRule,
    ObjectPolicy,
    TextPolicy,
    ValidationResult,
    validate,
)
from analyst.services.extraction_service import ExtractionService

logger = logging.getLogger(__name__)

MAX_QUOTES = 20
# Models over-deliver; anything above this is a malformed response
MAX_RAW_QUOTES = 40
DUPLICATE_THRESHOLD = 0.6

DEFAULT_SPEAKER_NAME = "Management"
DEFAULT_SPEAKER_DESIGNATION = "Company Management"

CATEGORY_POLICY = EnumPolicy(
    allowed=tuple(category.value for category in QuoteCategory),
    rules=(
        EnumRule.of("Financial Guidance", r"guidance|outlook|forecast|revenue|margin|ebitda|earnings"),
        EnumRule.of("Capital Allocation", r"capital|capex|dividend|buyback|acquisition|allocation|debt"),
        EnumRule.of("Cost & Supply Chain", r"cost|supply|raw material|input|inventory|logistic"),
        EnumRule.of("Tech & Disruption", r"tech|digital|\bai\b|automation|disrupt|innovation"),
        EnumRule.of("Regulation & Policy", r"regulat|policy|government|\btax|\bgst\b|tariff"),
        EnumRule.of("Macro & Geopolitics", r"macro|geopolit|inflation|interest rate|currency|global"),
        EnumRule.of("ESG & Climate", r"\besg\b|climate|sustainab|carbon|renewable|emission"),
        EnumRule.of("Legal & Governance", r"legal|governance|litigation|\bboard\b|audit"),
        EnumRule.of("Competitive Landscape", r"compet|market share|rival"),
    ),
    catch_all=QuoteCategory.OTHER_MATERIAL.value,
)

MARKET_CAP_POLICY = EnumPolicy(
    allowed=tuple(label.value for label in MarketCapCategory),
    rules=(
        EnumRule.of("Large Cap", r"\blarge|\bmega"),
        EnumRule.of("Mid Cap", r"\bmid"),
        EnumRule.of("Small Cap", r"\bsmall"),
        EnumRule.of("Micro Cap", r"\bmicro|\bnano"),
    ),
)

ROOT_FIELDS = (
    "companyName",
    "fiscalPeriod",
    "nseScrip",
    "marketCapCategory",
    "industry",
    "companyDescription",
)


def normalize_scrip(value: str) -> str:
    """Exchange symbol: uppercase A-Z/0-9 only ("tata motors" -> "TATAMOTORS")."""
    return re.sub(r"[^A-Z0-9]", "", value.upper())


def _repair_speaker(item: dict, index: int, stats: dict) -> str | None:
    speaker = item.get("speaker")
    if not isinstance(speaker, dict):
        speaker = {}
    name = speaker.get("name")
    designation = speaker.get("designation")
    item["speaker"] = {
        "name": name.strip() if isinstance(name, str) and name.strip() else DEFAULT_SPEAKER_NAME,
        "designation": (
            designation.strip()
            if isinstance(designation, str) and designation.strip()
            else DEFAULT_SPEAKER_DESIGNATION
        ),
    }
    return None


CHATTER_POLICY = ObjectPolicy(
    required_fields=ROOT_FIELDS,
    transforms={"nseScrip": normalize_scrip},
    enums={"marketCapCategory": MARKET_CAP_POLICY},
    texts={"companyDescription": TextPolicy(max_chars=600)},
    arrays=(
        ArrayPolicy(
            field_name="quotes",
            min_items=1,
            max_items=MAX_RAW_QUOTES,
            required_fields=("quote", "summary"),
            enums={"category": CATEGORY_POLICY},
            texts={
                "quote": TextPolicy(max_chars=1200),
                "summary": TextPolicy(max_chars=420, capitalize=True),
            },
            item_hook=_repair_speaker,
            label="Quote",
        ),
    ),
)


def validate_chatter(raw: Any) -> ValidationResult:
    """Validate and normalize a chatter response."""
    return validate(raw, CHATTER_POLICY)


def select_quotes(quotes: list[dict], limit: int = MAX_QUOTES) -> list[dict]:
    """
    Rank quotes and drop near-duplicates, keeping response order.

    Args:
        quotes: Validated quote objects
        limit: Maximum quotes to keep

    Returns:
        Selected quotes in their original order
    """
    candidates = [
        Candidate(
            id=str(index),
            text=quote["quote"],
            secondary_text=quote["summary"],
            natural_key=index,
            payload=quote,
        )
        for index, quote in enumerate(quotes)
    ]
    selected = select(
        candidates,
        max_count=limit,
        similarity_threshold=DUPLICATE_THRESHOLD,
        profile=ScoringProfile(),
        relaxed_fill=False,
    )
    return [candidate.payload for candidate in selected]


class ChatterAnalyzer(ExtractionService):
    """
    Quote extraction for one transcript.

    Example:
        analyzer = ChatterAnalyzer(settings, topology, clients)
        result = await analyzer.analyze(transcript, analyzer.plan(None, None), request_id)
    """

    feature = "chatter"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    async def analyze(
        self,
        transcript: str,
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Extract metadata and ranked quotes.

        Args:
            transcript: Full transcript text
            attempt_plan: Planned attempts
            request_id: Correlation id

        Returns:
            Response payload: metadata, quotes and meta block

        Raises:
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        prompt = (
            self.user_template.replace("{max_quotes}", str(MAX_QUOTES))
            .replace("{transcript}", transcript)
        )
        result = await self._orchestrate(attempt_plan, prompt, request_id, validate_chatter)

        value = dict(result.value)
        raw_count = len(value["quotes"])
        value["quotes"] = select_quotes(value["quotes"])
        logger.info(
            f"[{request_id}] chatter: {value['companyName']} {value['fiscalPeriod']}, "
            f"{raw_count} -> {len(value['quotes'])} quotes via {result.attempt}"
        )
        value["meta"] = self.response_meta(result, request_id)
        return value

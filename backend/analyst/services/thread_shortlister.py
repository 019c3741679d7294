"""
Thread shortlist over a pool of already-extracted quotes.

Quotes are ranked locally first; the model then names the ids it prefers.
Model picks go first, the local ranking fills the rest, and a per-company
cap keeps one company from dominating the thread.
"""

import json
import logging
from typing import Any, Sequence

from analyst.config import load_prompt
from analyst.models.schemas import ShortlistQuote
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.ranker import Candidate, ScoringProfile, merge_preferred, rank
from analyst.services.extraction.validator import ObjectPolicy, ValidationResult, validate
from analyst.services.extraction_service import ExtractionService, InvalidInputError
from analyst.utils.text_utils import clamp_text, collapse_whitespace

logger = logging.getLogger(__name__)

PROMPT_SUMMARY_CHARS = 220
PROMPT_QUOTE_CHARS = 360

SHORTLIST_PROFILE = ScoringProfile(quality_bonus=1.0, long_penalty=1.0, short_penalty=0.0)


class DuplicateQuoteIdError(InvalidInputError):
    """Candidate pool contains the same id twice."""

    reason_code = "DUPLICATE_QUOTE_ID"


def build_candidates(quotes: Sequence[ShortlistQuote]) -> list[Candidate]:
    """
    Candidates keyed by quote id and grouped by company.

    Raises:
        DuplicateQuoteIdError: Two quotes share an id
    """
    seen: set[str] = set()
    candidates: list[Candidate] = []
    for index, quote in enumerate(quotes):
        if quote.id in seen:
            raise DuplicateQuoteIdError(f"Duplicate quote id '{quote.id}'.")
        seen.add(quote.id)
        candidates.append(
            Candidate(
                id=quote.id,
                text=quote.quote,
                secondary_text=quote.summary,
                natural_key=index,
                group=quote.company_name.strip().lower(),
                payload=quote,
            )
        )
    return candidates


def build_prompt_input(quotes: Sequence[ShortlistQuote]) -> str:
    """Compact JSON view of the pool, clamped for the prompt."""
    rows = [
        {
            "id": quote.id,
            "companyName": quote.company_name,
            "marketCapCategory": quote.market_cap_category,
            "industry": quote.industry,
            "summary": clamp_text(collapse_whitespace(quote.summary), PROMPT_SUMMARY_CHARS),
            "quote": clamp_text(collapse_whitespace(quote.quote), PROMPT_QUOTE_CHARS),
        }
        for quote in quotes
    ]
    return json.dumps(rows, ensure_ascii=False, indent=1)


def build_shortlist_policy(known_ids: Sequence[str]) -> ObjectPolicy:
    """Policy restricting shortlistedQuoteIds to ids that were supplied."""
    allowed = set(known_ids)

    def restrict_ids(root: dict, stats: dict) -> str | None:
        raw_ids = root.get("shortlistedQuoteIds")
        if not isinstance(raw_ids, list):
            return "Field 'shortlistedQuoteIds' must be an array."
        ids: list[str] = []
        for item in raw_ids:
            if isinstance(item, bool) or not isinstance(item, (str, int)):
                continue
            candidate_id = str(item).strip()
            if candidate_id in allowed and candidate_id not in ids:
                ids.append(candidate_id)
        dropped = len(raw_ids) - len(ids)
        if dropped:
            stats["droppedIdCount"] = stats.get("droppedIdCount", 0) + dropped
        root["shortlistedQuoteIds"] = ids
        return None

    return ObjectPolicy(root_hook=restrict_ids)


class ThreadShortlister(ExtractionService):
    """
    Shortlist quotes for a social thread.

    Example:
        shortlister = ThreadShortlister(settings, topology, clients)
        result = await shortlister.shortlist(quotes, 25, 2, plan, request_id)
    """

    feature = "thread"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    async def shortlist(
        self,
        quotes: list[ShortlistQuote],
        max_candidates: int,
        max_per_company: int,
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Build the shortlist.

        Args:
            quotes: Candidate pool
            max_candidates: Shortlist size
            max_per_company: Per-company cap
            attempt_plan: Planned attempts
            request_id: Correlation id

        Returns:
            Response payload: shortlistedQuoteIds, modelPickCount, meta

        Raises:
            DuplicateQuoteIdError: Two quotes share an id
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        candidates = build_candidates(quotes)
        ranked = rank(candidates, SHORTLIST_PROFILE)

        prompt = (
            self.user_template.replace("{max_candidates}", str(max_candidates))
            .replace("{max_per_company}", str(max_per_company))
            .replace("{quotes_json}", build_prompt_input(quotes))
        )
        policy = build_shortlist_policy([candidate.id for candidate in candidates])

        def validate_shortlist(raw: Any) -> ValidationResult:
            return validate(raw, policy)

        result = await self._orchestrate(attempt_plan, prompt, request_id, validate_shortlist)

        preferred = result.value["shortlistedQuoteIds"]
        merged = merge_preferred(preferred, ranked, max_candidates, max_per_company)
        logger.info(
            f"[{request_id}] thread: {len(quotes)} quotes, model picked {len(preferred)}, "
            f"shortlisted {len(merged)} via {result.attempt}"
        )
        return {
            "shortlistedQuoteIds": [candidate.id for candidate in merged],
            "modelPickCount": len(preferred),
            "meta": self.response_meta(result, request_id),
        }

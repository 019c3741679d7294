"""
Plotline story writer.

Turns per-company evidence into a long-form story: title, dek, one section
per planned company (subhead, paragraphs, quote blocks) and a closing
watchlist. The caller may send an editorial plan; it is sanitized against
the evidence, and a plan is built locally when none survives.

The endpoint always answers with a story. When every model attempt fails,
or the provider has no key, a deterministic story is assembled from the plan
and the quotes, and storySource says which one the caller got.
"""

import json
import logging
from typing import Any, Sequence

from analyst.config import load_prompt
from analyst.models.schemas import CompanyEvidence
from analyst.services.ai_clients.base import MissingCredentialError
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.orchestrator import ExtractionFailed
from analyst.services.extraction.validator import ObjectPolicy, ValidationResult, validate
from analyst.services.extraction_service import ExtractionService
from analyst.services.plotline_companies import STORY_RULES, PlotlineCompany, PlotlineQuote, normalize_companies
from analyst.utils.text_utils import collapse_whitespace

logger = logging.getLogger(__name__)

MAX_SUBHEAD_CHARS = 120
MAX_ANGLE_CHARS = 260
MAX_TITLE_CHARS = 120
MAX_DEK_CHARS = 260
MAX_PARAGRAPH_CHARS = 520
MAX_PARAGRAPHS = 4
MAX_WATCHLIST_CHARS = 220
MIN_WATCHLIST_LINES = 3
MAX_WATCHLIST_LINES = 5
MAX_PLANNED_SECTIONS = 10
QUOTES_PER_SECTION = 3

TIMELINE = "timeline"
SAME_PERIOD = "same_period"

DEFAULT_ANGLE = "Explain the strategic signal and investor implication from management evidence."
TIMELINE_ANGLE = "Explain how management framing evolved from older commentary to current positioning."
SAME_PERIOD_ANGLE = "Explain what this company reveals in the current period and why it matters versus peers."


def sentence(value: Any, max_chars: int) -> str:
    """Whitespace-collapsed text cut to max_chars; "" for non-strings."""
    if not isinstance(value, str):
        return ""
    return collapse_whitespace(value)[:max_chars]


def _string_ids(value: Any) -> list[str]:
    ids: list[str] = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, str) and item.strip() and item.strip() not in ids:
            ids.append(item.strip())
    return ids


def default_subhead(company: PlotlineCompany) -> str:
    return f"{company.company_name}: management signal gets clearer"


def infer_chronology_mode(quotes: Sequence[PlotlineQuote]) -> str:
    """timeline when quotes span two or more periods."""
    return TIMELINE if len({quote.period_sort_key for quote in quotes}) >= 2 else SAME_PERIOD


# =============================================================================
# Plan
# =============================================================================


def build_fallback_plan(keywords: Sequence[str], companies: Sequence[PlotlineCompany]) -> dict[str, Any]:
    """
    Plan covering the ten companies with the most (and most recent) evidence.

    Each section cites the three latest quotes.
    """
    def score(company: PlotlineCompany) -> float:
        latest = max(quote.period_sort_key for quote in company.quotes)
        return len(company.quotes) * 2 + latest / 100000

    selected = sorted(companies, key=score, reverse=True)[:MAX_PLANNED_SECTIONS]
    sections = []
    for company in selected:
        mode = infer_chronology_mode(company.quotes)
        latest_first = sorted(company.quotes, key=lambda quote: quote.period_sort_key, reverse=True)
        sections.append(
            {
                "companyKey": company.company_key,
                "subhead": default_subhead(company),
                "narrativeAngle": TIMELINE_ANGLE if mode == TIMELINE else SAME_PERIOD_ANGLE,
                "chronologyMode": mode,
                "quoteIds": [quote.quote_id for quote in latest_first[:QUOTES_PER_SECTION]],
            }
        )

    planned = {section["companyKey"] for section in sections}
    joined = ", ".join(keywords)
    return {
        "title": f"Plotline: {joined}",
        "dek": f"Management commentary across companies reveals how {joined} is shaping strategy and industry direction.",
        "sectionPlans": sections,
        "skippedCompanyKeys": [c.company_key for c in companies if c.company_key not in planned],
    }


def sanitize_plan(
    raw: Any,
    fallback: dict[str, Any],
    companies: Sequence[PlotlineCompany],
) -> dict[str, Any]:
    """
    Restrict a caller plan to known companies and quotes.

    Sections repeat no company and cite at most three known quote ids (the
    company's last three quotes when none are known). Every company without
    a section is skipped. Without a usable section the fallback plan is used.
    """
    if not isinstance(raw, dict):
        return fallback

    by_key = {company.company_key: company for company in companies}
    sections: list[dict[str, Any]] = []
    raw_sections = raw.get("sectionPlans")
    for item in raw_sections if isinstance(raw_sections, list) else []:
        if not isinstance(item, dict) or not isinstance(item.get("companyKey"), str):
            continue
        key = item["companyKey"].strip()
        company = by_key.get(key)
        if company is None or any(section["companyKey"] == key for section in sections):
            continue

        known = {quote.quote_id for quote in company.quotes}
        quote_ids = [quote_id for quote_id in _string_ids(item.get("quoteIds")) if quote_id in known]
        quote_ids = quote_ids[:QUOTES_PER_SECTION] or [
            quote.quote_id for quote in company.quotes[-QUOTES_PER_SECTION:]
        ]
        mode = item.get("chronologyMode")
        mode = TIMELINE if isinstance(mode, str) and mode.strip().lower() == TIMELINE else SAME_PERIOD

        sections.append(
            {
                "companyKey": key,
                "subhead": sentence(item.get("subhead"), MAX_SUBHEAD_CHARS) or default_subhead(company),
                "narrativeAngle": sentence(item.get("narrativeAngle"), MAX_ANGLE_CHARS) or DEFAULT_ANGLE,
                "chronologyMode": mode,
                "quoteIds": quote_ids,
            }
        )

    if not sections:
        return fallback

    planned = {section["companyKey"] for section in sections}
    skipped = [key for key in _string_ids(raw.get("skippedCompanyKeys")) if key in by_key]
    skipped += [c.company_key for c in companies if c.company_key not in planned and c.company_key not in skipped]

    return {
        "title": sentence(raw.get("title"), MAX_TITLE_CHARS) or fallback["title"],
        "dek": sentence(raw.get("dek"), MAX_DEK_CHARS) or fallback["dek"],
        "sectionPlans": sections,
        "skippedCompanyKeys": skipped,
    }


# =============================================================================
# Deterministic story
# =============================================================================


def fallback_paragraphs(
    section: dict[str, Any],
    company: PlotlineCompany,
    quotes: Sequence[PlotlineQuote],
    keywords: Sequence[str],
) -> list[str]:
    """Three stock paragraphs; the second names the period span on a timeline."""
    theme = " and ".join(keywords[:2]) or "the theme"
    first_period = quotes[0].period_label if quotes else "earlier commentary"
    last_period = quotes[-1].period_label if quotes else "latest commentary"

    if section["chronologyMode"] == TIMELINE and first_period != last_period:
        middle = (
            f"The progression from {first_period} to {last_period} shows the stance "
            "becoming more explicit and operational."
        )
    else:
        middle = (
            "In the current period, commentary is specific enough to compare against peers "
            "and separate signal from routine updates."
        )
    paragraphs = [
        f"{company.company_name} management frames {theme} as a strategic issue "
        "rather than a one-quarter talking point.",
        middle,
        "Taken together, the evidence points to durable implications for strategy, "
        "execution priorities, and medium-term expectations.",
    ]
    return [sentence(paragraph, MAX_PARAGRAPH_CHARS) for paragraph in paragraphs]


def fallback_watchlist(keywords: Sequence[str]) -> list[str]:
    lead = keywords[0] if keywords else "the theme"
    lines = [
        f"Watch whether management commentary keeps {lead} tied to concrete operating actions, "
        "not broad statements.",
        "Track if guidance language and capital allocation comments stay directionally consistent "
        "over coming quarters.",
        "Compare follow-through signals across companies to identify who is adapting faster "
        "and who is still in messaging mode.",
    ]
    return [sentence(line, MAX_WATCHLIST_CHARS) for line in lines]


def _quote_blocks(company: PlotlineCompany, quote_ids: Sequence[str]) -> list[PlotlineQuote]:
    by_id = {quote.quote_id: quote for quote in company.quotes}
    return [by_id[quote_id] for quote_id in quote_ids if quote_id in by_id][:QUOTES_PER_SECTION]


def build_deterministic_story(
    keywords: Sequence[str],
    companies: Sequence[PlotlineCompany],
    plan: dict[str, Any],
) -> dict[str, Any]:
    """Story assembled from the plan and quotes without a model."""
    by_key = {company.company_key: company for company in companies}
    sections = []
    for section in plan["sectionPlans"]:
        company = by_key.get(section["companyKey"])
        if company is None:
            continue
        quotes = _quote_blocks(company, section["quoteIds"]) or list(company.quotes[-QUOTES_PER_SECTION:])
        sections.append(
            {
                "companyKey": company.company_key,
                "companyName": company.company_name,
                "subhead": sentence(section["subhead"], MAX_SUBHEAD_CHARS),
                "narrativeParagraphs": fallback_paragraphs(section, company, quotes, keywords),
                "quoteBlocks": [quote.to_dict() for quote in quotes],
            }
        )

    return {
        "title": sentence(plan["title"], MAX_TITLE_CHARS),
        "dek": sentence(plan["dek"], MAX_DEK_CHARS),
        "sections": sections,
        "closingWatchlist": fallback_watchlist(keywords),
        "skippedCompanies": list(plan["skippedCompanyKeys"]),
    }


# =============================================================================
# Model output
# =============================================================================


def build_story_policy(
    keywords: Sequence[str],
    companies: Sequence[PlotlineCompany],
    plan: dict[str, Any],
) -> ObjectPolicy:
    """
    Policy keeping only planned sections with paragraphs and known quotes.

    Quote ids the model cites replace the planned ones when any is known.
    A reply without a single usable section is invalid.
    """
    by_key = {company.company_key: company for company in companies}
    planned = {section["companyKey"]: section for section in plan["sectionPlans"]}

    def normalize_story(root: dict, stats: dict) -> str | None:
        sections: list[dict[str, Any]] = []
        raw_sections = root.get("sections")
        for item in raw_sections if isinstance(raw_sections, list) else []:
            if not isinstance(item, dict) or not isinstance(item.get("companyKey"), str):
                continue
            key = item["companyKey"].strip()
            company = by_key.get(key)
            planned_section = planned.get(key)
            if company is None or planned_section is None:
                continue
            if any(section["companyKey"] == key for section in sections):
                continue

            raw_paragraphs = item.get("narrativeParagraphs")
            paragraphs: list[str] = []
            for paragraph in raw_paragraphs if isinstance(raw_paragraphs, list) else []:
                text = sentence(paragraph, MAX_PARAGRAPH_CHARS)
                if text:
                    paragraphs.append(text)
            paragraphs = paragraphs[:MAX_PARAGRAPHS]
            if not paragraphs:
                continue

            # Normalized sections carry quoteBlocks instead of quoteIds
            blocks = item.get("quoteBlocks")
            cited = _string_ids(item.get("quoteIds")) or _string_ids(
                [block.get("quoteId") for block in blocks if isinstance(block, dict)]
                if isinstance(blocks, list)
                else []
            )
            quotes = _quote_blocks(company, cited) or _quote_blocks(company, planned_section["quoteIds"])
            if not quotes:
                continue

            sections.append(
                {
                    "companyKey": key,
                    "companyName": company.company_name,
                    "subhead": sentence(item.get("subhead"), MAX_SUBHEAD_CHARS)
                    or sentence(planned_section["subhead"], MAX_SUBHEAD_CHARS),
                    "narrativeParagraphs": paragraphs,
                    "quoteBlocks": [quote.to_dict() for quote in quotes],
                }
            )

        if not sections:
            return "Model response has no usable story sections."

        watchlist: list[str] = []
        raw_watchlist = root.get("closingWatchlist")
        for line in raw_watchlist if isinstance(raw_watchlist, list) else []:
            text = sentence(line, MAX_WATCHLIST_CHARS)
            if text and text not in watchlist:
                watchlist.append(text)
        watchlist = watchlist[:MAX_WATCHLIST_LINES]
        if len(watchlist) < MIN_WATCHLIST_LINES:
            stats["fallbackWatchlist"] = 1
            watchlist = fallback_watchlist(keywords)

        title = sentence(root.get("title"), MAX_TITLE_CHARS) or sentence(plan["title"], MAX_TITLE_CHARS)
        dek = sentence(root.get("dek"), MAX_DEK_CHARS) or sentence(plan["dek"], MAX_DEK_CHARS)
        root.clear()
        root.update(
            {
                "title": title,
                "dek": dek,
                "sections": sections,
                "closingWatchlist": watchlist,
                "skippedCompanies": list(plan["skippedCompanyKeys"]),
            }
        )
        return None

    return ObjectPolicy(root_hook=normalize_story)


class PlotlineWriter(ExtractionService):
    """
    Write the plotline story, falling back to a deterministic one.

    Example:
        writer = PlotlineWriter(settings, topology, clients)
        companies = writer.prepare(body.companies, body.keywords)
        story = await writer.write(companies, body.keywords, body.plan, plan, request_id)
    """

    feature = "plotline_story"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    @staticmethod
    def prepare(companies: Sequence[CompanyEvidence], keywords: Sequence[str]) -> list[PlotlineCompany]:
        """
        Raises:
            InvalidInputError: No usable company, or too many quotes
        """
        return normalize_companies(companies, keywords, STORY_RULES)

    def build_prompt(self, keywords: Sequence[str], companies: Sequence[PlotlineCompany], plan: dict) -> str:
        return (
            self.user_template.replace("{keywords}", "\n".join(f"- {keyword}" for keyword in keywords))
            .replace("{plan_json}", json.dumps(plan, ensure_ascii=False))
            .replace("{companies_json}", json.dumps([c.to_dict() for c in companies], ensure_ascii=False))
        )

    async def write(
        self,
        companies: list[PlotlineCompany],
        keywords: list[str],
        raw_plan: dict[str, Any] | None,
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Write the story.

        Args:
            companies: Normalized evidence
            keywords: Theme keywords
            raw_plan: Caller's editorial plan, if any
            attempt_plan: Planned attempts
            request_id: Correlation id

        Returns:
            title, dek, sections, closingWatchlist, skippedCompanies,
            storySource ("model" or "fallback"), meta
        """
        plan = sanitize_plan(raw_plan, build_fallback_plan(keywords, companies), companies)
        policy = build_story_policy(keywords, companies, plan)

        def validate_story(raw: Any) -> ValidationResult:
            return validate(raw, policy)

        prompt = self.build_prompt(keywords, companies, plan)
        try:
            result = await self._orchestrate(attempt_plan, prompt, request_id, validate_story)
        except (ExtractionFailed, MissingCredentialError) as e:
            trace = e.trace if isinstance(e, ExtractionFailed) else []
            logger.warning(f"[{request_id}] plotline story: deterministic fallback ({e})")
            story = build_deterministic_story(keywords, companies, plan)
            return {
                **story,
                "storySource": "fallback",
                "meta": {
                    "requestId": request_id,
                    "provider": attempt_plan.requested.provider,
                    "model": None,
                    "requestedModel": attempt_plan.requested.model,
                    "fallbackUsed": True,
                    "attempts": [record.to_dict() for record in trace],
                },
            }

        logger.info(
            f"[{request_id}] plotline story: {len(result.value['sections'])}/{len(plan['sectionPlans'])} "
            f"sections via {result.attempt}"
        )
        return {**result.value, "storySource": "model", "meta": self.response_meta(result, request_id)}

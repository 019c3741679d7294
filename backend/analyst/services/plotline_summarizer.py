"""
Plotline summary: one narrative per company plus cross-company theme bullets.

Companies the model skips get a stock narrative and missing bullets get a
stock bullet, but a reply with neither a usable narrative nor a usable
bullet counts as invalid output and moves on to the next model.
"""

import json
import logging
from typing import Any, Sequence

from analyst.config import load_prompt
from analyst.models.schemas import CompanyEvidence
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.validator import ObjectPolicy, ValidationResult, validate
from analyst.services.extraction_service import ExtractionService
from analyst.services.plotline_companies import SUMMARY_RULES, PlotlineCompany, normalize_companies
from analyst.utils.text_utils import collapse_whitespace

logger = logging.getLogger(__name__)

MAX_NARRATIVE_CHARS = 1400
MAX_BULLETS = 10

FALLBACK_NARRATIVE = (
    "Management commentary suggests this keyword is tied to strategic direction, "
    "not a one-quarter update."
)


def fallback_bullet(keywords: Sequence[str]) -> str:
    return f"Across companies, {', '.join(keywords)} is emerging as a structural management theme."


def build_summary_policy(companies: Sequence[PlotlineCompany], keywords: Sequence[str]) -> ObjectPolicy:
    """
    Policy that keeps narratives for known companies only, in request order.

    Stats: "modelNarrativeCount", "modelBulletCount".
    """
    company_keys = [company.company_key for company in companies]
    allowed = set(company_keys)

    def normalize_summary(root: dict, stats: dict) -> str | None:
        narratives: dict[str, str] = {}
        raw_narratives = root.get("companyNarratives")
        if isinstance(raw_narratives, list):
            for item in raw_narratives:
                if not isinstance(item, dict) or not isinstance(item.get("companyKey"), str):
                    continue
                key = item["companyKey"].strip()
                narrative = item.get("narrative")
                narrative = collapse_whitespace(narrative)[:MAX_NARRATIVE_CHARS] if isinstance(narrative, str) else ""
                if key in allowed and narrative:
                    narratives[key] = narrative

        bullets: list[str] = []
        seen: set[str] = set()
        raw_bullets = root.get("masterThemeBullets")
        for item in raw_bullets if isinstance(raw_bullets, list) else []:
            bullet = collapse_whitespace(item) if isinstance(item, str) else ""
            if not bullet or bullet.lower() in seen:
                continue
            seen.add(bullet.lower())
            bullets.append(bullet)
            if len(bullets) >= MAX_BULLETS:
                break

        if not narratives and not bullets:
            return "Model response has no usable company narratives or theme bullets."

        stats["modelNarrativeCount"] = len(narratives)
        stats["modelBulletCount"] = len(bullets)
        root.clear()
        root["companyNarratives"] = [
            {"companyKey": key, "narrative": narratives.get(key, FALLBACK_NARRATIVE)} for key in company_keys
        ]
        root["masterThemeBullets"] = bullets or [fallback_bullet(keywords)]
        return None

    return ObjectPolicy(root_hook=normalize_summary)


class PlotlineSummarizer(ExtractionService):
    """
    Summarize matched quotes into company narratives and theme bullets.

    Example:
        summarizer = PlotlineSummarizer(settings, topology, clients)
        companies = summarizer.prepare(body.companies, body.keywords)
        result = await summarizer.summarize(companies, body.keywords, plan, request_id)
    """

    feature = "plotline_summary"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    @staticmethod
    def prepare(companies: Sequence[CompanyEvidence], keywords: Sequence[str]) -> list[PlotlineCompany]:
        """
        Raises:
            InvalidInputError: No usable company, or too many quotes
        """
        return normalize_companies(companies, keywords, SUMMARY_RULES)

    async def summarize(
        self,
        companies: list[PlotlineCompany],
        keywords: list[str],
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Run the summary.

        Returns:
            companyNarratives (one per company, request order), masterThemeBullets, meta

        Raises:
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        prompt = self.user_template.replace("{keywords}", "\n".join(f"- {k}" for k in keywords)).replace(
            "{companies_json}",
            json.dumps([company.to_dict() for company in companies], ensure_ascii=False),
        )
        policy = build_summary_policy(companies, keywords)

        def validate_summary(raw: Any) -> ValidationResult:
            return validate(raw, policy)

        result = await self._orchestrate(attempt_plan, prompt, request_id, validate_summary)

        logger.info(
            f"[{request_id}] plotline summary: {len(companies)} companies, "
            f"{len(result.value['masterThemeBullets'])} bullets via {result.attempt}"
        )
        return {**result.value, "meta": self.response_meta(result, request_id)}

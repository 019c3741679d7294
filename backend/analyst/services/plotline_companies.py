"""
Company evidence shared by the plotline summary and story writers.

Callers send companies with quotes already matched to keywords. Entries that
lack identity fields or any usable quote are dropped rather than rejected;
only an empty result or too many quotes overall is a caller error.
"""

from dataclasses import dataclass
from typing import Any, Sequence

from analyst.models.schemas import PLOTLINE_MAX_COMPANIES, PLOTLINE_MAX_TOTAL_QUOTES, CompanyEvidence
from analyst.services.chatter_analyzer import normalize_scrip
from analyst.services.extraction_service import InvalidInputError
from analyst.services.plotline_extractor import (
    DEFAULT_SPEAKER_DESIGNATION,
    DEFAULT_SPEAKER_NAME,
    MAX_PERIOD_KEY,
    MIN_PERIOD_KEY,
)
from analyst.utils.text_utils import collapse_whitespace, normalize_token

UNKNOWN_PERIOD_LABEL = "Unknown Period"
UNKNOWN_PERIOD_KEY = 200001
MAX_QUOTE_ID_CHARS = 120


@dataclass(frozen=True)
class QuoteRules:
    """
    How quotes are cleaned for one endpoint.

    Attributes:
        max_per_company: Quotes kept per company
        max_chars: Quote text is cut to this length
        require_id: Quotes without quoteId are dropped; ids are de-duplicated
        chronological: Sort by period key, then quote text
    """

    max_per_company: int
    max_chars: int
    require_id: bool = False
    chronological: bool = False


SUMMARY_RULES = QuoteRules(max_per_company=12, max_chars=900)
STORY_RULES = QuoteRules(max_per_company=16, max_chars=1200, require_id=True, chronological=True)


@dataclass(frozen=True)
class PlotlineQuote:
    quote_id: str
    quote: str
    speaker_name: str
    speaker_designation: str
    matched_keywords: tuple[str, ...]
    period_label: str
    period_sort_key: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "quoteId": self.quote_id,
            "quote": self.quote,
            "speakerName": self.speaker_name,
            "speakerDesignation": self.speaker_designation,
            "matchedKeywords": list(self.matched_keywords),
            "periodLabel": self.period_label,
            "periodSortKey": self.period_sort_key,
        }


@dataclass(frozen=True)
class PlotlineCompany:
    company_key: str
    company_name: str
    nse_scrip: str
    market_cap_category: str
    industry: str
    company_description: str
    quotes: tuple[PlotlineQuote, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "companyKey": self.company_key,
            "companyName": self.company_name,
            "marketCapCategory": self.market_cap_category,
            "industry": self.industry,
            "quotes": [quote.to_dict() for quote in self.quotes],
        }


def _clean_quotes(company: CompanyEvidence, keywords: dict[str, str], rules: QuoteRules) -> list[PlotlineQuote]:
    quotes: list[PlotlineQuote] = []
    seen_ids: set[str] = set()

    for raw in company.quotes:
        text = raw.quote.strip()
        quote_id = raw.quote_id.strip()[:MAX_QUOTE_ID_CHARS]
        if not text or (rules.require_id and not quote_id):
            continue
        if rules.require_id:
            if quote_id in seen_ids:
                continue
            seen_ids.add(quote_id)

        matched: list[str] = []
        for item in raw.matched_keywords:
            keyword = keywords.get(normalize_token(item))
            if keyword and keyword not in matched:
                matched.append(keyword)
        if not matched:
            continue

        sort_key = raw.period_sort_key
        if sort_key is None or not MIN_PERIOD_KEY <= sort_key <= MAX_PERIOD_KEY:
            sort_key = UNKNOWN_PERIOD_KEY

        if rules.chronological:
            text = collapse_whitespace(text)
        quotes.append(
            PlotlineQuote(
                quote_id=quote_id,
                quote=text[: rules.max_chars],
                speaker_name=raw.speaker_name.strip() or DEFAULT_SPEAKER_NAME,
                speaker_designation=raw.speaker_designation.strip() or DEFAULT_SPEAKER_DESIGNATION,
                matched_keywords=tuple(matched),
                period_label=raw.period_label.strip() or UNKNOWN_PERIOD_LABEL,
                period_sort_key=sort_key,
            )
        )

    if rules.chronological:
        quotes.sort(key=lambda quote: (quote.period_sort_key, quote.quote))
    return quotes[: rules.max_per_company]


def normalize_companies(
    companies: Sequence[CompanyEvidence],
    keywords: Sequence[str],
    rules: QuoteRules,
) -> list[PlotlineCompany]:
    """
    Keep companies with full identity and at least one quote on a requested keyword.

    The first company wins when keys repeat. matchedKeywords are replaced by
    the keyword as requested; out-of-range period keys become 200001.

    Raises:
        InvalidInputError: MISSING_COMPANIES when nothing usable is left,
            TOO_MANY_QUOTES when kept quotes exceed PLOTLINE_MAX_TOTAL_QUOTES
    """
    by_token = {normalize_token(keyword): keyword for keyword in keywords}
    result: list[PlotlineCompany] = []
    seen_keys: set[str] = set()

    for company in companies:
        identity = (
            company.company_key.strip(),
            company.company_name.strip(),
            company.market_cap_category.strip(),
            company.industry.strip(),
            company.company_description.strip(),
        )
        scrip = normalize_scrip(company.nse_scrip)
        if not all(identity) or not scrip:
            continue
        quotes = _clean_quotes(company, by_token, rules)
        if not quotes:
            continue
        if len(result) >= PLOTLINE_MAX_COMPANIES:
            break
        company_key, company_name, market_cap, industry, description = identity
        if company_key in seen_keys:
            continue
        seen_keys.add(company_key)
        result.append(
            PlotlineCompany(
                company_key=company_key,
                company_name=company_name,
                nse_scrip=scrip,
                market_cap_category=market_cap,
                industry=industry,
                company_description=description,
                quotes=tuple(quotes),
            )
        )

    if not result:
        raise InvalidInputError(
            "Field 'companies' must contain valid company quote data.", "MISSING_COMPANIES"
        )
    total = sum(len(company.quotes) for company in result)
    if total > PLOTLINE_MAX_TOTAL_QUOTES:
        raise InvalidInputError(
            f"Too many total quotes ({total}, max {PLOTLINE_MAX_TOTAL_QUOTES}).", "TOO_MANY_QUOTES"
        )
    return result

"""
Pydantic models for the extraction API.

Request bodies use camelCase on the wire (pageImages, chunkStartPage)
and snake_case in Python.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from analyst.utils.text_utils import normalize_compact

# Size ceilings enforced before any upstream call
CHATTER_MAX_BODY_BYTES = 2 * 1024 * 1024
CHATTER_MAX_TRANSCRIPT_CHARS = 800_000
POINTS_MAX_BODY_BYTES = 25 * 1024 * 1024
POINTS_MAX_PAGES = 60
POINTS_MAX_TOTAL_IMAGE_CHARS = 20 * 1024 * 1024
PLOTLINE_MAX_BODY_BYTES = 2 * 1024 * 1024
PLOTLINE_MAX_TRANSCRIPT_CHARS = 900_000
PLOTLINE_MAX_KEYWORDS = 20
SHORTLIST_MAX_BODY_BYTES = 3 * 1024 * 1024
SHORTLIST_MAX_QUOTES = 120
SUMMARY_MAX_BODY_BYTES = 4 * 1024 * 1024
STORY_MAX_BODY_BYTES = 5 * 1024 * 1024
PLOTLINE_MAX_COMPANIES = 60
PLOTLINE_MAX_TOTAL_QUOTES = 320
THREAD_DRAFT_MAX_BODY_BYTES = 2 * 1024 * 1024
THREAD_DRAFT_MAX_QUOTES = 30
THREAD_REGENERATE_MAX_BODY_BYTES = 1 * 1024 * 1024


class QuoteCategory(str, Enum):
    """Topic category of a management remark."""

    FINANCIAL_GUIDANCE = "Financial Guidance"
    CAPITAL_ALLOCATION = "Capital Allocation"
    COST_SUPPLY_CHAIN = "Cost & Supply Chain"
    TECH_DISRUPTION = "Tech & Disruption"
    REGULATION_POLICY = "Regulation & Policy"
    MACRO_GEOPOLITICS = "Macro & Geopolitics"
    ESG_CLIMATE = "ESG & Climate"
    LEGAL_GOVERNANCE = "Legal & Governance"
    COMPETITIVE_LANDSCAPE = "Competitive Landscape"
    OTHER_MATERIAL = "Other Material"


class MarketCapCategory(str, Enum):
    """Market capitalization label."""

    LARGE = "Large Cap"
    MID = "Mid Cap"
    SMALL = "Small Cap"
    MICRO = "Micro Cap"


def clean_keywords(value: list[str]) -> list[str]:
    """
    Collapse whitespace and drop keywords that repeat once punctuation and case are ignored.

    Raises:
        ValueError: No keyword left, or more than PLOTLINE_MAX_KEYWORDS
    """
    seen: set[str] = set()
    keywords: list[str] = []
    for item in value:
        keyword = " ".join(str(item).split())
        compact = normalize_compact(keyword)
        if not compact or compact in seen:
            continue
        seen.add(compact)
        keywords.append(keyword)
    if not keywords:
        raise ValueError("Field 'keywords' must contain at least one keyword.")
    if len(keywords) > PLOTLINE_MAX_KEYWORDS:
        raise ValueError(f"Field 'keywords' must contain at most {PLOTLINE_MAX_KEYWORDS} keywords.")
    return keywords


class ApiModel(BaseModel):
    """Base model: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderSelection(ApiModel):
    """Optional provider/model selection shared by extraction requests."""

    provider: str | None = Field(default=None, description="Provider name (gemini, openrouter)")
    model: str | None = Field(default=None, description="Model on the provider allow-list")


# =============================================================================
# Requests
# =============================================================================


class ChatterRequest(ProviderSelection):
    """Earnings-call transcript for quote extraction."""

    transcript: str = Field(..., max_length=CHATTER_MAX_TRANSCRIPT_CHARS)

    @field_validator("transcript")
    @classmethod
    def _transcript_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Field 'transcript' is required.")
        return value


class PointsRequest(ProviderSelection):
    """Investor deck pages (data URIs) for slide selection."""

    page_images: list[str] = Field(..., min_length=1, max_length=POINTS_MAX_PAGES)
    chunk_start_page: int | None = Field(default=None, ge=1)
    chunk_end_page: int | None = Field(default=None, ge=1)

    @field_validator("page_images")
    @classmethod
    def _images_not_blank(cls, value: list[str]) -> list[str]:
        for index, image in enumerate(value, start=1):
            if not image or not image.strip():
                raise ValueError(f"Page image #{index} is empty.")
        return value

    @property
    def total_image_chars(self) -> int:
        return sum(len(image) for image in self.page_images)


class PlotlineRequest(ProviderSelection):
    """Transcript plus the keywords whose narrative should be traced."""

    transcript: str = Field(..., max_length=PLOTLINE_MAX_TRANSCRIPT_CHARS)
    keywords: list[str] = Field(..., min_length=1)

    @field_validator("transcript")
    @classmethod
    def _transcript_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Field 'transcript' is required.")
        return value

    @field_validator("keywords")
    @classmethod
    def _dedupe_keywords(cls, value: list[str]) -> list[str]:
        return clean_keywords(value)


class ShortlistQuote(ApiModel):
    """One candidate quote for a thread shortlist."""

    id: str = Field(..., min_length=1)
    company_name: str = Field(..., min_length=1)
    quote: str = Field(..., min_length=1)
    summary: str = Field(..., min_length=1)
    market_cap_category: str = ""
    industry: str = ""
    speaker_name: str = ""
    speaker_designation: str = ""

    @field_validator("id", "company_name", "quote", "summary")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class ShortlistRequest(ProviderSelection):
    """Candidate pool for the thread shortlist."""

    quotes: list[ShortlistQuote] = Field(..., min_length=1, max_length=SHORTLIST_MAX_QUOTES)
    max_candidates: int = Field(default=25, ge=1, le=40)
    max_per_company: int = Field(default=2, ge=1, le=6)


class EvidenceQuote(ApiModel):
    """A quote already matched to a plotline keyword; loose fields are cleaned later."""

    quote_id: str = ""
    quote: str = ""
    speaker_name: str = ""
    speaker_designation: str = ""
    matched_keywords: list[str] = Field(default_factory=list)
    period_label: str = ""
    period_sort_key: int | None = None


class CompanyEvidence(ApiModel):
    """One company's identity and its matched quotes."""

    company_key: str = ""
    company_name: str = ""
    nse_scrip: str = ""
    market_cap_category: str = ""
    industry: str = ""
    company_description: str = ""
    quotes: list[EvidenceQuote] = Field(default_factory=list)


class PlotlineSummaryRequest(ProviderSelection):
    """Per-company evidence to summarize into narratives and theme bullets."""

    keywords: list[str] = Field(..., min_length=1)
    companies: list[CompanyEvidence] = Field(..., min_length=1)

    @field_validator("keywords")
    @classmethod
    def _dedupe_keywords(cls, value: list[str]) -> list[str]:
        return clean_keywords(value)


class PlotlineStoryRequest(PlotlineSummaryRequest):
    """Evidence for the long-form story; `plan` is an editorial plan from an earlier call."""

    plan: dict[str, Any] | None = None


class ThreadQuote(ApiModel):
    """A quote picked for the thread; all eight fields are required."""

    id: str
    company_name: str
    market_cap_category: str
    industry: str
    summary: str
    quote: str
    speaker_name: str
    speaker_designation: str

    @field_validator("*")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class EditionMetadata(ApiModel):
    """Newsletter edition the thread promotes."""

    edition_title: str = "The Chatter"
    edition_url: str = ""
    edition_date: str = ""
    companies_covered: int | None = None
    industries_covered: int | None = None

    @field_validator("edition_title")
    @classmethod
    def _default_title(cls, value: str) -> str:
        return value.strip() or "The Chatter"


class ThreadDraftRequest(ProviderSelection):
    """Selected quotes to turn into an intro, one insight tweet each and an outro."""

    selected_quotes: list[ThreadQuote] = Field(..., min_length=1, max_length=THREAD_DRAFT_MAX_QUOTES)
    edition_metadata: EditionMetadata = Field(default_factory=EditionMetadata)


class TweetKind(str, Enum):
    """Position of a tweet in the thread."""

    INTRO = "intro"
    INSIGHT = "insight"
    OUTRO = "outro"


class ThreadRegenerateRequest(ProviderSelection):
    """Rewrite one tweet without repeating the ones already in the thread."""

    tweet_kind: TweetKind
    target_quote: ThreadQuote | None = None
    current_tweet: str = ""
    used_tweet_texts: list[str] = Field(default_factory=list)
    edition_metadata: EditionMetadata = Field(default_factory=EditionMetadata)

    @field_validator("tweet_kind", mode="before")
    @classmethod
    def _lower_kind(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


# =============================================================================
# Health
# =============================================================================


class ModelHealthState(str, Enum):
    """Result of probing one model."""

    OK = "ok"
    MISSING_KEY = "missing_key"
    INVALID_KEY = "invalid_key"
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    TIMEOUT = "timeout"
    LOCATION_UNSUPPORTED = "location_unsupported"
    UPSTREAM_ERROR = "upstream_error"


class ModelHealth(ApiModel):
    """Check result for one (provider, model) pair."""

    provider: str
    model: str
    state: ModelHealthState
    message: str = ""
    latency_ms: int | None = None


class HealthReport(ApiModel):
    """Check results for every configured model."""

    ok: bool
    models: list[ModelHealth] = Field(default_factory=list)

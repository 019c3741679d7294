"""
Keyword narrative extraction ("Plotline").

Finds management remarks about user-chosen keywords across a (possibly very
long) transcript. Oversized transcripts are reduced to keyword windows first;
when no keyword occurs at all, an empty quote list is a valid answer.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from analyst.config import load_prompt
from analyst.services.chatter_analyzer import MARKET_CAP_POLICY, ROOT_FIELDS, normalize_scrip
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.input_shaper import shape_transcript
from analyst.services.extraction.validator import ObjectPolicy, validate
from analyst.services.extraction_service import ExtractionService
from analyst.utils.text_utils import normalize_compact, normalize_token

logger = logging.getLogger(__name__)

MAX_QUOTES = 120
MIN_PERIOD_KEY = 190001
MAX_PERIOD_KEY = 210012

DEFAULT_SPEAKER_NAME = "Management"
DEFAULT_SPEAKER_DESIGNATION = "Company Management"

MONTH_INDEX = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

_MONTH_YEAR = re.compile(r"\b([A-Za-z]{3,9})\s*['-]?\s*(\d{2,4})\b")
_QUARTER_FY = re.compile(r"\bQ([1-4])\s*FY\s*(\d{2,4})\b", re.IGNORECASE)
_FISCAL_YEAR = re.compile(r"\bFY\s*(\d{2,4})\b", re.IGNORECASE)

# Indian fiscal year ends in March: Q1 -> June, Q2 -> Sept, Q3 -> Dec, Q4 -> March
QUARTER_END_MONTH = {1: 6, 2: 9, 3: 12, 4: 3}


@dataclass(frozen=True)
class KeywordEntry:
    """Keyword as typed plus its token and compact normal forms."""

    source: str
    token: str
    compact: str

    @classmethod
    def of(cls, keyword: str) -> "KeywordEntry":
        return cls(keyword, normalize_token(keyword), normalize_compact(keyword))


def build_keyword_entries(keywords: Sequence[str]) -> list[KeywordEntry]:
    """Normalize keywords, dropping blanks and compact-form duplicates."""
    entries: list[KeywordEntry] = []
    seen: set[str] = set()
    for keyword in keywords:
        entry = KeywordEntry.of(keyword.strip())
        if not entry.compact or entry.compact in seen:
            continue
        seen.add(entry.compact)
        entries.append(entry)
    return entries


def detect_matched_keywords(quote: str, entries: Sequence[KeywordEntry]) -> list[str]:
    """Keywords occurring in a quote by literal, token or compact form."""
    lower = quote.lower()
    tokenized = normalize_token(quote)
    compact = normalize_compact(quote)
    return [
        entry.source
        for entry in entries
        if entry.source.lower() in lower
        or (entry.token and entry.token in tokenized)
        or entry.compact in compact
    ]


def sanitize_matched_keywords(raw: Any, entries: Sequence[KeywordEntry], quote: str) -> list[str]:
    """
    Restrict model-reported keywords to the requested ones.

    Reported keywords are matched by token or compact form and replaced by
    the keyword as requested. When none survive, matches are inferred from
    the quote text.
    """
    by_token = {entry.token: entry.source for entry in entries}
    by_compact = {entry.compact: entry.source for entry in entries}
    result: list[str] = []

    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, str) or not item.strip():
                continue
            matched = by_token.get(normalize_token(item)) or by_compact.get(normalize_compact(item))
            if matched and matched not in result:
                result.append(matched)

    if not result:
        result = detect_matched_keywords(quote, entries)
    return result


def _canonical_year(value: int) -> int:
    if 0 <= value <= 99:
        return 2000 + value
    return value


def infer_period_sort_key(
    period_label: str,
    fiscal_period: str,
    today: datetime | None = None,
) -> int:
    """
    Infer a YYYYMM sort key from period labels.

    Tries "Mon YYYY", then "QnFYyy" (quarter end month), then "FYyy"
    (March of that year), on the quote's label first and the document's
    fiscal period second. Falls back to the current month.

    Example:
        >>> infer_period_sort_key("Q3FY25", "")
        202412
    """
    for source in (period_label, fiscal_period):
        source = (source or "").strip()
        if not source:
            continue

        for match in _MONTH_YEAR.finditer(source):
            month = MONTH_INDEX.get(match.group(1).lower())
            if month:
                return _canonical_year(int(match.group(2))) * 100 + month

        match = _QUARTER_FY.search(source)
        if match:
            quarter = int(match.group(1))
            fiscal_year = _canonical_year(int(match.group(2)))
            year = fiscal_year if quarter == 4 else fiscal_year - 1
            return year * 100 + QUARTER_END_MONTH[quarter]

        match = _FISCAL_YEAR.search(source)
        if match:
            return _canonical_year(int(match.group(1))) * 100 + 3

    now = today or datetime.now(timezone.utc)
    return now.year * 100 + now.month


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def build_quote_sanitizer(
    keywords: Sequence[str],
    today: datetime | None = None,
) -> Callable[[dict, dict], str | None]:
    """
    Root hook that sanitizes, de-duplicates and orders plotline quotes.

    Quotes without any requested keyword are dropped. Duplicates share
    quote text, speaker and period. Output is sorted by period then quote.
    """
    entries = build_keyword_entries(keywords)

    def sanitize(root: dict, stats: dict) -> str | None:
        raw_quotes = root.get("quotes")
        if raw_quotes is None:
            raw_quotes = []
        if not isinstance(raw_quotes, list):
            return "Field 'quotes' must be an array."
        if len(raw_quotes) > MAX_QUOTES:
            return f"Field 'quotes' must contain at most {MAX_QUOTES} items."

        fiscal_period = root["fiscalPeriod"]
        unique: dict[str, dict] = {}
        dropped = 0

        for raw in raw_quotes:
            quote = _text(raw.get("quote")) if isinstance(raw, dict) else ""
            if not quote:
                dropped += 1
                continue

            matched = sanitize_matched_keywords(raw.get("matchedKeywords"), entries, quote)
            if not matched:
                dropped += 1
                continue

            speaker_name = _text(raw.get("speakerName")) or DEFAULT_SPEAKER_NAME
            period_label = _text(raw.get("periodLabel")) or fiscal_period
            sort_key = raw.get("periodSortKey")
            if (
                isinstance(sort_key, bool)
                or not isinstance(sort_key, int)
                or not MIN_PERIOD_KEY <= sort_key <= MAX_PERIOD_KEY
            ):
                sort_key = infer_period_sort_key(period_label, fiscal_period, today)

            key = f"{quote.lower()}|{speaker_name.lower()}|{sort_key}"
            if key in unique:
                dropped += 1
                continue
            unique[key] = {
                "quote": quote,
                "speakerName": speaker_name,
                "speakerDesignation": _text(raw.get("speakerDesignation")) or DEFAULT_SPEAKER_DESIGNATION,
                "matchedKeywords": matched,
                "periodLabel": period_label,
                "periodSortKey": sort_key,
            }

        if dropped:
            stats["droppedQuoteCount"] = stats.get("droppedQuoteCount", 0) + dropped
        root["quotes"] = sorted(unique.values(), key=lambda q: (q["periodSortKey"], q["quote"]))
        return None

    return sanitize


def build_plotline_policy(keywords: Sequence[str], today: datetime | None = None) -> ObjectPolicy:
    """Validation policy for one plotline request."""
    return ObjectPolicy(
        required_fields=ROOT_FIELDS,
        transforms={"nseScrip": normalize_scrip},
        enums={"marketCapCategory": MARKET_CAP_POLICY},
        root_hook=build_quote_sanitizer(keywords, today),
    )


class PlotlineExtractor(ExtractionService):
    """
    Keyword narrative extraction for one transcript.

    Example:
        extractor = PlotlineExtractor(settings, topology, clients)
        result = await extractor.extract(transcript, ["order book"], plan, request_id)
    """

    feature = "plotline"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    async def extract(
        self,
        transcript: str,
        keywords: list[str],
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Extract keyword quotes.

        Args:
            transcript: Full transcript text
            keywords: De-duplicated keywords
            attempt_plan: Planned attempts
            request_id: Correlation id

        Returns:
            Response payload: metadata, quotes, shaping info and meta block

        Raises:
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        settings = self.settings
        shaped = shape_transcript(
            transcript,
            keywords,
            safe_chars=settings.transcript_safe_chars,
            radius=settings.keyword_window_radius,
            max_windows=settings.keyword_max_windows,
            header_chars=settings.keyword_header_chars,
            fallback_chars=settings.keyword_fallback_chars,
        )

        prompt = (
            self.user_template.replace("{keywords}", ", ".join(keywords))
            .replace("{max_quotes}", str(MAX_QUOTES))
            .replace("{shaping_note}", shaped.note)
            .replace("{transcript}", shaped.body)
        )

        policy = build_plotline_policy(keywords)
        result = await self._orchestrate(
            attempt_plan,
            prompt,
            request_id,
            lambda raw: validate(raw, policy),
        )

        value = dict(result.value)
        value["shaping"] = {
            "mode": shaped.mode,
            "hitCount": shaped.hit_count,
            "windowCount": shaped.window_count,
            "truncated": shaped.truncated,
        }
        logger.info(
            f"[{request_id}] plotline: {len(keywords)} keywords, {shaped.mode} input, "
            f"{len(value['quotes'])} quotes via {result.attempt}"
        )
        value["meta"] = self.response_meta(result, request_id)
        return value

"""
Thread copy: a full draft (intro, one insight per quote, outro) and
single-tweet regeneration.

Tweets are tidied and clamped to 260 characters. Draft gaps are filled with
stock intro/outro lines and "Company: summary" insights, but a reply that
yields no usable tweet at all is invalid output.
"""

import json
import logging
import re
from typing import Any, Sequence

from analyst.config import load_prompt
from analyst.models.schemas import EditionMetadata, ThreadQuote, TweetKind
from analyst.services.extraction.attempt_planner import AttemptPlan
from analyst.services.extraction.validator import ObjectPolicy, ValidationResult, validate
from analyst.services.extraction_service import ExtractionService, InvalidInputError
from analyst.services.thread_shortlister import DuplicateQuoteIdError
from analyst.utils.text_utils import clamp_text, collapse_whitespace

logger = logging.getLogger(__name__)

MAX_TWEET_CHARS = 260

INTRO_FALLBACK = (
    "Q results season is in full swing and management commentary is packed with signal. "
    "Here are the standout nuggets from this edition of The Chatter."
)

_EXTRA_NEWLINES = re.compile(r"\n{3,}")
_EXTRA_SPACES = re.compile(r" {2,}")


def normalize_tweet(value: Any) -> str:
    """
    Tidy tweet text, keeping single blank lines.

    Example:
        >>> normalize_tweet("Capex  up.\\r\\n\\n\\n\\nMore soon ")
        'Capex up.\\n\\nMore soon'
    """
    if not isinstance(value, str):
        return ""
    text = _EXTRA_SPACES.sub(" ", _EXTRA_NEWLINES.sub("\n\n", value.replace("\r", ""))).strip()
    return clamp_text(text, MAX_TWEET_CHARS)


def fallback_insight(quote: ThreadQuote) -> str:
    return clamp_text(collapse_whitespace(f"{quote.company_name}: {quote.summary}"), MAX_TWEET_CHARS)


def fallback_outro(edition: EditionMetadata) -> str:
    if edition.edition_url.strip():
        return f"For the full breakdown, read the complete edition here: {edition.edition_url.strip()}"
    return "For the full breakdown, read the complete edition on The Chatter."


def check_unique_ids(quotes: Sequence[ThreadQuote]) -> None:
    """
    Raises:
        DuplicateQuoteIdError: Two quotes share an id
    """
    seen: set[str] = set()
    for quote in quotes:
        if quote.id in seen:
            raise DuplicateQuoteIdError(f"Duplicate quote id '{quote.id}' found.")
        seen.add(quote.id)


def quote_payload(quote: ThreadQuote) -> dict[str, str]:
    return quote.model_dump(by_alias=True)


def edition_payload(edition: EditionMetadata) -> dict[str, Any]:
    return edition.model_dump(by_alias=True, exclude_none=True)


def build_draft_policy(quotes: Sequence[ThreadQuote], edition: EditionMetadata) -> ObjectPolicy:
    """
    Policy producing exactly one insight per selected quote, in selection order.

    An insight is matched by quoteId first, then by position. Stats:
    "modelTweetCount".
    """

    def normalize_draft(root: dict, stats: dict) -> str | None:
        intro = normalize_tweet(root.get("introTweet"))
        outro = normalize_tweet(root.get("outroTweet"))

        candidates: list[tuple[str, str]] = []
        raw_insights = root.get("insightTweets")
        for item in raw_insights if isinstance(raw_insights, list) else []:
            if not isinstance(item, dict):
                continue
            quote_id = item.get("quoteId").strip() if isinstance(item.get("quoteId"), str) else ""
            tweet = normalize_tweet(item.get("tweet"))
            if quote_id and tweet:
                candidates.append((quote_id, tweet))

        if not intro and not outro and not candidates:
            return "Model response has no usable tweets."

        by_id: dict[str, str] = {}
        for quote_id, tweet in candidates:
            by_id.setdefault(quote_id, tweet)

        insights = []
        for index, quote in enumerate(quotes):
            tweet = by_id.get(quote.id)
            if not tweet and index < len(candidates):
                tweet = candidates[index][1]
            insights.append({"quoteId": quote.id, "tweet": tweet or fallback_insight(quote)})

        stats["modelTweetCount"] = bool(intro) + bool(outro) + len(candidates)
        root.clear()
        root.update(
            {
                "introTweet": intro or INTRO_FALLBACK,
                "insightTweets": insights,
                "outroTweet": outro or fallback_outro(edition),
            }
        )
        return None

    return ObjectPolicy(root_hook=normalize_draft)


def _normalize_single(root: dict, stats: dict) -> str | None:
    tweet = normalize_tweet(root.get("tweet"))
    if not tweet:
        return "Regenerated tweet is empty."
    root.clear()
    root["tweet"] = tweet
    return None


REGENERATE_POLICY = ObjectPolicy(root_hook=_normalize_single)


class ThreadDrafter(ExtractionService):
    """
    Draft a whole thread from selected quotes.

    Example:
        drafter = ThreadDrafter(settings, topology, clients)
        draft = await drafter.draft(body.selected_quotes, body.edition_metadata, plan, request_id)
    """

    feature = "thread_draft"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    async def draft(
        self,
        quotes: list[ThreadQuote],
        edition: EditionMetadata,
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Draft the thread.

        Returns:
            introTweet, insightTweets [{quoteId, tweet}], outroTweet, meta

        Raises:
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        prompt = (
            self.user_template.replace("{quote_count}", str(len(quotes)))
            .replace("{edition_json}", json.dumps(edition_payload(edition), ensure_ascii=False))
            .replace("{quotes_json}", json.dumps([quote_payload(q) for q in quotes], ensure_ascii=False, indent=1))
        )
        policy = build_draft_policy(quotes, edition)

        def validate_draft(raw: Any) -> ValidationResult:
            return validate(raw, policy)

        result = await self._orchestrate(attempt_plan, prompt, request_id, validate_draft)
        logger.info(f"[{request_id}] thread draft: {len(quotes)} insights via {result.attempt}")
        return {**result.value, "meta": self.response_meta(result, request_id)}


class TweetRegenerator(ExtractionService):
    """Rewrite one tweet of a thread."""

    feature = "thread_regenerate"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_template = load_prompt(self.feature, "user", self.settings)

    @staticmethod
    def check_target(tweet_kind: TweetKind, target_quote: ThreadQuote | None) -> None:
        """
        Raises:
            InvalidInputError: INVALID_TARGET_QUOTE for an insight without a quote
        """
        if tweet_kind == TweetKind.INSIGHT and target_quote is None:
            raise InvalidInputError(
                "Field 'targetQuote' is required for insight tweets.", "INVALID_TARGET_QUOTE"
            )

    async def regenerate(
        self,
        tweet_kind: TweetKind,
        target_quote: ThreadQuote | None,
        current_tweet: str,
        used_tweet_texts: list[str],
        edition: EditionMetadata,
        attempt_plan: AttemptPlan,
        request_id: str,
    ) -> dict[str, Any]:
        """
        Regenerate a tweet.

        Returns:
            tweet, meta

        Raises:
            InvalidInputError: Insight requested without a target quote
            ExtractionFailed: All attempts failed or a failure was terminal
        """
        self.check_target(tweet_kind, target_quote)
        payload: dict[str, Any] = {
            "tweetKind": tweet_kind.value,
            "editionMetadata": edition_payload(edition),
            "usedTweetTexts": [text.strip() for text in used_tweet_texts if text.strip()],
        }
        if current_tweet.strip():
            payload["currentTweet"] = current_tweet.strip()
        if tweet_kind == TweetKind.INSIGHT:
            payload["targetQuote"] = quote_payload(target_quote)

        prompt = self.user_template.replace("{tweet_kind}", tweet_kind.value).replace(
            "{input_json}", json.dumps(payload, ensure_ascii=False, indent=1)
        )

        def validate_tweet(raw: Any) -> ValidationResult:
            return validate(raw, REGENERATE_POLICY)

        result = await self._orchestrate(attempt_plan, prompt, request_id, validate_tweet)
        logger.info(f"[{request_id}] thread regenerate: {tweet_kind.value} via {result.attempt}")
        return {**result.value, "meta": self.response_meta(result, request_id)}

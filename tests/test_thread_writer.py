import pytest

from conftest import StubClient

from analyst.models.schemas import EditionMetadata, ThreadQuote, TweetKind
from analyst.services.extraction.orchestrator import ExtractionFailed
from analyst.services.extraction.validator import validate
from analyst.services.extraction_service import InvalidInputError
from analyst.services.thread_shortlister import DuplicateQuoteIdError
from analyst.services.thread_writer import (
    INTRO_FALLBACK,
    REGENERATE_POLICY,
    ThreadDrafter,
    TweetRegenerator,
    build_draft_policy,
    check_unique_ids,
    fallback_outro,
    normalize_tweet,
)


def thread_quote(quote_id: str, company: str = "Acme Ltd", summary: str = "Order book at record high") -> ThreadQuote:
    return ThreadQuote(
        id=quote_id,
        company_name=company,
        market_cap_category="Mid Cap",
        industry="Capital Goods",
        summary=summary,
        quote="Our order book is the strongest it has ever been.",
        speaker_name="R. Rao",
        speaker_designation="CFO",
    )


EDITION = EditionMetadata(edition_url="https://example.com/chatter/42")


def test_normalize_tweet():
    assert normalize_tweet("Capex  up.\r\n\n\n\nMore   soon ") == "Capex up.\n\nMore soon"
    assert normalize_tweet(None) == ""
    long = normalize_tweet("x" * 400)
    assert len(long) == 260
    assert long.endswith("…")


def test_outro_fallback_mentions_edition_url():
    assert fallback_outro(EDITION).endswith("here: https://example.com/chatter/42")
    assert fallback_outro(EditionMetadata()) == "For the full breakdown, read the complete edition on The Chatter."


def test_duplicate_quote_ids_are_rejected():
    with pytest.raises(DuplicateQuoteIdError):
        check_unique_ids([thread_quote("q1"), thread_quote("q1", "Zen Ltd")])


def test_draft_policy_matches_insights_by_id_then_position():
    quotes = [thread_quote("q1"), thread_quote("q2", "Zen Ltd", "Zen  adds   capacity"), thread_quote("q3", "Kappa Ltd")]
    raw = {
        "introTweet": "",
        "insightTweets": [
            {"quoteId": "q3", "tweet": "Kappa  doubles down."},
            {"quoteId": "unknown", "tweet": "Second slot."},
            {"quoteId": "q1", "tweet": ""},
        ],
        "outroTweet": "Read it all.",
    }
    policy = build_draft_policy(quotes, EDITION)

    result = validate(raw, policy)

    assert result.ok
    assert result.value == {
        "introTweet": INTRO_FALLBACK,
        "insightTweets": [
            {"quoteId": "q1", "tweet": "Kappa doubles down."},
            {"quoteId": "q2", "tweet": "Second slot."},
            {"quoteId": "q3", "tweet": "Kappa doubles down."},
        ],
        "outroTweet": "Read it all.",
    }
    assert validate(result.value, policy).value == result.value


def test_draft_policy_rejects_reply_without_any_tweet():
    policy = build_draft_policy([thread_quote("q1")], EDITION)
    assert not validate({"introTweet": " ", "insightTweets": [], "outroTweet": ""}, policy).ok


@pytest.mark.asyncio
async def test_draft_fills_missing_insights_from_summaries(settings, topology):
    client = StubClient(
        "gemini",
        default={"introTweet": "Earnings season nuggets.", "insightTweets": [], "outroTweet": "Full edition below."},
    )
    drafter = ThreadDrafter(settings, topology, {"gemini": client})
    quotes = [thread_quote("q1"), thread_quote("q2", "Zen Ltd", "Zen adds capacity")]

    draft = await drafter.draft(quotes, EDITION, drafter.plan(None, None), "req-d")

    assert draft["insightTweets"] == [
        {"quoteId": "q1", "tweet": "Acme Ltd: Order book at record high"},
        {"quoteId": "q2", "tweet": "Zen Ltd: Zen adds capacity"},
    ]
    assert draft["meta"]["requestId"] == "req-d"
    prompt = client.calls[0][1].prompt
    assert "exactly 2 tweets" in prompt
    assert "https://example.com/chatter/42" in prompt


@pytest.mark.asyncio
async def test_regenerate_insight_needs_target_quote(settings, topology):
    client = StubClient("gemini", default={"tweet": "New take."})
    regenerator = TweetRegenerator(settings, topology, {"gemini": client})

    with pytest.raises(InvalidInputError) as info:
        await regenerator.regenerate(TweetKind.INSIGHT, None, "", [], EDITION, regenerator.plan(None, None), "req-r")
    assert info.value.reason_code == "INVALID_TARGET_QUOTE"
    assert client.calls == []


@pytest.mark.asyncio
async def test_regenerate_sends_used_tweets_and_cleans_reply(settings, topology):
    client = StubClient("gemini", default={"tweet": "  Zen   adds capacity   again. "})
    regenerator = TweetRegenerator(settings, topology, {"gemini": client})

    result = await regenerator.regenerate(
        TweetKind.INSIGHT,
        thread_quote("q2", "Zen Ltd"),
        "Old take.",
        ["Old take.", " ", "Another tweet."],
        EDITION,
        regenerator.plan(None, None),
        "req-r",
    )

    assert result["tweet"] == "Zen adds capacity again."
    prompt = client.calls[0][1].prompt
    assert '"currentTweet": "Old take."' in prompt
    assert '"Another tweet."' in prompt
    assert '"companyName": "Zen Ltd"' in prompt


@pytest.mark.asyncio
async def test_empty_regenerated_tweet_is_invalid_output(settings, topology):
    assert not validate({"tweet": "   "}, REGENERATE_POLICY).ok

    client = StubClient("gemini", default={"tweet": ""})
    regenerator = TweetRegenerator(settings, topology, {"gemini": client})

    with pytest.raises(ExtractionFailed) as info:
        await regenerator.regenerate(TweetKind.OUTRO, None, "", [], EDITION, regenerator.plan(None, None), "req-r")
    assert info.value.validation_error == "Regenerated tweet is empty."
    assert len(client.calls) == 3

from datetime import datetime

import pytest

from conftest import MissingKeyClient, StubClient, failure

from analyst.models.schemas import ModelHealthState, ShortlistQuote
from analyst.services.chatter_analyzer import ChatterAnalyzer, select_quotes
from analyst.services.extraction.error_classifier import ClassifiedError, ErrorClass
from analyst.services.extraction.input_shaper import PageChunk
from analyst.services.extraction.validator import validate
from analyst.services.model_health import ModelHealthChecker, health_state_for
from analyst.services.plotline_extractor import (
    PlotlineExtractor,
    build_plotline_policy,
    infer_period_sort_key,
)
from analyst.services.points_analyzer import PointsAnalyzer, build_points_policy
from analyst.services.thread_shortlister import DuplicateQuoteIdError, ThreadShortlister

COMPANY = {
    "companyName": "Acme Industries",
    "fiscalPeriod": "Q3 FY25",
    "nseScrip": "ACME",
    "marketCapCategory": "Mid Cap",
    "industry": "Capital Goods",
    "companyDescription": "Makes industrial pumps.",
}
TODAY = datetime(2026, 10, 19)


# =============================================================================
# Plotline
# =============================================================================


@pytest.mark.parametrize(
    "label, fiscal, expected",
    [
        ("Dec 2024", "", 202412),
        ("quarter 2024 ended Dec 2024", "", 202412),
        ("Results for year 2025 to September 2025", "", 202509),
        ("March'25", "", 202503),
        ("Q1FY25", "", 202406),
        ("Q2 FY25", "", 202409),
        ("Q3FY25", "", 202412),
        ("Q4 FY25", "", 202503),
        ("FY26", "", 202603),
        ("", "Q3 FY25", 202412),
        ("next year", "", 202610),
    ],
)
def test_period_sort_key_inference(label, fiscal, expected):
    assert infer_period_sort_key(label, fiscal, TODAY) == expected


def plotline_response(*quotes: dict) -> dict:
    return {**COMPANY, "quotes": list(quotes)}


def test_plotline_sanitizes_keywords_and_orders_quotes():
    policy = build_plotline_policy(["order book", "capex"], TODAY)
    raw = plotline_response(
        {"quote": "Capex will peak this year.", "matchedKeywords": ["CAPEX"], "periodLabel": "Q4 FY25"},
        {"quote": "Our order-book is at a record.", "matchedKeywords": ["backlog"], "periodSortKey": 202409},
        {"quote": "Dividend is unchanged.", "matchedKeywords": ["dividend"]},
        {"quote": "Capex will peak this year.", "matchedKeywords": ["capex"], "periodLabel": "Q4 FY25"},
    )

    result = validate(raw, policy)

    assert result.ok, result.error
    quotes = result.value["quotes"]
    assert [quote["quote"] for quote in quotes] == [
        "Our order-book is at a record.",
        "Capex will peak this year.",
    ]
    assert quotes[0]["matchedKeywords"] == ["order book"]
    assert quotes[0]["periodLabel"] == "Q3 FY25"
    assert quotes[1]["matchedKeywords"] == ["capex"]
    assert quotes[1]["periodSortKey"] == 202503
    assert quotes[1]["speakerName"] == "Management"
    assert result.stats["droppedQuoteCount"] == 2
    assert validate(result.value, policy).value == result.value


def test_plotline_empty_quotes_are_valid():
    result = validate(plotline_response(), build_plotline_policy(["hydrogen"], TODAY))
    assert result.ok
    assert result.value["quotes"] == []


@pytest.mark.asyncio
async def test_plotline_extractor_reports_shaping(settings, topology):
    client = StubClient("gemini", default=plotline_response())
    extractor = PlotlineExtractor(settings, topology, {"gemini": client})
    transcript = "Routine remarks about operations. " * 20_000

    result = await extractor.extract(transcript, ["hydrogen"], extractor.plan(None, None), "req-p")

    assert result["quotes"] == []
    assert result["shaping"]["mode"] == "fallback"
    assert result["shaping"]["hitCount"] == 0
    prompt = client.calls[0][1].prompt
    assert "Returning an empty array is an acceptable and correct answer." in prompt
    assert len(prompt) < settings.transcript_safe_chars + 5000


# =============================================================================
# Chatter
# =============================================================================


def quote(text: str, summary: str) -> dict:
    return {"quote": text, "summary": summary, "category": "Financial Guidance"}


def test_select_quotes_drops_near_duplicates():
    quotes = [
        quote("We expect margin expansion driven by pricing", "Margin guidance up"),
        quote("We expect margin expansion driven by pricing", "Margin guidance up"),
        quote("Capex of 500 crore for the new plant", "Capacity addition"),
    ]
    selected = select_quotes(quotes)
    assert [q["quote"] for q in selected] == [quotes[0]["quote"], quotes[2]["quote"]]


@pytest.mark.asyncio
async def test_chatter_falls_back_and_reports_meta(settings, topology):
    response = {**COMPANY, "quotes": [quote("We expect demand to stay strong.", "Demand outlook")]}
    client = StubClient(
        "gemini",
        {
            "gemini-2.5-flash": [failure(ErrorClass.OVERLOADED)],
            "gemini-3-flash-preview": [response],
        },
    )
    analyzer = ChatterAnalyzer(settings, topology, {"gemini": client})

    result = await analyzer.analyze("Transcript text.", analyzer.plan(None, None), "req-c")

    assert result["companyName"] == "Acme Industries"
    meta = result["meta"]
    assert meta["requestId"] == "req-c"
    assert meta["model"] == "gemini-3-flash-preview"
    assert meta["requestedModel"] == "gemini-2.5-flash"
    assert meta["fallbackUsed"] is True
    assert [a["state"] for a in meta["attempts"]] == ["falling_back", "succeeded"]
    assert "Transcript text." in client.calls[0][1].prompt
    assert client.calls[0][1].system_prompt


# =============================================================================
# Points
# =============================================================================


@pytest.mark.asyncio
async def test_points_returns_chunk_local_pages(settings, topology):
    response = {
        **COMPANY,
        "slides": [
            {"selectedPageNumber": 37, "context": "Capacity doubles by FY27 driven by export demand."},
            {"selectedPageNumber": 2, "context": "Segment mix shifts toward high-margin pumps."},
        ],
    }
    client = StubClient("gemini", default=response)
    analyzer = PointsAnalyzer(settings, topology, {"gemini": client})
    images = [f"data:image/jpeg;base64,PAGE{i}" for i in range(10)]

    result = await analyzer.analyze(images, PageChunk(31, 40), analyzer.plan(None, None), "req-s")

    assert sorted(slide["selectedPageNumber"] for slide in result["slides"]) == [2, 7]
    assert result["normalizedPageCount"] == 1
    request = client.calls[0][1]
    assert len(request.parts) == 10
    assert "pages 31-40" in request.prompt


@pytest.mark.parametrize("missing", ["nseScrip", "marketCapCategory", "industry", "companyDescription"])
def test_points_requires_company_identity(missing):
    raw = {**COMPANY, "slides": [{"selectedPageNumber": 2, "context": "Segment mix shifts toward pumps."}]}
    del raw[missing]

    result = validate(raw, build_points_policy(10))

    assert not result.ok
    assert missing in result.error


def test_points_market_cap_uses_bucket_labels():
    slides = [{"selectedPageNumber": 2, "context": "Segment mix shifts toward pumps."}]
    policy = build_points_policy(10)

    bucketed = validate({**COMPANY, "marketCapCategory": "mid-cap", "slides": slides}, policy)
    unknown = validate({**COMPANY, "marketCapCategory": "unlisted", "slides": slides}, policy)

    assert bucketed.ok
    assert bucketed.value["marketCapCategory"] == "Mid Cap"
    assert not unknown.ok
    assert "marketCapCategory" in unknown.error


@pytest.mark.asyncio
async def test_points_falls_back_when_company_identity_is_missing(settings, topology):
    slides = [{"selectedPageNumber": 1, "context": "Order book covers three years of revenue."}]
    incomplete = {"companyName": "Acme Industries", "fiscalPeriod": "Q3 FY25", "slides": slides}
    client = StubClient(
        "gemini",
        responses={"gemini-2.5-flash": [incomplete]},
        default={**COMPANY, "slides": slides},
    )
    analyzer = PointsAnalyzer(settings, topology, {"gemini": client})

    result = await analyzer.analyze(["data:image/jpeg;base64,AAAA"], None, analyzer.plan(None, None), "req-p")

    assert client.models_called == ["gemini-2.5-flash", "gemini-3-flash-preview"]
    assert result["marketCapCategory"] == "Mid Cap"


# =============================================================================
# Thread shortlist
# =============================================================================


def shortlist_quote(quote_id: str, company: str, text: str = "Pricing power improves margin") -> ShortlistQuote:
    return ShortlistQuote(id=quote_id, company_name=company, quote=f"{text} {quote_id}", summary="Margin view")


@pytest.mark.asyncio
async def test_shortlist_merges_model_picks_with_company_cap(settings, topology):
    quotes = [
        shortlist_quote("a1", "Acme"),
        shortlist_quote("a2", "ACME "),
        shortlist_quote("a3", "acme"),
        shortlist_quote("z1", "Zen"),
    ]
    client = StubClient("gemini", default={"shortlistedQuoteIds": ["a3", "bogus", "a2", "a1"]})
    shortlister = ThreadShortlister(settings, topology, {"gemini": client})

    result = await shortlister.shortlist(quotes, 3, 2, shortlister.plan(None, None), "req-t")

    assert result["shortlistedQuoteIds"] == ["a3", "a2", "z1"]
    assert result["modelPickCount"] == 3


@pytest.mark.asyncio
async def test_shortlist_rejects_duplicate_ids(settings, topology):
    client = StubClient("gemini", default={"shortlistedQuoteIds": []})
    shortlister = ThreadShortlister(settings, topology, {"gemini": client})
    quotes = [shortlist_quote("a1", "Acme"), shortlist_quote("a1", "Zen")]

    with pytest.raises(DuplicateQuoteIdError):
        await shortlister.shortlist(quotes, 3, 2, shortlister.plan(None, None), "req-t")
    assert client.calls == []


# =============================================================================
# Model health
# =============================================================================


@pytest.mark.parametrize(
    "error, expected",
    [
        (ClassifiedError(ErrorClass.UNKNOWN, "API key not valid. Please pass a valid API key.", http_status=400), ModelHealthState.INVALID_KEY),
        (ClassifiedError(ErrorClass.UNKNOWN, "Forbidden", http_status=403), ModelHealthState.INVALID_KEY),
        (ClassifiedError(ErrorClass.RATE_LIMITED, "quota", http_status=429), ModelHealthState.RATE_LIMITED),
        (ClassifiedError(ErrorClass.OVERLOADED, "overloaded", http_status=503), ModelHealthState.OVERLOADED),
        (ClassifiedError(ErrorClass.TIMEOUT, "timed out"), ModelHealthState.TIMEOUT),
        (ClassifiedError(ErrorClass.LOCATION_BLOCKED, "location is not supported"), ModelHealthState.LOCATION_UNSUPPORTED),
        (ClassifiedError(ErrorClass.TRANSIENT_UPSTREAM, "bad gateway", http_status=502), ModelHealthState.UPSTREAM_ERROR),
    ],
)
def test_health_state_mapping(error, expected):
    assert health_state_for(error) == expected


@pytest.mark.asyncio
async def test_health_checks_every_model_once(settings, topology):
    gemini = StubClient(
        "gemini",
        {"gemini-3-pro-preview": [failure(ErrorClass.OVERLOADED, "overloaded", http_status=503)]},
        default={"status": "ok"},
    )
    openrouter = MissingKeyClient("openrouter")
    checker = ModelHealthChecker(settings, topology, {"gemini": gemini, "openrouter": openrouter})

    report = await checker.check_all("req-h")

    states = {(m.provider, m.model): m.state for m in report.models}
    assert len(states) == len(topology.all_models())
    assert states[("gemini", "gemini-2.5-flash")] == ModelHealthState.OK
    assert states[("gemini", "gemini-3-pro-preview")] == ModelHealthState.OVERLOADED
    assert states[("openrouter", "minimax/minimax-01")] == ModelHealthState.MISSING_KEY
    assert report.ok is False
    assert all(options == {"max_attempts": 1, "timeout": settings.health_timeout_sec} for options in gemini.call_options)

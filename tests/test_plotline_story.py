import pytest

from conftest import MissingKeyClient, StubClient

from analyst.models.schemas import CompanyEvidence
from analyst.services.extraction.validator import validate
from analyst.services.extraction_service import InvalidInputError
from analyst.services.plotline_companies import STORY_RULES, SUMMARY_RULES, normalize_companies
from analyst.services.plotline_summarizer import FALLBACK_NARRATIVE, PlotlineSummarizer
from analyst.services.plotline_writer import (
    DEFAULT_ANGLE,
    PlotlineWriter,
    build_deterministic_story,
    build_fallback_plan,
    build_story_policy,
    sanitize_plan,
)

KEYWORDS = ["capex", "order book"]


def evidence_quote(quote_id: str, period: int, text: str = "Capex stays elevated.", label: str = "") -> dict:
    return {
        "quoteId": quote_id,
        "quote": text,
        "matchedKeywords": ["Capex"],
        "periodLabel": label or f"P{period}",
        "periodSortKey": period,
    }


def company(key: str, *quotes: dict, **overrides) -> CompanyEvidence:
    data = {
        "companyKey": key,
        "companyName": f"{key.title()} Ltd",
        "nseScrip": f"{key} ltd",
        "marketCapCategory": "Mid Cap",
        "industry": "Capital Goods",
        "companyDescription": "Makes pumps.",
        "quotes": list(quotes),
        **overrides,
    }
    return CompanyEvidence.model_validate(data)


@pytest.fixture
def evidence():
    return [
        company("acme", evidence_quote("a1", 202406), evidence_quote("a2", 202412), evidence_quote("a3", 202503)),
        company("zen", evidence_quote("z1", 202412)),
    ]


# =============================================================================
# Company evidence
# =============================================================================


def test_companies_drop_incomplete_entries_and_clean_quotes():
    companies = [
        company("acme", evidence_quote("a1", 202412, "  Capex   up. "), evidence_quote("a1", 202406)),
        company("nokey", evidence_quote("n1", 202412), industry=" "),
        company("offtopic", {**evidence_quote("o1", 202412), "matchedKeywords": ["pricing"]}),
        company("acme", evidence_quote("a9", 202412)),
        company("noid", {**evidence_quote("", 202412), "quoteId": ""}),
        company("oddkey", {**evidence_quote("k1", 300001), "speakerName": ""}),
    ]

    result = normalize_companies(companies, KEYWORDS, STORY_RULES)

    assert [c.company_key for c in result] == ["acme", "oddkey"]
    acme = result[0]
    assert acme.nse_scrip == "ACMELTD"
    assert [(q.quote_id, q.quote) for q in acme.quotes] == [("a1", "Capex up.")]
    assert acme.quotes[0].matched_keywords == ("capex",)
    odd = result[1].quotes[0]
    assert odd.period_sort_key == 200001
    assert odd.speaker_name == "Management"


def test_summary_rules_keep_quotes_without_ids():
    companies = [company("acme", {**evidence_quote("", 202412), "quoteId": ""})]
    assert len(normalize_companies(companies, KEYWORDS, SUMMARY_RULES)[0].quotes) == 1


def test_companies_without_usable_quotes_are_rejected():
    companies = [company("acme", {**evidence_quote("a1", 202412), "matchedKeywords": []})]
    with pytest.raises(InvalidInputError) as info:
        normalize_companies(companies, KEYWORDS, STORY_RULES)
    assert info.value.reason_code == "MISSING_COMPANIES"


def test_total_quote_ceiling():
    companies = [
        company(f"c{n}", *(evidence_quote(f"c{n}-{i}", 202412, f"Capex {i}") for i in range(16)))
        for n in range(21)
    ]
    with pytest.raises(InvalidInputError) as info:
        normalize_companies(companies, KEYWORDS, STORY_RULES)
    assert info.value.reason_code == "TOO_MANY_QUOTES"


# =============================================================================
# Summary
# =============================================================================


@pytest.mark.asyncio
async def test_summary_fills_skipped_companies(settings, topology, evidence):
    client = StubClient(
        "gemini",
        default={
            "companyNarratives": [
                {"companyKey": "acme", "narrative": "  Capex   is rising. "},
                {"companyKey": "ghost", "narrative": "Unknown company."},
            ],
            "masterThemeBullets": ["Capex is back.", "capex is back.", " "],
        },
    )
    summarizer = PlotlineSummarizer(settings, topology, {"gemini": client})
    companies = summarizer.prepare(evidence, KEYWORDS)

    result = await summarizer.summarize(companies, KEYWORDS, summarizer.plan(None, None), "req-s")

    assert result["companyNarratives"] == [
        {"companyKey": "acme", "narrative": "Capex is rising."},
        {"companyKey": "zen", "narrative": FALLBACK_NARRATIVE},
    ]
    assert result["masterThemeBullets"] == ["Capex is back."]
    assert result["meta"]["fallbackUsed"] is False


@pytest.mark.asyncio
async def test_summary_without_any_usable_text_moves_to_next_model(settings, topology, evidence):
    client = StubClient(
        "gemini",
        {"gemini-2.5-flash": [{"companyNarratives": [], "masterThemeBullets": []}]},
        default={"companyNarratives": [], "masterThemeBullets": ["Capex cycle broadens."]},
    )
    summarizer = PlotlineSummarizer(settings, topology, {"gemini": client})
    companies = summarizer.prepare(evidence, KEYWORDS)

    result = await summarizer.summarize(companies, KEYWORDS, summarizer.plan(None, None), "req-s")

    assert client.models_called == ["gemini-2.5-flash", "gemini-3-flash-preview"]
    assert {n["narrative"] for n in result["companyNarratives"]} == {FALLBACK_NARRATIVE}
    assert result["meta"]["fallbackUsed"] is True


# =============================================================================
# Story plan
# =============================================================================


def test_fallback_plan_prefers_rich_recent_evidence(evidence):
    companies = normalize_companies(evidence, KEYWORDS, STORY_RULES)

    plan = build_fallback_plan(KEYWORDS, companies)

    assert plan["title"] == "Plotline: capex, order book"
    acme, zen = plan["sectionPlans"]
    assert acme["companyKey"] == "acme"
    assert acme["chronologyMode"] == "timeline"
    assert acme["quoteIds"] == ["a3", "a2", "a1"]
    assert acme["subhead"] == "Acme Ltd: management signal gets clearer"
    assert zen["chronologyMode"] == "same_period"
    assert plan["skippedCompanyKeys"] == []


def test_caller_plan_is_restricted_to_known_evidence(evidence):
    companies = normalize_companies(evidence, KEYWORDS, STORY_RULES)
    fallback = build_fallback_plan(KEYWORDS, companies)
    raw = {
        "title": "  Capex returns ",
        "sectionPlans": [
            {"companyKey": "acme", "quoteIds": ["a2", "bogus"], "chronologyMode": "TIMELINE"},
            {"companyKey": "acme", "quoteIds": ["a1"]},
            {"companyKey": "ghost", "quoteIds": ["g1"]},
        ],
        "skippedCompanyKeys": ["ghost"],
    }

    plan = sanitize_plan(raw, fallback, companies)

    assert plan["title"] == "Capex returns"
    assert plan["dek"] == fallback["dek"]
    assert len(plan["sectionPlans"]) == 1
    section = plan["sectionPlans"][0]
    assert section["quoteIds"] == ["a2"]
    assert section["chronologyMode"] == "timeline"
    assert section["narrativeAngle"] == DEFAULT_ANGLE
    assert plan["skippedCompanyKeys"] == ["zen"]


def test_plan_without_usable_sections_uses_fallback(evidence):
    companies = normalize_companies(evidence, KEYWORDS, STORY_RULES)
    fallback = build_fallback_plan(KEYWORDS, companies)
    assert sanitize_plan({"sectionPlans": [{"companyKey": "ghost"}]}, fallback, companies) is fallback
    assert sanitize_plan("not a plan", fallback, companies) is fallback


def test_deterministic_story_cites_planned_quotes(evidence):
    companies = normalize_companies(evidence, KEYWORDS, STORY_RULES)
    plan = build_fallback_plan(KEYWORDS, companies)

    story = build_deterministic_story(KEYWORDS, companies, plan)

    acme = story["sections"][0]
    assert [block["quoteId"] for block in acme["quoteBlocks"]] == ["a3", "a2", "a1"]
    assert acme["narrativeParagraphs"][0] == (
        "Acme Ltd management frames capex and order book as a strategic issue "
        "rather than a one-quarter talking point."
    )
    assert acme["narrativeParagraphs"][1].startswith("The progression from P202503 to P202406")
    assert story["sections"][1]["narrativeParagraphs"][1].startswith("In the current period")
    assert len(story["closingWatchlist"]) == 3
    assert "capex" in story["closingWatchlist"][0]


# =============================================================================
# Story writer
# =============================================================================


def test_story_policy_keeps_planned_sections_only(evidence):
    companies = normalize_companies(evidence, KEYWORDS, STORY_RULES)
    plan = build_fallback_plan(KEYWORDS, companies)
    policy = build_story_policy(KEYWORDS, companies, plan)
    raw = {
        "title": "Capex is back",
        "dek": "",
        "sections": [
            {"companyKey": "acme", "subhead": "Acme digs in", "narrativeParagraphs": ["One.", " ", "Two."], "quoteIds": ["a1", "nope"]},
            {"companyKey": "zen", "narrativeParagraphs": []},
            {"companyKey": "ghost", "narrativeParagraphs": ["Made up."]},
        ],
        "closingWatchlist": ["Watch capex."],
    }

    result = validate(raw, policy)

    assert result.ok
    story = result.value
    assert story["dek"] == plan["dek"]
    assert [s["companyKey"] for s in story["sections"]] == ["acme"]
    assert story["sections"][0]["narrativeParagraphs"] == ["One.", "Two."]
    assert [b["quoteId"] for b in story["sections"][0]["quoteBlocks"]] == ["a1"]
    assert len(story["closingWatchlist"]) == 3
    assert validate(story, policy).value == story


def test_story_policy_rejects_reply_without_sections(evidence):
    companies = normalize_companies(evidence, KEYWORDS, STORY_RULES)
    policy = build_story_policy(KEYWORDS, companies, build_fallback_plan(KEYWORDS, companies))
    assert not validate({"title": "T", "sections": []}, policy).ok


@pytest.mark.asyncio
async def test_writer_returns_model_story(settings, topology, evidence):
    client = StubClient(
        "gemini",
        default={
            "title": "Capex is back",
            "dek": "Managements commit.",
            "sections": [{"companyKey": "zen", "subhead": "Zen", "narrativeParagraphs": ["Zen adds capacity."], "quoteIds": []}],
            "closingWatchlist": ["One.", "Two.", "Three.", "Four."],
        },
    )
    writer = PlotlineWriter(settings, topology, {"gemini": client})
    companies = writer.prepare(evidence, KEYWORDS)

    story = await writer.write(companies, KEYWORDS, None, writer.plan(None, None), "req-w")

    assert story["storySource"] == "model"
    assert story["sections"][0]["quoteBlocks"][0]["quoteId"] == "z1"
    assert story["closingWatchlist"] == ["One.", "Two.", "Three.", "Four."]
    assert "Story plan (JSON)" in client.calls[0][1].prompt


@pytest.mark.asyncio
async def test_writer_falls_back_to_deterministic_story_when_every_model_fails(settings, topology, evidence):
    client = StubClient("gemini", default={"sections": []})
    writer = PlotlineWriter(settings, topology, {"gemini": client})
    companies = writer.prepare(evidence, KEYWORDS)

    story = await writer.write(companies, KEYWORDS, None, writer.plan(None, None), "req-w")

    assert story["storySource"] == "fallback"
    assert client.models_called == ["gemini-2.5-flash", "gemini-3-flash-preview", "gemini-3-pro-preview"]
    assert len(story["meta"]["attempts"]) == 3
    assert story["meta"]["model"] is None
    assert [s["companyKey"] for s in story["sections"]] == ["acme", "zen"]


@pytest.mark.asyncio
async def test_writer_without_key_returns_deterministic_story(settings, topology, evidence):
    writer = PlotlineWriter(settings, topology, {"gemini": MissingKeyClient("gemini")})
    companies = writer.prepare(evidence, KEYWORDS)

    story = await writer.write(companies, KEYWORDS, None, writer.plan(None, None), "req-w")

    assert story["storySource"] == "fallback"
    assert story["meta"]["attempts"] == []

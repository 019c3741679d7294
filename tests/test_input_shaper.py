import pytest

from analyst.services.extraction.input_shaper import (
    EMPTY_RESULT_NOTE,
    ChunkRangeError,
    PageChunk,
    PageResolution,
    build_windows,
    describe_chunk,
    find_keyword_hits,
    resolve_page,
    sample_evenly,
    shape_transcript,
)

SHAPING = dict(safe_chars=180_000, radius=1400, max_windows=60, header_chars=6000, fallback_chars=60_000)


def filler(length: int) -> str:
    base = "Management discussed routine operating matters during the call. "
    return (base * (length // len(base) + 1))[:length]


def test_hits_tolerate_separators():
    text = "Our Order-Book grew; the order/book and orderbook and ORDER BOOK too."
    hits = find_keyword_hits(text, ["order book"])
    assert [text[start:end].lower() for start, end in hits] == [
        "order-book",
        "order/book",
        "orderbook",
        "order book",
    ]


def test_overlapping_keywords_report_both():
    hits = find_keyword_hits("capex plan", ["capex", "capex plan"])
    assert (0, 5) in hits and (0, 10) in hits


def test_windows_merge_when_touching():
    assert build_windows([(100, 110), (120, 130)], 1000, 20) == [(80, 150)]
    assert build_windows([(100, 110), (300, 310)], 1000, 20) == [(80, 130), (280, 330)]
    assert build_windows([(5, 10)], 12, 20) == [(0, 12)]


def test_sample_evenly_keeps_ends():
    assert sample_evenly(list(range(10)), 4) == [0, 3, 6, 9]
    assert sample_evenly([1, 2], 5) == [1, 2]


def test_short_transcript_is_verbatim():
    text = "We expect margin expansion next year."
    shaped = shape_transcript(text, ["margin"], **SHAPING)
    assert shaped.mode == "verbatim"
    assert shaped.body == text
    assert shaped.hit_count == 1
    assert shaped.note == ""


def test_windows_cover_every_hit():
    text = filler(500_000)
    positions = [50_000, 51_000, 200_000, 420_000]
    for position in positions:
        text = text[:position] + "Order-Book" + text[position + 10 :]

    shaped = shape_transcript(text, ["order book"], **SHAPING)

    assert shaped.mode == "windowed"
    assert not shaped.truncated
    assert len(shaped.body) <= SHAPING["safe_chars"]
    assert shaped.body.startswith("[Header excerpt]")
    assert shaped.hit_count == len(positions)
    # 50k and 51k merge into one window
    assert shaped.window_count == 3
    for position in positions:
        assert any(start <= position and position + 10 <= end for start, end in shaped.windows)
    assert shaped.body.count("Order-Book") == len(positions)


def test_window_budget_is_never_exceeded():
    text = filler(500_000)
    for position in range(10_000, 490_000, 5_000):
        text = text[:position] + "capex" + text[position + 5 :]

    shaped = shape_transcript(text, ["capex"], **{**SHAPING, "safe_chars": 20_000})

    assert len(shaped.body) <= 20_000
    assert shaped.truncated
    assert shaped.window_count <= SHAPING["max_windows"]


def test_zero_hits_fall_back_to_leading_excerpt():
    text = filler(500_000)
    shaped = shape_transcript(text, ["hydrogen"], **SHAPING)

    assert shaped.mode == "fallback"
    assert shaped.empty_result_ok
    assert shaped.note == EMPTY_RESULT_NOTE
    assert shaped.hit_count == 0
    assert len(shaped.body) <= SHAPING["fallback_chars"]
    assert "[Leading excerpt]" in shaped.body


def test_absolute_page_is_remapped_into_chunk():
    assert resolve_page(37, 10, PageChunk(31, 40)) == PageResolution(7, remapped=True)


def test_local_page_wins_over_absolute():
    assert resolve_page(7, 10, PageChunk(31, 40)) == PageResolution(7)


def test_page_outside_chunk_is_rejected():
    assert resolve_page(41, 10, PageChunk(31, 40)) is None
    assert resolve_page(0, 10, None) is None
    assert resolve_page(11, 10, None) is None


def test_chunk_from_request():
    assert PageChunk.from_request(None, None, 10) is None
    assert PageChunk.from_request(31, 40, 10) == PageChunk(31, 40)


@pytest.mark.parametrize("start, end", [(31, None), (None, 40), (40, 31), (31, 45)])
def test_chunk_range_errors(start, end):
    with pytest.raises(ChunkRangeError):
        PageChunk.from_request(start, end, 10)


def test_describe_chunk_mentions_local_numbering():
    note = describe_chunk(PageChunk(31, 40), 10)
    assert "pages 31-40" in note
    assert "between 1 and 10" in note

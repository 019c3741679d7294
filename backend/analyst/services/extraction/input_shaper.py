"""
Input shaping for oversized documents.

Two independent algorithms:

- Keyword-windowed excerpting: a transcript far larger than a safe prompt is
  reduced to a header excerpt plus merged character windows around every
  keyword hit. With no hits, a leading excerpt is sent instead and the model is
  told that an empty result is a correct answer.
- Chunk-local page mapping: decks are analyzed in windows of pages. The model
  is asked for chunk-local page numbers (1..N), and absolute page numbers it
  echoes anyway are remapped instead of rejected.

Both are synchronous and CPU-bound; callers enforce input size ceilings first.
"""

import logging
import re
from dataclasses import dataclass
from typing import Literal, Sequence, TypeVar

from analyst.utils.text_utils import tokenize

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Separator tolerated between tokens of a multi-word keyword
TOKEN_GAP = r"[\s\-/]*"

EMPTY_RESULT_NOTE = (
    "None of the requested keywords occur in this document. "
    "Returning an empty array is an acceptable and correct answer."
)

ShapingMode = Literal["verbatim", "windowed", "fallback"]


# =============================================================================
# Keyword windowing
# =============================================================================


@dataclass(frozen=True)
class ShapedTranscript:
    """
    Provider-ready transcript body.

    Attributes:
        body: Text placed into the prompt
        mode: "verbatim", "windowed" or "fallback" (zero hits)
        hit_count: Keyword occurrences found
        window_count: Windows emitted
        windows: Emitted (start, end) character ranges of the source text
        truncated: Body hit the character budget before all windows fit
        note: Extra instruction for the model, empty when not needed
    """

    body: str
    mode: ShapingMode
    hit_count: int = 0
    window_count: int = 0
    windows: tuple[tuple[int, int], ...] = ()
    truncated: bool = False
    note: str = ""

    @property
    def empty_result_ok(self) -> bool:
        return self.mode == "fallback"


def build_keyword_pattern(keyword: str) -> re.Pattern | None:
    """
    Compile a case-insensitive matcher for one keyword.

    Matches the literal keyword, or its alphanumeric tokens separated by any
    run of spaces, hyphens or slashes ("order book" matches "Order-Book",
    "order/book" and "orderbook"). A lookahead wrapper lets finditer report
    overlapping occurrences.

    Args:
        keyword: Keyword as typed by the user

    Returns:
        Compiled pattern (group 1 is the hit), or None for blank keywords
    """
    keyword = (keyword or "").strip()
    if not keyword:
        return None

    alternatives = [re.escape(keyword)]
    tokens = tokenize(keyword)
    if tokens:
        alternatives.append(TOKEN_GAP.join(re.escape(token) for token in tokens))

    body = "|".join(f"(?:{alt})" for alt in alternatives)
    return re.compile(f"(?=({body}))", re.IGNORECASE)


def find_keyword_hits(text: str, keywords: Sequence[str]) -> list[tuple[int, int]]:
    """
    Find every keyword occurrence.

    Returns:
        Sorted, de-duplicated (start, end) spans
    """
    spans: set[tuple[int, int]] = set()
    for keyword in keywords:
        pattern = build_keyword_pattern(keyword)
        if pattern is None:
            continue
        for match in pattern.finditer(text):
            start, end = match.span(1)
            if end > start:
                spans.add((start, end))
    return sorted(spans)


def build_windows(
    hits: Sequence[tuple[int, int]],
    text_length: int,
    radius: int,
) -> list[tuple[int, int]]:
    """
    Build merged fixed-radius windows around hits.

    Each hit yields [start - radius, end + radius) clamped to the text.
    Overlapping or touching windows are merged.

    Args:
        hits: Sorted (start, end) spans
        text_length: Length of the source text
        radius: Characters of context on each side of a hit

    Returns:
        Sorted, non-overlapping windows
    """
    merged: list[tuple[int, int]] = []
    for start, end in sorted(hits):
        window_start = max(0, start - radius)
        window_end = min(text_length, end + radius)
        if merged and window_start <= merged[-1][1]:
            prev_start, prev_end = merged[-1]
            merged[-1] = (prev_start, max(prev_end, window_end))
        else:
            merged.append((window_start, window_end))
    return merged


def sample_evenly(items: Sequence[T], limit: int) -> list[T]:
    """
    Pick `limit` items at evenly spaced indices, keeping first and last.

    Example:
        >>> sample_evenly(list(range(10)), 4)
        [0, 3, 6, 9]
    """
    count = len(items)
    if limit <= 0:
        return []
    if count <= limit:
        return list(items)
    if limit == 1:
        return [items[0]]

    step = (count - 1) / (limit - 1)
    indices = sorted({round(i * step) for i in range(limit)})
    return [items[i] for i in indices]


def shape_transcript(
    text: str,
    keywords: Sequence[str],
    safe_chars: int,
    radius: int,
    max_windows: int,
    header_chars: int,
    fallback_chars: int,
) -> ShapedTranscript:
    """
    Reduce a transcript to a bounded, keyword-anchored prompt body.

    Args:
        text: Full transcript
        keywords: Target keywords
        safe_chars: Maximum body length sent to a model
        radius: Window radius around each hit
        max_windows: Window ceiling, excess windows are sampled evenly
        header_chars: Leading characters kept for company identity
        fallback_chars: Leading characters sent when no keyword occurs

    Returns:
        ShapedTranscript whose body never exceeds safe_chars
    """
    if len(text) <= safe_chars:
        hits = find_keyword_hits(text, keywords)
        return ShapedTranscript(body=text, mode="verbatim", hit_count=len(hits))

    hits = find_keyword_hits(text, keywords)
    header = text[: min(header_chars, safe_chars // 4)].rstrip()
    header_block = f"[Header excerpt]\n{header}"

    if not hits:
        lead_budget = max(0, min(fallback_chars, safe_chars) - len(header_block) - 64)
        lead_start = len(header)
        lead = text[lead_start : lead_start + lead_budget].strip()
        body = f"{header_block}\n\n[Leading excerpt]\n{lead}"[:safe_chars]
        logger.info(
            f"Keyword shaping: 0 hits in {len(text)} chars, "
            f"sending leading excerpt ({len(body)} chars)"
        )
        return ShapedTranscript(body=body, mode="fallback", note=EMPTY_RESULT_NOTE)

    windows = build_windows(hits, len(text), radius)
    if len(windows) > max_windows:
        logger.debug(f"Keyword shaping: sampling {max_windows} of {len(windows)} windows")
        windows = sample_evenly(windows, max_windows)

    parts = [header_block]
    used = len(header_block)
    emitted: list[tuple[int, int]] = []
    truncated = False

    for index, (start, end) in enumerate(windows, start=1):
        label = f"\n\n[Excerpt {index}: chars {start}-{end}]\n"
        remaining = safe_chars - used - len(label)
        if remaining <= 0:
            truncated = True
            break
        if end - start > remaining:
            end = start + remaining
            truncated = True
        parts.append(label + text[start:end])
        used += len(label) + (end - start)
        emitted.append((start, end))
        if truncated:
            break

    body = "".join(parts)
    logger.info(
        f"Keyword shaping: {len(hits)} hits, {len(emitted)} windows, "
        f"{len(text)} -> {len(body)} chars{' (truncated)' if truncated else ''}"
    )
    return ShapedTranscript(
        body=body,
        mode="windowed",
        hit_count=len(hits),
        window_count=len(emitted),
        windows=tuple(emitted),
        truncated=truncated,
    )


# =============================================================================
# Chunk-local page mapping
# =============================================================================


class ChunkRangeError(ValueError):
    """Chunk range does not describe the pages that were sent."""


@dataclass(frozen=True)
class PageChunk:
    """Absolute page range (inclusive) covered by one request."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @classmethod
    def from_request(
        cls,
        start: int | None,
        end: int | None,
        page_count: int,
    ) -> "PageChunk | None":
        """
        Build a chunk from optional request fields.

        Args:
            start: First absolute page, or None
            end: Last absolute page, or None
            page_count: Number of page images in the request

        Returns:
            PageChunk, or None when no range was given

        Raises:
            ChunkRangeError: Partial, inverted or mismatched range
        """
        if start is None and end is None:
            return None
        if start is None or end is None:
            raise ChunkRangeError("Both chunkStartPage and chunkEndPage are required together.")
        if start < 1 or end < start:
            raise ChunkRangeError(f"Invalid chunk range {start}-{end}.")
        chunk = cls(start, end)
        if chunk.length != page_count:
            raise ChunkRangeError(
                f"Chunk range {start}-{end} covers {chunk.length} pages "
                f"but {page_count} page images were sent."
            )
        return chunk


@dataclass(frozen=True)
class PageResolution:
    """Resolved chunk-local page and whether it was remapped from absolute."""

    local_page: int
    remapped: bool = False


def describe_chunk(chunk: PageChunk | None, page_count: int) -> str:
    """Prompt note describing page numbering for this request."""
    if chunk is None:
        return (
            f"The deck has {page_count} pages. "
            f"Use page numbers 1 to {page_count} exactly as provided."
        )
    return (
        f"These {page_count} images are pages {chunk.start}-{chunk.end} of a larger deck. "
        f"Number pages locally: image 1 is page 1, image {page_count} is page {page_count}. "
        f"Every selectedPageNumber must be between 1 and {page_count}."
    )


def resolve_page(
    value: int,
    page_count: int,
    chunk: PageChunk | None,
) -> PageResolution | None:
    """
    Resolve a model-reported page to a chunk-local page.

    A valid local page (1..page_count) wins. Otherwise an absolute page
    chunk.start + k (0 <= k < chunk length) maps to local page k + 1.

    Example:
        >>> resolve_page(37, 10, PageChunk(31, 40))
        PageResolution(local_page=7, remapped=True)

    Returns:
        PageResolution, or None when the page cannot be placed
    """
    if 1 <= value <= page_count:
        return PageResolution(value)
    if chunk is not None:
        offset = value - chunk.start
        if 0 <= offset < min(chunk.length, page_count):
            return PageResolution(offset + 1, remapped=True)
    return None

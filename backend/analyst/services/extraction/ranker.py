"""
Candidate ranking and near-duplicate removal.

Used when a model returns more usable items than wanted (quotes, slides) or
when a candidate pool must be shortlisted. Scoring is a weighted sum over
domain vocabulary; similarity is token-set Jaccard.

Example:
    selected = select(candidates, max_count=3, similarity_threshold=0.6)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from analyst.utils.text_utils import normalize_token, tokenize

logger = logging.getLogger(__name__)

SIGNAL_TERMS = (
    "guidance", "pricing", "margin", "mix", "demand", "capacity", "allocation",
    "capex", "risk", "competition", "share", "strategy", "inflection", "structural",
    "regulatory", "pipeline", "utilization", "credit", "order book", "moat",
    "transformation", "turnaround", "pivot", "runway", "acquisition", "divestment",
)

NOISE_TERMS = (
    "qoq", "yoy", "quarter", "last quarter", "sequential", "reported", "year-on-year",
)

INFERENTIAL_TERMS = (
    "because", "driven by", "due to", "as a result", "which means", "implies",
    "therefore", "leading to", "so that", "resulting in",
)


@dataclass(frozen=True)
class ScoringProfile:
    """
    Domain-tunable quality function weights.

    Attributes:
        signal_terms: Terms that indicate guidance/strategy/structural change
        noise_terms: Routine period-over-period phrasing
        inferential_terms: Causal/inferential connectives
        signal_weight: Points per distinct signal term
        noise_weight: Points lost per distinct noise term
        inferential_weight: Bonus when any inferential term occurs
        quality_band: (min, max) primary-text length earning quality_bonus
        quality_bonus: Bonus for text inside quality_band
        long_chars: Secondary text longer than this is penalized
        long_penalty: Penalty for over-long text
        short_chars: Primary text shorter than this is penalized
        short_penalty: Penalty for under-substantive text
    """

    signal_terms: tuple[str, ...] = SIGNAL_TERMS
    noise_terms: tuple[str, ...] = NOISE_TERMS
    inferential_terms: tuple[str, ...] = INFERENTIAL_TERMS
    signal_weight: float = 3.0
    noise_weight: float = 1.0
    inferential_weight: float = 1.5
    quality_band: tuple[int, int] = (90, 420)
    quality_bonus: float = 2.0
    long_chars: int = 420
    long_penalty: float = 2.0
    short_chars: int = 40
    short_penalty: float = 2.0


DEFAULT_PROFILE = ScoringProfile()


@dataclass
class Candidate:
    """
    One unit of extracted content.

    Attributes:
        id: Stable identifier (exact repeats are never selected twice)
        text: Primary text (quote, slide context)
        natural_key: Presentation order key (page number, original index)
        secondary_text: Supporting text (summary) scored with the primary text
        group: Grouping key for per-group caps (company)
        payload: Original item carried through unchanged
    """

    id: str
    text: str
    natural_key: Any = 0
    secondary_text: str = ""
    group: str | None = None
    payload: Any = None
    tokens: frozenset[str] = field(init=False, repr=False)

    def __post_init__(self):
        self.tokens = token_set(f"{self.text} {self.secondary_text}")


def token_set(text: str) -> frozenset[str]:
    """Similarity fingerprint: lowercase alphanumeric tokens."""
    return frozenset(tokenize(text))


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """Token-set Jaccard similarity (two empty sets count as identical)."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def _count_terms(normalized: str, terms: Iterable[str]) -> int:
    padded = f" {normalized} "
    return sum(1 for term in terms if f" {normalize_token(term)} " in padded)


def score(candidate: Candidate, profile: ScoringProfile = DEFAULT_PROFILE) -> float:
    """
    Weighted quality score.

    signal * signal_weight - noise * noise_weight
    + quality_bonus (primary text length inside quality_band)
    + inferential_weight (any causal connective)
    - long_penalty (secondary text over long_chars)
    - short_penalty (primary text under short_chars)
    """
    combined = normalize_token(f"{candidate.text} {candidate.secondary_text}")
    value = _count_terms(combined, profile.signal_terms) * profile.signal_weight
    value -= _count_terms(combined, profile.noise_terms) * profile.noise_weight

    if _count_terms(combined, profile.inferential_terms):
        value += profile.inferential_weight

    length = len(candidate.text)
    low, high = profile.quality_band
    if low <= length <= high:
        value += profile.quality_bonus
    if length < profile.short_chars:
        value -= profile.short_penalty
    if len(candidate.secondary_text) > profile.long_chars:
        value -= profile.long_penalty
    return value


def rank(
    candidates: Sequence[Candidate],
    profile: ScoringProfile = DEFAULT_PROFILE,
) -> list[Candidate]:
    """Sort by score descending, natural key then id ascending on ties."""
    scored = [(score(candidate, profile), candidate) for candidate in candidates]
    scored.sort(key=lambda pair: (-pair[0], pair[1].natural_key, pair[1].id))
    return [candidate for _, candidate in scored]


def select(
    candidates: Sequence[Candidate],
    max_count: int,
    similarity_threshold: float,
    profile: ScoringProfile = DEFAULT_PROFILE,
    relaxed_fill: bool = True,
    max_per_group: int | None = None,
) -> list[Candidate]:
    """
    Pick up to max_count high-quality, mutually distinct candidates.

    Greedy pass: walk candidates by score and accept one unless its Jaccard
    similarity to an accepted candidate is >= similarity_threshold.
    Relaxed pass (when relaxed_fill and still short): fill from the same
    order, skipping only ids already accepted. Group caps apply to both.

    Args:
        candidates: Candidate pool
        max_count: Target count
        similarity_threshold: Duplicate threshold in [0, 1]
        profile: Scoring weights
        relaxed_fill: Pad an under-filled result with near-duplicates
        max_per_group: Per-group cap (None = no cap)

    Returns:
        Selected candidates in natural-key order
    """
    if max_count <= 0:
        return []

    ordered = rank(candidates, profile)
    accepted: list[Candidate] = []
    accepted_ids: set[str] = set()
    per_group: dict[str, int] = {}

    def group_full(candidate: Candidate) -> bool:
        if max_per_group is None or candidate.group is None:
            return False
        return per_group.get(candidate.group, 0) >= max_per_group

    def accept(candidate: Candidate) -> None:
        accepted.append(candidate)
        accepted_ids.add(candidate.id)
        if candidate.group is not None:
            per_group[candidate.group] = per_group.get(candidate.group, 0) + 1

    for candidate in ordered:
        if len(accepted) >= max_count:
            break
        if candidate.id in accepted_ids or group_full(candidate):
            continue
        if any(jaccard(candidate.tokens, kept.tokens) >= similarity_threshold for kept in accepted):
            continue
        accept(candidate)

    if relaxed_fill and len(accepted) < max_count:
        greedy_count = len(accepted)
        for candidate in ordered:
            if len(accepted) >= max_count:
                break
            if candidate.id in accepted_ids or group_full(candidate):
                continue
            accept(candidate)
        if len(accepted) > greedy_count:
            logger.debug(f"Relaxed fill added {len(accepted) - greedy_count} near-duplicate(s)")

    return sorted(accepted, key=lambda candidate: (candidate.natural_key, candidate.id))


def merge_preferred(
    preferred_ids: Sequence[str],
    ranked: Sequence[Candidate],
    limit: int,
    max_per_group: int | None = None,
) -> list[Candidate]:
    """
    Merge model-preferred ids ahead of a local ranking.

    Unknown and repeated ids are ignored. Order is preserved: preferred
    first, then the local ranking fills the remaining slots.
    """
    by_id = {candidate.id: candidate for candidate in ranked}
    merged: list[Candidate] = []
    seen: set[str] = set()
    per_group: dict[str, int] = {}

    def try_add(candidate: Candidate) -> None:
        if candidate.id in seen or len(merged) >= limit:
            return
        if max_per_group is not None and candidate.group is not None:
            if per_group.get(candidate.group, 0) >= max_per_group:
                return
            per_group[candidate.group] = per_group.get(candidate.group, 0) + 1
        seen.add(candidate.id)
        merged.append(candidate)

    for candidate_id in preferred_ids:
        candidate = by_id.get(str(candidate_id).strip())
        if candidate is not None:
            try_add(candidate)
    for candidate in ranked:
        try_add(candidate)
    return merged

"""
Tessera confidence model -- recency decay and note confidence scoring.

Durable knowledge (decisions, hubs) never decays; ephemeral knowledge
(handoffs, progress notes) loses half its recency weight every 30 days.
Every function here is pure and total: unknown content types fall back to
defaults, and results are always clamped into [0, 1].
"""

import math
import time
from typing import Iterable, Optional

# Half-life in days per content type. None = permanent.
_DECAY_HALF_LIFE_DAYS = {
    "decision": None,
    "hub": None,
    "research": 90.0,
    "project": 90.0,
    "note": 60.0,
    "handoff": 30.0,
    "progress": 30.0,
}
_DEFAULT_HALF_LIFE_DAYS = 60.0

_TYPE_BASELINES = {
    "decision": 0.90,
    "hub": 0.85,
    "research": 0.70,
    "project": 0.65,
    "handoff": 0.60,
    "progress": 0.50,
    "note": 0.50,
}
_DEFAULT_BASELINE = 0.50

# Blend weights for compute_confidence (empirically tuned)
_BASELINE_WEIGHT = 0.5
_RECENCY_WEIGHT = 0.35
_ACCESS_BOOST_CAP = 0.15
_REVIEW_BOOST = 0.05

_SECONDS_PER_DAY = 86400.0

# Phrases signalling the user wants time-ordered results
_RECENCY_KEYWORDS = (
    "recent", "recently", "lately", "today", "yesterday",
    "this week", "last week", "this month", "last month",
    "last session", "previous session", "earlier today",
    "worked on", "changed", "modified",
    "updated", "latest", "newest", "last time",
    "last night", "left off", "up to speed", "catch me up",
    "where were we", "bring me up", "what happened",
    "handoff", "hand off", "hand-off",
)


def round3(value: float) -> float:
    """Round half-up to 3 decimals. Idempotent."""
    return math.floor(value * 1000 + 0.5) / 1000


def _clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def _normalize_type(content_type: Optional[str]) -> str:
    return (content_type or "").strip().lower()


def is_permanent(content_type: Optional[str]) -> bool:
    ctype = _normalize_type(content_type)
    return ctype in _DECAY_HALF_LIFE_DAYS and _DECAY_HALF_LIFE_DAYS[ctype] is None


def compute_recency_score(modified_epoch: float, content_type: Optional[str], now: Optional[float] = None) -> float:
    """Return a 0.0-1.0 recency score for a note.

    Permanent types (decision, hub) always score 1.0. Other types decay
    exponentially: ``0.5 ** (age_days / half_life_days)``. Future
    timestamps (clock skew) and unparseable ages score 1.0.
    """
    if is_permanent(content_type):
        return 1.0
    half_life = _DECAY_HALF_LIFE_DAYS.get(_normalize_type(content_type), _DEFAULT_HALF_LIFE_DAYS)

    current = time.time() if now is None else now
    try:
        age_days = (float(current) - float(modified_epoch)) / _SECONDS_PER_DAY
    except (TypeError, ValueError):
        return 1.0
    if not math.isfinite(age_days) or age_days <= 0:
        return 1.0

    return _clamp01(math.pow(0.5, age_days / half_life))


def compute_confidence(
    content_type: Optional[str],
    modified_epoch: float,
    access_count: int,
    has_review_by: bool,
    now: Optional[float] = None,
) -> float:
    """Compute a base confidence score (0.0-1.0, 3 decimals) for a note.

    Weighted blend of the per-type baseline (0.5), the recency score (0.35),
    an access boost ``min(0.15, log2(access_count + 1) / 10)``, and +0.05
    when the note carries a review-by date.
    """
    baseline = _TYPE_BASELINES.get(_normalize_type(content_type), _DEFAULT_BASELINE)
    recency = compute_recency_score(modified_epoch, content_type, now=now)

    accesses = max(0, int(access_count or 0))
    access_boost = min(_ACCESS_BOOST_CAP, math.log2(accesses + 1) / 10)

    review_boost = _REVIEW_BOOST if has_review_by else 0.0

    confidence = _BASELINE_WEIGHT * baseline + _RECENCY_WEIGHT * recency + access_boost + review_boost
    return round3(_clamp01(confidence))


def composite_score(
    semantic_score: float,
    modified_epoch: float,
    confidence: float,
    content_type: Optional[str],
    relevance_weight: float,
    recency_weight: float,
    confidence_weight: float,
    now: Optional[float] = None,
) -> float:
    """Blend semantic similarity, recency, and confidence with caller weights.

    Negative weights count as zero and non-finite inputs as 0.0. The result
    is clamped to [0, 1] and rounded to 3 decimals.
    """

    def _finite(x: float) -> float:
        try:
            x = float(x)
        except (TypeError, ValueError):
            return 0.0
        return x if math.isfinite(x) else 0.0

    rw = max(0.0, _finite(relevance_weight))
    tw = max(0.0, _finite(recency_weight))
    cw = max(0.0, _finite(confidence_weight))

    recency = compute_recency_score(modified_epoch, content_type, now=now)
    score = rw * _finite(semantic_score) + tw * recency + cw * _finite(confidence)
    return round3(_clamp01(score))


def infer_content_type(path: str, explicit_type: str = "", tags: Optional[Iterable[str]] = None) -> str:
    """Infer a content type from frontmatter, then path, then tags."""
    if explicit_type:
        lower = explicit_type.strip().lower()
        if lower in _DECAY_HALF_LIFE_DAYS:
            return lower

    path_lower = (path or "").lower()
    if "handoff" in path_lower or "session" in path_lower:
        return "handoff"
    if "decision" in path_lower:
        return "decision"
    if "research" in path_lower:
        return "research"
    if "project" in path_lower:
        return "project"
    if "hub" in path_lower or "moc" in path_lower or "index" in path_lower:
        return "hub"

    tag_set = {str(t).lower() for t in (tags or [])}
    for candidate in ("decision", "research", "handoff"):
        if candidate in tag_set:
            return candidate

    return "note"


def has_recency_intent(query: str) -> bool:
    """True when the query asks for recent / time-ordered material."""
    lower = (query or "").lower()
    return any(kw in lower for kw in _RECENCY_KEYWORDS)

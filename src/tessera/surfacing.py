"""
Tessera context surfacing -- pick a handful of notes worth injecting into a prompt.

Unlike search, surfacing is conservative: a candidate must clear a
distance gate, a semantic floor, and a composite (relevance + recency +
confidence) threshold. Three candidate sources are merged:

    vector   raw KNN, batch-normalized semantic score
    title    title/path keyword hits with real bidirectional overlap
    content  notes whose body carries most of the query's terms

Prompts with recency intent ("what did I work on lately") use a separate
recency-weighted mode that also pulls in recently modified notes.

Private notes (_PRIVATE/) are never surfaced.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import List, Optional, Sequence

from tessera.confidence import composite_score, has_recency_intent
from tessera.models import RawSearchResult
from tessera.ranking import (
    HIGH_TIER_OVERLAP,
    MIN_TITLE_OVERLAP,
    PRIORITY_TYPES,
    near_dedup,
    overlap_for_sort,
    query_words_for_title_match,
    title_overlap_score,
)
from tessera.search import (
    SearchError,
    content_term_search,
    extract_search_terms,
    is_private_path,
    keyword_search,
    keyword_search_title_match,
    vector_search_raw,
)
from tessera.sqlite_store import NoteStore

logger = logging.getLogger("tessera.surfacing")

DEFAULT_MAX_RESULTS = 3
MAX_DISTANCE = 16.3  # L2; off-topic matches start around 16.8
MIN_COMPOSITE = 0.70
MIN_SEMANTIC_FLOOR = 0.25
KEYWORD_SEMANTIC = 0.85
SURFACE_SNIPPET_CHARS = 400

# Composite weights: relevance, recency, confidence
_WEIGHTS = (0.3, 0.3, 0.4)

# Recency mode ("what did I work on lately"): recency-heavy weights, a
# looser distance gate, and recently modified notes merged in.
RECENCY_WEIGHTS = (0.1, 0.7, 0.2)
RECENCY_MIN_COMPOSITE = 0.45
RECENCY_DISTANCE_SLACK = 2.0
RECENCY_TITLE_OVERLAP = 0.05
RECENCY_TYPES = frozenset({"handoff", "hub", "progress", "decision"})


@dataclass
class SurfacedNote:
    path: str
    title: str
    content_type: str
    confidence: float
    snippet: str
    score: float  # composite
    semantic: float
    distance: float
    source: str
    title_overlap: float = 0.0


def _composite(semantic: float, r: RawSearchResult, now: Optional[float]) -> float:
    return composite_score(semantic, r.modified, r.confidence, r.content_type, *_WEIGHTS, now=now)


def _surfaced(r: RawSearchResult, composite: float, semantic: float, source: str, overlap: float) -> SurfacedNote:
    return SurfacedNote(
        path=r.path,
        title=r.title,
        content_type=r.content_type,
        confidence=r.confidence,
        snippet=(r.text or "")[:SURFACE_SNIPPET_CHARS],
        score=composite,
        semantic=semantic,
        distance=r.distance,
        source=source,
        title_overlap=overlap,
    )


def _dedup_paths(raw: Sequence[RawSearchResult]) -> List[RawSearchResult]:
    seen = set()
    out = []
    for r in raw:
        if r.path not in seen:
            seen.add(r.path)
            out.append(r)
    return out


def _surface_order(note: SurfacedNote):
    not_priority = note.content_type not in PRIORITY_TYPES
    if note.title_overlap >= HIGH_TIER_OVERLAP:
        return (0, -note.title_overlap, not_priority, -note.score)
    if note.title_overlap >= MIN_TITLE_OVERLAP:
        return (1, 0.0, not_priority, -note.score)
    return (2, 0.0, False, -note.score)


def _recent_order(note: SurfacedNote):
    if note.title_overlap >= RECENCY_TITLE_OVERLAP:
        return (0, -note.title_overlap, -note.score)
    return (1, 0.0, -note.score)


def _surface_recent(
    store: NoteStore,
    prompt: str,
    query_vec: Optional[Sequence[float]],
    max_results: int,
    max_distance: float,
    now: Optional[float],
) -> List[SurfacedNote]:
    """Recency-weighted surfacing for prompts like "what did I work on lately"."""
    by_path = {}

    if query_vec is not None:
        try:
            raw = _dedup_paths(vector_search_raw(store, query_vec, max_results * 6))
        except SearchError as e:
            logger.warning("Vector search failed during recency surfacing: %s", e)
            raw = []
        if raw:
            distances = [r.distance for r in raw]
            min_dist = min(distances)
            dist_range = max(distances) - min_dist
            if dist_range <= 0:
                dist_range = 1.0
            for r in raw:
                if r.distance > max_distance + RECENCY_DISTANCE_SLACK or is_private_path(r.path):
                    continue
                semantic = max(0.0, 1.0 - (r.distance - min_dist) / dist_range)
                comp = composite_score(
                    semantic, r.modified, r.confidence, r.content_type, *RECENCY_WEIGHTS, now=now
                )
                if comp >= RECENCY_MIN_COMPOSITE:
                    by_path[r.path] = _surfaced(r, comp, semantic, "vector", 0.0)

    try:
        recent = store.recent_notes(max_results * 3)
    except sqlite3.Error as e:
        raise SearchError(f"recent notes failed: {e}") from e
    for rec in recent:
        if rec.path in by_path or is_private_path(rec.path) or rec.content_type not in RECENCY_TYPES:
            continue
        comp = composite_score(0.0, rec.modified, rec.confidence, rec.content_type, *RECENCY_WEIGHTS, now=now)
        if comp < RECENCY_MIN_COMPOSITE:
            continue
        by_path[rec.path] = SurfacedNote(
            path=rec.path,
            title=rec.title,
            content_type=rec.content_type,
            confidence=rec.confidence,
            snippet=(rec.text or "")[:SURFACE_SNIPPET_CHARS],
            score=comp,
            semantic=0.0,
            distance=0.0,
            source="recent",
        )

    title_terms = query_words_for_title_match(prompt)
    if title_terms:
        for r in keyword_search_title_match(store, title_terms, 2, max_results * 10):
            if is_private_path(r.path):
                continue
            overlap = title_overlap_score(title_terms, r.title, r.path)
            if overlap < RECENCY_TITLE_OVERLAP:
                continue
            existing = by_path.get(r.path)
            if existing is not None:
                existing.title_overlap = max(existing.title_overlap, overlap)
                continue
            comp = composite_score(
                KEYWORD_SEMANTIC, r.modified, r.confidence, r.content_type, *RECENCY_WEIGHTS, now=now
            )
            if comp >= RECENCY_MIN_COMPOSITE:
                by_path[r.path] = _surfaced(r, comp, KEYWORD_SEMANTIC, "title", overlap)

    ordered = sorted(by_path.values(), key=_recent_order)
    logger.debug("Recency surfacing kept %d of %d candidates", min(len(ordered), max_results), len(ordered))
    return ordered[:max_results]


def surface_notes(
    store: NoteStore,
    prompt: str,
    query_vec: Optional[Sequence[float]] = None,
    max_results: int = DEFAULT_MAX_RESULTS,
    max_distance: float = MAX_DISTANCE,
    min_composite: float = MIN_COMPOSITE,
    now: Optional[float] = None,
) -> List[SurfacedNote]:
    """Return up to ``max_results`` notes relevant enough to inject as context.

    Prompts asking for recent work switch to recency mode: recency-heavy
    weights, a looser distance gate, and recently modified handoff, hub,
    progress and decision notes. Vector failures degrade to the keyword
    modes; keyword failures propagate as SearchError.
    """
    if not prompt or not prompt.strip() or max_results <= 0:
        return []

    if has_recency_intent(prompt):
        return _surface_recent(store, prompt, query_vec, max_results, max_distance, now)

    title_terms = query_words_for_title_match(prompt)
    terms = extract_search_terms(prompt)
    candidates: List[SurfacedNote] = []
    seen = set()

    # Vector mode
    vector_empty = True
    if query_vec is not None:
        try:
            raw = vector_search_raw(store, query_vec, max_results * 6)
        except SearchError as e:
            logger.warning("Vector search failed during surfacing, using keyword modes: %s", e)
            raw = []
        vector_empty = not raw or raw[0].distance > max_distance

        if not vector_empty:
            deduped = _dedup_paths(raw)
            distances = [r.distance for r in deduped]
            min_dist = min(distances)
            dist_range = max(distances) - min_dist
            if dist_range <= 0:
                dist_range = 1.0
            for r in deduped:
                if r.distance > max_distance or is_private_path(r.path):
                    continue
                semantic = 1.0 - (r.distance - min_dist) / dist_range
                if semantic < MIN_SEMANTIC_FLOOR:
                    continue
                comp = _composite(semantic, r, now)
                if comp < min_composite:
                    continue
                overlap = overlap_for_sort(title_terms, r.title, r.path)
                candidates.append(_surfaced(r, comp, semantic, "vector", overlap))
                seen.add(r.path)

    # Title mode: always runs
    if title_terms:
        for r in keyword_search_title_match(store, title_terms, 1, max_results * 10):
            if r.path in seen or is_private_path(r.path):
                continue
            # Path words can dilute overlap, so accept the better of the two views
            filter_overlap = max(
                title_overlap_score(title_terms, r.title, r.path),
                title_overlap_score(title_terms, r.title, ""),
            )
            if filter_overlap < MIN_TITLE_OVERLAP:
                continue
            seen.add(r.path)
            comp = _composite(KEYWORD_SEMANTIC, r, now)
            if comp >= min_composite:
                overlap = overlap_for_sort(title_terms, r.title, r.path)
                candidates.append(_surfaced(r, comp, KEYWORD_SEMANTIC, "title", overlap))

    # Content mode
    if terms and (len(candidates) < max_results or vector_empty):
        content_hits: List[RawSearchResult] = []
        if len(terms) >= 2:
            content_hits = content_term_search(store, terms, max(2, len(terms) - 1), max_results * 10)
        keyword_hits = keyword_search(store, terms, max_results * 3)
        for r in content_hits + keyword_hits:
            if r.path in seen or is_private_path(r.path):
                continue
            seen.add(r.path)
            comp = _composite(KEYWORD_SEMANTIC, r, now)
            if comp >= min_composite:
                overlap = overlap_for_sort(title_terms, r.title, r.path)
                candidates.append(_surfaced(r, comp, KEYWORD_SEMANTIC, "content", overlap))

    if not candidates:
        return []

    items = near_dedup([(c, c.title_overlap) for c in candidates], title_terms)
    ordered = sorted((c for c, _ in items), key=_surface_order)
    logger.debug("Surfaced %d of %d candidates", min(len(ordered), max_results), len(candidates))
    return ordered[:max_results]

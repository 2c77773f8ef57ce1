"""
Tessera search engines -- vector KNN, keyword LIKE, FTS5, and the hybrid merge.

Every function takes the store as its first argument and only reads from
it. Degenerate input (no terms, non-positive limits, blank queries) gives
an empty result; store failures surface as SearchError without retries.

Result layers:
    vector_search / fts5_search / hybrid_search   -> List[SearchResult]
    vector_search_raw / keyword_* / content_*      -> List[RawSearchResult]
    search_with_fallback                           -> hybrid, then FTS5, then keyword
"""

import logging
import math
import sqlite3
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from tessera.confidence import round3
from tessera.models import RawSearchResult, SearchOptions, SearchResult, make_snippet, parse_tags
from tessera.ranking import query_words_for_title_match, rank_search_results
from tessera.sqlite_store import NOTE_COLUMNS, NoteStore

logger = logging.getLogger("tessera.search")

DEFAULT_TOP_K = 10
MAX_TOP_K = 100
VECTOR_OVERFETCH = 5

# Hybrid merge constants
KW_EXACT_TITLE_SCORE = 0.95
KW_BASE_SCORE = 0.5
KW_COVERAGE_WEIGHT = 0.35
KW_BOOST_THRESHOLD = 0.7
KW_BOOST_WEIGHT = 0.5
KW_RESERVED_FRACTION = 0.3
FUZZY_FILL_SCORE = 0.4
KEYWORD_FALLBACK_SCORE = 0.5

FUZZY_MIN_TERM_LEN = 5

_PRIVATE_FILTER = "n.path NOT LIKE '\\_PRIVATE/%' ESCAPE '\\'"
_PRIVATE_PREFIX = "_PRIVATE/"

_TERM_TRIM = ".,;:!?\"'()[]{}"

_SEARCH_STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "can",
    "of", "in", "to", "for", "with", "on", "at", "from", "by", "about",
    "as", "into", "through", "during",
    "and", "or", "but", "not", "so",
    "what", "how", "when", "where", "which", "who", "whom",
    "this", "that", "these", "those", "it", "its",
    "my", "your", "our", "their", "i", "me", "we", "you", "he", "she", "they", "them",
    # query boilerplate
    "explain", "describe", "tell", "show", "work", "works", "tracked", "area",
    "project", "help", "find", "search",
})

_MEANINGFUL_SHORT_TERMS = frozenset({"ai", "os", "pm", "qa", "ui", "ux", "hr", "ml"})

_TITLE_SEPARATORS = " -_(),./:\u2014&"


class SearchError(RuntimeError):
    """The store failed while answering a search."""


def round1(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def extract_search_terms(query: str) -> List[str]:
    """Extract lowercase keyword-search terms from a natural-language query."""
    terms: List[str] = []
    seen = set()
    for word in (query or "").split():
        lower = word.lower().strip(_TERM_TRIM)
        if len(lower) < 2:
            continue
        if len(lower) == 2 and lower not in _MEANINGFUL_SHORT_TERMS:
            continue
        if lower in _SEARCH_STOP_WORDS or lower in seen:
            continue
        seen.add(lower)
        terms.append(lower)
    return terms


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _run(store: NoteStore, what: str, sql: str, params: Sequence = ()) -> List[tuple]:
    try:
        return store.read(sql, params)
    except sqlite3.Error as e:
        raise SearchError(f"{what}: {e}") from e


def _row_to_raw(distance: float, row: Sequence) -> RawSearchResult:
    """Map (id, path, title, heading, text, domain, workstream, tags, type, confidence, modified)."""
    return RawSearchResult(
        note_id=row[0],
        distance=float(distance),
        path=row[1],
        title=row[2],
        heading=row[3],
        text=row[4],
        domain=row[5] or "",
        workstream=row[6] or "",
        tags=parse_tags(row[7]),
        content_type=row[8] or "note",
        confidence=float(row[9] if row[9] is not None else 0.0),
        modified=float(row[10] or 0.0),
    )


def _to_result(raw: RawSearchResult, score: float, distance: float = 0.0) -> SearchResult:
    return SearchResult(
        path=raw.path,
        title=raw.title,
        chunk_heading=raw.heading,
        score=score,
        distance=distance,
        snippet=make_snippet(raw.text),
        domain=raw.domain,
        workstream=raw.workstream,
        tags=list(raw.tags),
        content_type=raw.content_type,
        confidence=round3(raw.confidence),
    )


def _clamp_top_k(top_k: int) -> int:
    if top_k <= 0:
        return DEFAULT_TOP_K
    return min(top_k, MAX_TOP_K)


def has_any_tag(note_tags: Iterable[str], required: Iterable[str]) -> bool:
    """ANY-of tag match, case-insensitive."""
    have = {t.lower() for t in note_tags}
    return any(r.lower() in have for r in required)


def matches_options(raw: RawSearchResult, options: SearchOptions) -> bool:
    if options.domain and raw.domain.lower() != options.domain.lower():
        return False
    if options.workstream and raw.workstream.lower() != options.workstream.lower():
        return False
    if options.tags and not has_any_tag(raw.tags, options.tags):
        return False
    return True


def _dedup_by_path(raws: Iterable[RawSearchResult], limit: int) -> List[RawSearchResult]:
    seen = set()
    deduped: List[RawSearchResult] = []
    for r in raws:
        if r.path in seen:
            continue
        seen.add(r.path)
        deduped.append(r)
        if len(deduped) >= limit:
            break
    return deduped


# ---------------------------------------------------------------------------
# Vector search
# ---------------------------------------------------------------------------


def vector_search_raw(store: NoteStore, query_vec: Sequence[float], fetch_k: int) -> List[RawSearchResult]:
    """Nearest chunks by raw L2 distance. No filtering, dedup, or normalization."""
    if fetch_k <= 0:
        return []
    try:
        hits = store.knn(query_vec, fetch_k)
    except (ValueError, sqlite3.Error) as e:
        raise SearchError(f"vector search: {e}") from e
    if not hits:
        return []

    ids = [note_id for note_id, _ in hits]
    placeholders = ",".join("?" for _ in ids)
    rows = _run(
        store,
        "vector search",
        f"SELECT {NOTE_COLUMNS} FROM vault_notes n WHERE n.id IN ({placeholders})",
        ids,
    )
    by_id = {row[0]: row for row in rows}

    results: List[RawSearchResult] = []
    for note_id, distance in hits:
        row = by_id.get(note_id)
        if row is None:
            # Orphan vector (note deleted mid-read)
            continue
        results.append(_row_to_raw(distance, row))
    return results


def vector_search(
    store: NoteStore, query_vec: Sequence[float], options: Optional[SearchOptions] = None
) -> List[SearchResult]:
    """KNN search with metadata filters, per-path dedup, and batch-local scores.

    Scores map the best distance in the returned batch to 1.0 and the worst
    to 0.0, so they are only comparable within one call.
    """
    options = options or SearchOptions()
    top_k = _clamp_top_k(options.top_k)

    raw = vector_search_raw(store, query_vec, top_k * VECTOR_OVERFETCH)
    filtered = [r for r in raw if matches_options(r, options)]
    deduped = _dedup_by_path(filtered, top_k)
    if not deduped:
        return []

    min_dist = deduped[0].distance
    max_dist = deduped[-1].distance
    dist_range = max_dist - min_dist
    if dist_range <= 0:
        dist_range = 1.0

    results = []
    for r in deduped:
        score = 1.0 - (r.distance - min_dist) / dist_range
        results.append(_to_result(r, round3(score), round1(r.distance)))
    return results


# ---------------------------------------------------------------------------
# Keyword search (LIKE)
# ---------------------------------------------------------------------------


def keyword_search(store: NoteStore, terms: Sequence[str], limit: int) -> List[RawSearchResult]:
    """Notes where any term appears in a title or any chunk's text.

    Returns root chunks ranked by how many terms the root chunk matches,
    newest first on ties.
    """
    if not terms or limit <= 0:
        return []

    match_exprs = []
    conditions = []
    score_args: List[str] = []
    cond_args: List[str] = []
    for term in terms:
        pattern = _like_pattern(term)
        match_exprs.append(
            "(CASE WHEN LOWER(n.title) LIKE LOWER(?) ESCAPE '\\' "
            "OR LOWER(n.text) LIKE LOWER(?) ESCAPE '\\' THEN 1 ELSE 0 END)"
        )
        score_args.extend([pattern, pattern])
        conditions.append(
            "(LOWER(n2.title) LIKE LOWER(?) ESCAPE '\\' OR LOWER(n2.text) LIKE LOWER(?) ESCAPE '\\')"
        )
        cond_args.extend([pattern, pattern])

    where_any = " OR ".join(conditions)
    score_expr = " + ".join(match_exprs)
    sql = f"""
        SELECT {NOTE_COLUMNS}
        FROM vault_notes n
        WHERE n.chunk_id = 0 AND {_PRIVATE_FILTER} AND n.path IN (
            SELECT DISTINCT n2.path FROM vault_notes n2
            WHERE {where_any}
        )
        ORDER BY ({score_expr}) DESC, n.modified DESC
        LIMIT ?
    """
    rows = _run(store, "keyword search", sql, [*cond_args, *score_args, limit])
    return [_row_to_raw(0.0, row) for row in rows]


def keyword_search_title_match(
    store: NoteStore,
    terms: Sequence[str],
    min_matches: int,
    limit: int,
    title_only: bool = False,
) -> List[RawSearchResult]:
    """Notes where at least ``min_matches`` terms appear in the title (or path).

    With ``title_only`` the path is ignored, which avoids hits from folder
    names like "01_Projects/".
    """
    if not terms or limit <= 0 or min_matches <= 0:
        return []

    match_exprs = []
    match_args: List[str] = []
    for term in terms:
        pattern = _like_pattern(term)
        if title_only:
            match_exprs.append("(CASE WHEN LOWER(n.title) LIKE LOWER(?) ESCAPE '\\' THEN 1 ELSE 0 END)")
            match_args.append(pattern)
        else:
            match_exprs.append(
                "(CASE WHEN LOWER(n.title) LIKE LOWER(?) ESCAPE '\\' "
                "OR LOWER(n.path) LIKE LOWER(?) ESCAPE '\\' THEN 1 ELSE 0 END)"
            )
            match_args.extend([pattern, pattern])
    score_expr = " + ".join(match_exprs)

    sql = f"""
        SELECT {NOTE_COLUMNS}
        FROM vault_notes n
        WHERE n.chunk_id = 0 AND {_PRIVATE_FILTER} AND ({score_expr}) >= ?
        ORDER BY ({score_expr}) DESC, n.modified DESC
        LIMIT ?
    """
    rows = _run(store, "keyword title search", sql, [*match_args, min_matches, *match_args, limit])
    return [_row_to_raw(0.0, row) for row in rows]


def content_term_search(
    store: NoteStore, terms: Sequence[str], min_terms: int, limit: int
) -> List[RawSearchResult]:
    """Notes where at least ``min_terms`` distinct terms appear across any chunks.

    Ranked by term coverage, then content density (chunk_freq^2 / chunk_count),
    then recency. Catches notes whose relevant text sits in later sections.
    """
    if not terms or limit <= 0 or min_terms <= 0:
        return []

    coverage_exprs = []
    freq_exprs = []
    cov_args: List[str] = []
    freq_args: List[str] = []
    for term in terms:
        pattern = _like_pattern(term)
        coverage_exprs.append(
            "(CASE WHEN SUM(CASE WHEN LOWER(n2.title) LIKE LOWER(?) ESCAPE '\\' "
            "OR LOWER(n2.text) LIKE LOWER(?) ESCAPE '\\' THEN 1 ELSE 0 END) > 0 THEN 1 ELSE 0 END)"
        )
        cov_args.extend([pattern, pattern])
        freq_exprs.append("SUM(CASE WHEN LOWER(n2.text) LIKE LOWER(?) ESCAPE '\\' THEN 1 ELSE 0 END)")
        freq_args.append(pattern)

    coverage_expr = " + ".join(coverage_exprs)
    freq_expr = " + ".join(freq_exprs)
    sql = f"""
        WITH note_coverage AS (
            SELECT n2.path, ({coverage_expr}) AS cov,
                ({freq_expr}) AS chunk_freq, COUNT(*) AS chunk_count
            FROM vault_notes n2
            GROUP BY n2.path
        )
        SELECT {NOTE_COLUMNS}
        FROM vault_notes n
        JOIN note_coverage nc ON n.path = nc.path
        WHERE n.chunk_id = 0 AND nc.cov >= ?
        ORDER BY nc.cov DESC,
            CAST(nc.chunk_freq * nc.chunk_freq AS REAL) / nc.chunk_count DESC,
            n.modified DESC
        LIMIT ?
    """
    rows = _run(store, "content term search", sql, [*cov_args, *freq_args, min_terms, limit])
    return [_row_to_raw(0.0, row) for row in rows]


# ---------------------------------------------------------------------------
# Fuzzy title search
# ---------------------------------------------------------------------------


def split_title_words(title: str) -> List[str]:
    """Lowercase title words, splitting on common punctuation."""
    words: List[str] = []
    current: List[str] = []
    for ch in title.lower():
        if ch in _TITLE_SEPARATORS:
            if current:
                words.append("".join(current))
                current = []
        else:
            current.append(ch)
    if current:
        words.append("".join(current))
    return words


def edit_distance_exactly_one(a: str, b: str) -> bool:
    """One substitution, insertion, or deletion apart. No length guard."""
    la, lb = len(a), len(b)
    if la == lb:
        return sum(1 for ca, cb in zip(a, b) if ca != cb) == 1
    if abs(la - lb) != 1:
        return False
    longer, shorter = (a, b) if la > lb else (b, a)
    i = j = 0
    skipped = False
    while i < len(longer) and j < len(shorter):
        if longer[i] == shorter[j]:
            i += 1
            j += 1
        elif not skipped:
            skipped = True
            i += 1
        else:
            return False
    return True


def fuzzy_title_search(store: NoteStore, terms: Sequence[str], limit: int) -> List[RawSearchResult]:
    """Notes with a title word one typo away from a search term (terms of 5+ chars)."""
    fuzzy_terms = [t.lower() for t in terms if len(t) >= FUZZY_MIN_TERM_LEN]
    if not fuzzy_terms or limit <= 0:
        return []

    rows = _run(
        store,
        "fuzzy title search",
        f"SELECT {NOTE_COLUMNS} FROM vault_notes n "
        f"WHERE n.chunk_id = 0 AND {_PRIVATE_FILTER} ORDER BY n.modified DESC",
    )

    results: List[RawSearchResult] = []
    for row in rows:
        words = split_title_words(row[2] or "")
        if any(edit_distance_exactly_one(term, word) for term in fuzzy_terms for word in words):
            results.append(_row_to_raw(0.0, row))
            if len(results) >= limit:
                break
    return results


# ---------------------------------------------------------------------------
# FTS5 search
# ---------------------------------------------------------------------------


def _fts_match_expr(terms: Sequence[str]) -> str:
    # Quote every term so FTS5 operators in user text are taken literally
    return " OR ".join('"{}"'.format(t.replace('"', '""')) for t in terms)


def fts5_search(store: NoteStore, query: str, options: Optional[SearchOptions] = None) -> List[SearchResult]:
    """BM25-ranked full-text search. Scores: best in batch 1.0, worst 0.1."""
    options = options or SearchOptions()
    if not store.fts_available:
        return []
    terms = extract_search_terms(query)
    if not terms:
        return []
    top_k = _clamp_top_k(options.top_k)

    sql = f"""
        SELECT f.rank, {NOTE_COLUMNS}
        FROM vault_notes_fts f
        JOIN vault_notes n ON n.id = f.rowid
        WHERE vault_notes_fts MATCH ? AND {_PRIVATE_FILTER}
        ORDER BY f.rank
        LIMIT ?
    """
    rows = _run(store, "fts5 search", sql, [_fts_match_expr(terms), top_k * VECTOR_OVERFETCH])

    raws = []
    for row in rows:
        raw = _row_to_raw(0.0, row[1:])
        if matches_options(raw, options):
            raws.append((float(row[0]), raw))

    seen = set()
    deduped = []
    for rank, raw in raws:
        if raw.path in seen:
            continue
        seen.add(raw.path)
        deduped.append((rank, raw))
        if len(deduped) >= top_k:
            break
    if not deduped:
        return []

    # BM25 rank values are negative (more negative = better match)
    ranks = [rank for rank, _ in deduped]
    best_rank, worst_rank = min(ranks), max(ranks)
    results = []
    for rank, raw in deduped:
        if worst_rank != best_rank:
            score = 0.1 + 0.9 * (worst_rank - rank) / (worst_rank - best_rank)
        else:
            score = 1.0
        results.append(_to_result(raw, round3(score)))

    return rank_search_results(results, query_words_for_title_match(query))


# ---------------------------------------------------------------------------
# Hybrid search
# ---------------------------------------------------------------------------


def keyword_title_score(title: str, terms: Sequence[str]) -> float:
    """Score a keyword hit by how many terms its title contains.

    An exact title match scores 0.95; otherwise 0.5 + 0.35 * coverage,
    so all-terms hits land at 0.85 and interleave with vector scores.
    """
    title_lower = title.lower()
    if title_lower.strip() in set(terms):
        return KW_EXACT_TITLE_SCORE
    matched = sum(1 for t in terms if t in title_lower)
    if matched == 0:
        return KW_BASE_SCORE
    return round3(KW_BASE_SCORE + KW_COVERAGE_WEIGHT * matched / len(terms))


def hybrid_search(
    store: NoteStore,
    query_vec: Sequence[float],
    query_text: str,
    options: Optional[SearchOptions] = None,
) -> List[SearchResult]:
    """Vector search supplemented by keyword title hits, then title-aware ranking."""
    options = options or SearchOptions()
    top_k = _clamp_top_k(options.top_k)
    options = SearchOptions(
        top_k=top_k,
        domain=options.domain,
        workstream=options.workstream,
        tags=list(options.tags or []),
    )

    merged = vector_search(store, query_vec, options)

    terms = extract_search_terms(query_text)
    kw_results: List[RawSearchResult] = []
    if terms:
        kw_results = [
            r for r in keyword_search_title_match(store, terms, 1, top_k * 2, title_only=True)
            if matches_options(r, options)
        ]

    if kw_results:
        kw_path_score: Dict[str, float] = {}
        for r in kw_results:
            score = keyword_title_score(r.title, terms)
            if score > kw_path_score.get(r.path, -1.0):
                kw_path_score[r.path] = score

        for result in merged:
            kw_score = kw_path_score.get(result.path)
            if kw_score is not None and kw_score >= KW_BOOST_THRESHOLD:
                result.score = round3(result.score + KW_BOOST_WEIGHT * kw_score)

        # Reserve ceil(30%) of top_k (min 2) for keyword additions
        max_replace = max(2, math.ceil(top_k * KW_RESERVED_FRACTION))
        if len(merged) >= top_k:
            merged = merged[: max(0, len(merged) - max_replace)]

        seen = {r.path for r in merged}
        new_kw: List[SearchResult] = []
        for r in kw_results:
            if r.path in seen:
                continue
            seen.add(r.path)
            new_kw.append(_to_result(r, keyword_title_score(r.title, terms)))

        if new_kw:
            new_kw.sort(key=lambda r: r.score, reverse=True)
            remaining = max(0, top_k - len(merged))
            merged = merged + new_kw[:remaining]

        merged.sort(key=lambda r: r.score, reverse=True)

        if len(merged) < top_k:
            for r in fuzzy_title_search(store, terms, top_k * 2):
                if len(merged) >= top_k:
                    break
                if r.path in seen or not matches_options(r, options):
                    continue
                seen.add(r.path)
                merged.append(_to_result(r, FUZZY_FILL_SCORE))

    query_terms = query_words_for_title_match(query_text)
    if query_terms:
        merged = rank_search_results(merged, query_terms)
    return merged


# ---------------------------------------------------------------------------
# Graceful degradation
# ---------------------------------------------------------------------------


def search_with_fallback(
    store: NoteStore,
    query: str,
    options: Optional[SearchOptions] = None,
    embed: Optional[Callable[[str], Optional[List[float]]]] = None,
) -> List[SearchResult]:
    """Hybrid search when vectors are usable, else FTS5, else keyword LIKE."""
    options = options or SearchOptions()
    if not query or not query.strip():
        return []

    query_vec = embed(query) if embed is not None else None
    if query_vec is not None and len(query_vec) != store.embedding_dim:
        logger.warning(
            "Query embedding has %d dimensions but the index uses %d; skipping vector search",
            len(query_vec), store.embedding_dim,
        )
        query_vec = None

    if query_vec is not None and store.has_vectors():
        return hybrid_search(store, query_vec, query, options)

    if store.fts_available:
        return fts5_search(store, query, options)

    terms = extract_search_terms(query)
    if not terms:
        return []
    top_k = _clamp_top_k(options.top_k)
    raw = keyword_search(store, terms, top_k)
    results = [_to_result(r, KEYWORD_FALLBACK_SCORE) for r in raw if matches_options(r, options)]
    return rank_search_results(results, query_words_for_title_match(query))


def is_private_path(path: str) -> bool:
    return path.startswith(_PRIVATE_PREFIX)

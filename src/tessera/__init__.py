"""Tessera -- hybrid retrieval and ranking for AI-agent notes.

Direct Python API::

    from tessera import NoteStore, SearchOptions, search_with_fallback
    store = NoteStore()
    results = search_with_fallback(store, "kubernetes rollout plan", SearchOptions(top_k=5))

For semantic (vector) search install with: ``pip install tessera[embeddings]``
"""

__version__ = "0.3.0"

from tessera.sqlite_store import NoteStore
from tessera.models import (
    IndexReport,
    NoData,
    NoteRecord,
    RawSearchResult,
    SearchOptions,
    SearchResult,
)
from tessera.confidence import (
    composite_score,
    compute_confidence,
    compute_recency_score,
    has_recency_intent,
    infer_content_type,
)
from tessera.ranking import (
    overlap_for_sort,
    query_words_for_title_match,
    rank_search_results,
    title_overlap_score,
)
from tessera.search import (
    SearchError,
    content_term_search,
    extract_search_terms,
    fts5_search,
    fuzzy_title_search,
    hybrid_search,
    keyword_search,
    keyword_search_title_match,
    search_with_fallback,
    vector_search,
    vector_search_raw,
)
from tessera.surfacing import SurfacedNote, surface_notes

__all__ = [
    "NoteStore",
    "IndexReport",
    "NoData",
    "NoteRecord",
    "RawSearchResult",
    "SearchOptions",
    "SearchResult",
    "composite_score",
    "compute_confidence",
    "compute_recency_score",
    "has_recency_intent",
    "infer_content_type",
    "overlap_for_sort",
    "query_words_for_title_match",
    "rank_search_results",
    "title_overlap_score",
    "SearchError",
    "content_term_search",
    "extract_search_terms",
    "fts5_search",
    "fuzzy_title_search",
    "hybrid_search",
    "keyword_search",
    "keyword_search_title_match",
    "search_with_fallback",
    "vector_search",
    "vector_search_raw",
    "SurfacedNote",
    "surface_notes",
]

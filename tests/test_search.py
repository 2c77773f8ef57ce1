"""Tests for the search engines: vector, keyword, FTS5, fuzzy, hybrid, fallback."""
import logging

import pytest

from tessera.models import NoteRecord, SearchOptions
from tessera.search import (
    SearchError,
    content_term_search,
    extract_search_terms,
    fts5_search,
    fuzzy_title_search,
    hybrid_search,
    keyword_search,
    keyword_search_title_match,
    keyword_title_score,
    search_with_fallback,
    split_title_words,
    vector_search,
    vector_search_raw,
)


def unit(i, dim=4):
    v = [0.0] * dim
    v[i] = 1.0
    return v


@pytest.fixture
def fts_store(store):
    if not store.fts_available:
        pytest.skip("FTS5 not compiled into this SQLite")
    return store


class TestExtractSearchTerms:
    def test_stop_words_and_short_terms(self):
        assert extract_search_terms("What is the AI roadmap?") == ["ai", "roadmap"]

    def test_punctuation_trimmed_and_deduped(self):
        assert extract_search_terms('"Kubernetes" (kubernetes) deployment,') == ["kubernetes", "deployment"]

    def test_two_letter_whitelist(self):
        assert extract_search_terms("ux of an os vs xy") == ["ux", "os"]

    def test_empty(self):
        assert extract_search_terms("") == []
        assert extract_search_terms("find the project") == []


class TestVectorSearch:
    def test_empty_index(self, store):
        assert vector_search(store, unit(0)) == []

    def test_scores_normalized_per_batch(self, store, add_note):
        add_note("a.md", "A", vec=unit(0))
        add_note("b.md", "B", vec=[0.6, 0.8, 0.0, 0.0])
        add_note("c.md", "C", vec=unit(2))
        results = vector_search(store, unit(0))
        assert [r.path for r in results] == ["a.md", "b.md", "c.md"]
        assert results[0].score == 1.0
        assert results[-1].score == 0.0
        assert 0.0 < results[1].score < 1.0
        assert results[-1].distance == 1.4

    def test_equal_distances_score_one(self, store, add_note):
        add_note("a.md", "A", vec=unit(1))
        add_note("b.md", "B", vec=unit(2))
        results = vector_search(store, unit(0))
        assert [r.score for r in results] == [1.0, 1.0]

    def test_dedup_keeps_best_chunk(self, store, add_note):
        add_note("a.md", "A", "root text", vec=[0.0, 1.0, 0.0, 0.0])
        add_note("a.md", "A", "best section", vec=unit(0), chunk_id=1, chunk_heading="## Best")
        add_note("b.md", "B", vec=unit(2))
        results = vector_search(store, unit(0))
        assert [r.path for r in results] == ["a.md", "b.md"]
        assert results[0].chunk_heading == "## Best"
        assert results[0].snippet == "best section"

    def test_metadata_filters(self, store, add_note):
        add_note("a.md", "A", vec=unit(0), domain="Engineering", workstream="infra", tags=["k8s"])
        add_note("b.md", "B", vec=unit(0), domain="sales", tags=["crm"])
        add_note("c.md", "C", vec=unit(0), domain="engineering", workstream="app", tags=["K8S", "web"])

        by_domain = vector_search(store, unit(0), SearchOptions(domain="ENGINEERING"))
        assert {r.path for r in by_domain} == {"a.md", "c.md"}

        by_ws = vector_search(store, unit(0), SearchOptions(workstream="Infra"))
        assert [r.path for r in by_ws] == ["a.md"]

        by_tags = vector_search(store, unit(0), SearchOptions(tags=["web", "crm"]))
        assert {r.path for r in by_tags} == {"b.md", "c.md"}

    def test_top_k_defaults_and_clamps(self, store):
        records = [NoteRecord(path=f"n{i:03d}.md", title=f"N{i}", text=f"n{i}") for i in range(130)]
        store.bulk_insert_notes(records, [[1.0, i / 100, 0.0, 0.0] for i in range(130)])
        assert len(vector_search(store, unit(0), SearchOptions(top_k=0))) == 10
        assert len(vector_search(store, unit(0), SearchOptions(top_k=3))) == 3
        assert len(vector_search(store, unit(0), SearchOptions(top_k=100))) == 100
        clamped = vector_search(store, unit(0), SearchOptions(top_k=500))
        assert len(clamped) == 100
        assert clamped[0].path == "n000.md"
        assert clamped[-1].path == "n099.md"

    def test_snippet_truncated(self, store, add_note):
        add_note("a.md", "A", "x" * 900, vec=unit(0))
        assert len(vector_search(store, unit(0))[0].snippet) == 500

    def test_dimension_mismatch_is_an_error(self, store, add_note):
        add_note("a.md", "A", vec=unit(0))
        with pytest.raises(SearchError):
            vector_search(store, [1.0, 0.0])


class TestVectorSearchRaw:
    def test_returns_every_chunk(self, store, add_note):
        add_note("a.md", "A", vec=unit(0))
        add_note("a.md", "A", "part two", vec=unit(1), chunk_id=1, chunk_heading="## Two")
        raw = vector_search_raw(store, unit(0), 10)
        assert [r.path for r in raw] == ["a.md", "a.md"]
        assert raw[0].distance < raw[1].distance
        assert raw[0].modified > 0

    def test_non_positive_fetch(self, store, add_note):
        add_note("a.md", "A", vec=unit(0))
        assert vector_search_raw(store, unit(0), 0) == []


class TestKeywordSearch:
    def test_degenerate_inputs(self, store, add_note):
        add_note("a.md", "Alpha", "alpha text")
        assert keyword_search(store, [], 10) == []
        assert keyword_search(store, ["alpha"], 0) == []

    def test_ranked_by_match_count(self, store, add_note, now):
        add_note("one.md", "One", "kubernetes only", modified=now)
        add_note("both.md", "Both", "kubernetes and terraform", modified=now - 1000)
        results = keyword_search(store, ["kubernetes", "terraform"], 10)
        assert [r.path for r in results] == ["both.md", "one.md"]

    def test_ties_broken_by_recency(self, store, add_note, now):
        add_note("old.md", "Old", "kubernetes", modified=now - 5000)
        add_note("new.md", "New", "kubernetes", modified=now)
        assert [r.path for r in keyword_search(store, ["kubernetes"], 10)] == ["new.md", "old.md"]

    def test_document_level_match(self, store, add_note):
        add_note("doc.md", "Doc", "intro")
        add_note("doc.md", "Doc", "zookeeper details", chunk_id=1, chunk_heading="## Later")
        results = keyword_search(store, ["zookeeper"], 10)
        assert len(results) == 1
        assert results[0].heading == "(full)"

    def test_case_insensitive(self, store, add_note):
        add_note("a.md", "SharePoint Guide", "text")
        assert len(keyword_search(store, ["sharepoint"], 10)) == 1

    def test_private_notes_excluded(self, store, add_note):
        add_note("_PRIVATE/secret.md", "Secret", "kubernetes token")
        add_note("XPRIVATE/open.md", "Open", "kubernetes")
        assert [r.path for r in keyword_search(store, ["kubernetes"], 10)] == ["XPRIVATE/open.md"]

    def test_like_wildcards_escaped(self, store, add_note):
        add_note("a.md", "A", "1000 items")
        assert keyword_search(store, ["100%"], 10) == []
        assert keyword_search(store, ["1_00"], 10) == []


class TestKeywordSearchTitleMatch:
    def test_min_matches(self, store, add_note):
        add_note("a.md", "Kubernetes Networking", "x")
        add_note("b.md", "Kubernetes Storage", "x")
        results = keyword_search_title_match(store, ["kubernetes", "networking"], 2, 10)
        assert [r.path for r in results] == ["a.md"]

    def test_path_matches_unless_title_only(self, store, add_note):
        add_note("kubernetes/brief.md", "Brief", "x")
        assert len(keyword_search_title_match(store, ["kubernetes"], 1, 10)) == 1
        assert keyword_search_title_match(store, ["kubernetes"], 1, 10, title_only=True) == []

    def test_body_ignored(self, store, add_note):
        add_note("a.md", "Alpha", "kubernetes in body only")
        assert keyword_search_title_match(store, ["kubernetes"], 1, 10) == []

    def test_degenerate_inputs(self, store):
        assert keyword_search_title_match(store, ["x"], 0, 10) == []
        assert keyword_search_title_match(store, ["x"], 1, 0) == []


class TestContentTermSearch:
    def test_terms_across_chunks(self, store, add_note):
        add_note("split.md", "Split", "career planning")
        add_note("split.md", "Split", "skills inventory", chunk_id=1, chunk_heading="## Skills")
        add_note("partial.md", "Partial", "career only")
        results = content_term_search(store, ["career", "skills"], 2, 10)
        assert [r.path for r in results] == ["split.md"]
        assert results[0].heading == "(full)"

    def test_coverage_then_density(self, store, add_note):
        add_note("dense.md", "Dense", "alpha beta")
        add_note("dense.md", "Dense", "alpha beta again", chunk_id=1, chunk_heading="## Again")
        add_note("thin.md", "Thin", "alpha beta")
        add_note("thin.md", "Thin", "nothing", chunk_id=1, chunk_heading="## Other")
        add_note("thin.md", "Thin", "nothing", chunk_id=2, chunk_heading="## Other 2")
        results = content_term_search(store, ["alpha", "beta"], 1, 10)
        assert [r.path for r in results] == ["dense.md", "thin.md"]

    def test_degenerate_inputs(self, store):
        assert content_term_search(store, [], 1, 10) == []
        assert content_term_search(store, ["x"], 0, 10) == []


class TestFuzzyTitleSearch:
    def test_single_typo(self, store, add_note):
        add_note("k.md", "Kubernetes Hub", "x")
        add_note("t.md", "Terraform", "x")
        assert [r.path for r in fuzzy_title_search(store, ["kuberntes"], 10)] == ["k.md"]

    def test_short_terms_skipped(self, store, add_note):
        add_note("h.md", "Helm", "x")
        assert fuzzy_title_search(store, ["helx"], 10) == []

    def test_split_title_words(self):
        assert split_title_words("Q3 Plan \u2014 Finance & Ops (draft)") == ["q3", "plan", "finance", "ops", "draft"]


class TestKeywordTitleScore:
    def test_exact_title(self):
        assert keyword_title_score("Kubernetes", ["kubernetes"]) == 0.95

    def test_all_terms(self):
        assert keyword_title_score("Kubernetes Networking", ["kubernetes", "networking"]) == 0.85

    def test_partial(self):
        assert keyword_title_score("Kubernetes Storage", ["kubernetes", "networking"]) == pytest.approx(0.675)

    def test_none(self):
        assert keyword_title_score("Other", ["kubernetes"]) == 0.5


class TestFts5Search:
    def _seed(self, add_note):
        add_note("heavy.md", "Alpha", "kubernetes kubernetes kubernetes cluster")
        add_note("light.md", "Beta", "a long note that mentions kubernetes once among many other words here")
        for i in range(4):
            add_note(f"filler{i}.md", f"Filler {i}", "unrelated gardening notes")

    def test_bm25_normalization(self, fts_store, add_note):
        self._seed(add_note)
        results = fts5_search(fts_store, "kubernetes")
        assert [r.path for r in results] == ["heavy.md", "light.md"]
        assert results[0].score == 1.0
        assert results[1].score == pytest.approx(0.1)

    def test_single_hit_scores_one(self, fts_store, add_note):
        self._seed(add_note)
        results = fts5_search(fts_store, "cluster")
        assert [(r.path, r.score) for r in results] == [("heavy.md", 1.0)]

    def test_filters_and_private(self, fts_store, add_note):
        add_note("a.md", "A", "kubernetes", domain="ops")
        add_note("b.md", "B", "kubernetes", domain="dev")
        add_note("_PRIVATE/c.md", "C", "kubernetes", domain="ops")
        results = fts5_search(fts_store, "kubernetes", SearchOptions(domain="ops"))
        assert [r.path for r in results] == ["a.md"]

    def test_quotes_in_query(self, fts_store, add_note):
        add_note("a.md", "A", "kubernetes")
        assert [r.path for r in fts5_search(fts_store, 'kube"rnetes OR kubernetes')] == ["a.md"]

    def test_no_terms(self, fts_store, add_note):
        add_note("a.md", "A", "kubernetes")
        assert fts5_search(fts_store, "what is the") == []


class TestHybridSearch:
    def test_keyword_boost_lifts_title_match(self, store, add_note):
        add_note("alpha.md", "Random Alpha", vec=unit(0))
        add_note("k8s.md", "Kubernetes Guide", vec=unit(3))
        results = hybrid_search(store, unit(0), "kubernetes")
        assert results[0].path == "k8s.md"
        assert results[0].score == pytest.approx(0.425)

    def test_keyword_only_note_merged(self, store, add_note):
        add_note("alpha.md", "Random Alpha", vec=unit(0))
        add_note("k8s.md", "Kubernetes Guide")
        results = hybrid_search(store, unit(0), "kubernetes")
        assert [r.path for r in results] == ["k8s.md", "alpha.md"]
        assert results[0].score == 0.85

    def test_vector_tail_cut_for_keywords(self, store, add_note):
        for i in range(3):
            add_note(f"v{i}.md", f"Vector {i}", vec=[1.0, i / 10, 0.0, 0.0])
        add_note("kw.md", "Zookeeper")
        results = hybrid_search(store, unit(0), "zookeeper", SearchOptions(top_k=3))
        paths = [r.path for r in results]
        assert "kw.md" in paths
        assert len(results) <= 3

    def test_tags_none_treated_as_no_filter(self, store, add_note):
        add_note("alpha.md", "Random Alpha", vec=unit(0), tags=["misc"])
        add_note("k8s.md", "Kubernetes Guide")
        results = hybrid_search(store, unit(0), "kubernetes", SearchOptions(tags=None))
        assert [r.path for r in results] == ["k8s.md", "alpha.md"]

    def test_fuzzy_fill(self, store, add_note):
        add_note("alpha.md", "Alpha Note", vec=unit(0))
        add_note("k8s.md", "Kubernetes Hub")
        results = hybrid_search(store, unit(0), "kuberntes alpha")
        by_path = {r.path: r for r in results}
        assert by_path["k8s.md"].score == 0.4

    def test_filters_apply_to_keyword_leg(self, store, add_note):
        add_note("alpha.md", "Random Alpha", vec=unit(0), domain="ops")
        add_note("k8s.md", "Kubernetes Guide", domain="dev")
        results = hybrid_search(store, unit(0), "kubernetes", SearchOptions(domain="ops"))
        assert [r.path for r in results] == ["alpha.md"]

    def test_raw_outputs_dropped_after_merge(self, store, add_note):
        add_note("x/raw_outputs/run.md", "Run", vec=unit(0))
        add_note("x/summary.md", "Summary", vec=unit(1))
        results = hybrid_search(store, unit(0), "summary of runs")
        assert [r.path for r in results] == ["x/summary.md"]


class TestSearchWithFallback:
    def test_blank_query(self, store, add_note):
        add_note("a.md", "A", vec=unit(0))
        assert search_with_fallback(store, "   ", embed=lambda q: unit(0)) == []

    def test_uses_hybrid_with_embedder(self, store, add_note):
        add_note("a.md", "Alpha", "nothing matching", vec=unit(0))
        results = search_with_fallback(store, "completely different words", embed=lambda q: unit(0))
        assert [r.path for r in results] == ["a.md"]
        assert results[0].score == 1.0

    def test_dimension_drift_logged_and_skipped(self, fts_store, add_note, caplog):
        add_note("a.md", "Alpha", "kubernetes", vec=unit(0))
        with caplog.at_level(logging.WARNING, logger="tessera.search"):
            results = search_with_fallback(fts_store, "kubernetes", embed=lambda q: [1.0] * 8)
        assert [r.path for r in results] == ["a.md"]
        assert "dimensions" in caplog.text

    def test_fts_without_embedder(self, fts_store, add_note):
        add_note("a.md", "Alpha", "kubernetes")
        results = search_with_fallback(fts_store, "kubernetes")
        assert [r.path for r in results] == ["a.md"]

    def test_keyword_fallback_without_fts(self, store, add_note):
        add_note("a.md", "Alpha", "kubernetes", domain="ops")
        add_note("b.md", "Beta", "kubernetes", domain="dev")
        store.fts_available = False
        results = search_with_fallback(store, "kubernetes", SearchOptions(domain="ops"))
        assert [(r.path, r.score) for r in results] == [("a.md", 0.5)]

    def test_embedder_returning_none(self, store, add_note):
        add_note("a.md", "Alpha", "kubernetes", vec=unit(0))
        store.fts_available = False
        results = search_with_fallback(store, "kubernetes", embed=lambda q: None)
        assert [r.path for r in results] == ["a.md"]

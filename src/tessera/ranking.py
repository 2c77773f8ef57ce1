"""
Tessera ranking -- title-overlap-aware ordering of search results.

Catches the case where a query is plainly *about* a note's title or
filename but the embedding puts it behind semantically-distant neighbors.
Shared by every search path (hybrid, FTS5, keyword fallback).

Pipeline for rank_search_results():
1. Title overlap per result (bidirectional term coverage, fuzzy matching)
2. Drop raw experiment output (fail-open)
3. Near-dedup versioned copies in the same directory
4. Three-tier stable sort (strong title match > meaningful > rest)
"""

import re
from typing import Dict, List, Sequence, Tuple

from tessera.models import SearchResult

# Floating-point-safe stand-in for >= 0.20: 3/5 * 3/9 evaluates to
# 0.19999... and must land in the high tier.
HIGH_TIER_OVERLAP = 0.199

# Minimum bidirectional overlap for a title match to count as signal.
MIN_TITLE_OVERLAP = 0.10

# Path-only overlap must reach this before it is used (at half weight).
PATH_OVERLAP_FLOOR = 0.25

RAW_OUTPUTS_MARKER = "/raw_outputs/"

PRIORITY_TYPES = frozenset({"handoff", "decision", "research", "hub"})

_WORD_RE = re.compile(r"\w+")
_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,8}$")

_TITLE_MATCH_STOP_WORDS = frozenset({
    # 3-letter
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "has",
    "her", "his", "how", "its", "may", "new", "now", "our", "out", "own",
    "too", "use", "was", "who", "why", "did", "get", "got", "had", "let",
    "say", "she", "any", "way", "yet",
    # 4-letter
    "also", "area", "back", "been", "best", "call", "case", "come", "data",
    "does", "done", "each", "even", "find", "from", "give", "goes", "good",
    "have", "help", "here", "into", "just", "keep", "kind", "know", "last",
    "left", "like", "list", "long", "look", "made", "main", "make", "many",
    "more", "most", "much", "must", "need", "next", "once", "only", "open",
    "over", "part", "show", "side", "some", "such", "sure", "take", "talk",
    "tell", "test", "than", "that", "them", "then", "they", "this", "time",
    "turn", "type", "used", "uses", "very", "want", "well", "went", "were",
    "what", "when", "will", "with", "work", "your",
    # 5+ letter
    "about", "above", "after", "again", "being", "below", "between", "could",
    "doing", "during", "every", "found", "going", "having", "might", "never",
    "other", "should", "their", "there", "these", "thing", "think", "those",
    "under", "until", "using", "where", "which", "while", "would", "write",
    "yours", "really", "please", "right", "since", "still", "today",
    # query boilerplate
    "explain", "tracked", "defined",
})

# Short tokens that still carry meaning in a title.
_MEANINGFUL_SHORT_TERMS = frozenset({
    "ai", "os", "pm", "qa", "ui", "ux", "hr", "ml",
    "v1", "v2", "v3", "v4", "v5",
})


def query_words_for_title_match(query: str) -> List[str]:
    """Extract the words of a query worth matching against titles.

    More permissive than search-term extraction: keeps 3+ character words
    and whitelisted short acronyms, drops stop words, dedupes
    case-insensitively while preserving the first-seen casing and order.
    """
    seen = set()
    result: List[str] = []
    for word in _WORD_RE.findall(query or ""):
        lower = word.lower()
        if len(word) < 3 and lower not in _MEANINGFUL_SHORT_TERMS:
            continue
        if lower in _TITLE_MATCH_STOP_WORDS or lower in seen:
            continue
        seen.add(lower)
        result.append(word)
    return result


def _title_word_set(title: str, path: str) -> Dict[str, None]:
    """Lowercased words of a title plus every path segment (ordered set)."""
    words = _WORD_RE.findall(title or "")
    clean_path = _EXTENSION_RE.sub("", path or "")
    for part in clean_path.split("/"):
        words.extend(_WORD_RE.findall(part))

    word_set: Dict[str, None] = {}
    for word in words:
        for sub in word.split("_"):
            if len(sub) >= 2:
                word_set[sub.lower()] = None
    return word_set


def _expand_terms(query_terms: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for term in query_terms:
        if "-" in term:
            expanded.extend(part for part in term.split("-") if len(part) >= 2)
        else:
            expanded.append(term)
    return expanded


def edit_distance_one(a: str, b: str) -> bool:
    """True if a and b differ by exactly one substitution, insertion, or deletion.

    Only applies when at least one word is 7+ characters; shorter words
    produce too many false positives.
    """
    la, lb = len(a), len(b)
    if la < 7 and lb < 7:
        return False
    if abs(la - lb) > 1:
        return False
    if la == lb:
        diffs = 0
        for ca, cb in zip(a, b):
            if ca != cb:
                diffs += 1
                if diffs > 1:
                    return False
        return diffs == 1

    longer, shorter = (a, b) if la > lb else (b, a)
    skipped = False
    j = 0
    for ch in longer:
        if j < len(shorter) and ch == shorter[j]:
            j += 1
        elif skipped:
            return False
        else:
            skipped = True
    return True


def shares_stem(a: str, b: str) -> bool:
    """True if two words likely share a root ("invoice" / "invoicing").

    Both words need 5+ characters, lengths within 3 of each other, and a
    common prefix covering all but the last character of the shorter one.
    """
    la, lb = len(a), len(b)
    if la < 5 or lb < 5:
        return False
    if abs(la - lb) > 3:
        return False
    shorter = min(la, lb)
    common = 0
    for i in range(shorter):
        if a[i] != b[i]:
            break
        common += 1
    return common >= shorter - 1 and common >= 5


def _match_term(lower: str, word_set: Dict[str, None], consumed: set) -> str:
    """Find an unconsumed word-set entry for a query term, or ''."""
    if lower in word_set and lower not in consumed:
        return lower
    plural = lower + "s"
    if plural in word_set and plural not in consumed:
        return plural
    if len(lower) > 2 and lower.endswith("s"):
        singular = lower[:-1]
        if singular in word_set and singular not in consumed:
            return singular
    for word in word_set:
        if word in consumed:
            continue
        if edit_distance_one(lower, word) or shares_stem(lower, word):
            return word
    return ""


def title_overlap_score(query_terms: Sequence[str], title: str, path: str) -> float:
    """Bidirectional term overlap between a query and a note's title + path.

    Returns ``query_coverage * word_coverage`` in [0, 1]. Each title word
    can satisfy at most one query term. Tiny titles (<= 2 words) need at
    least 30% query coverage before they score at all.
    """
    if not query_terms:
        return 0.0

    word_set = _title_word_set(title, path)
    if not word_set:
        return 0.0

    expanded = _expand_terms(query_terms)
    if not expanded:
        return 0.0

    consumed: set = set()
    match_count = 0
    for term in expanded:
        matched = _match_term(term.lower(), word_set, consumed)
        if matched:
            consumed.add(matched)
            match_count += 1
    if match_count == 0:
        return 0.0

    query_coverage = match_count / len(expanded)
    word_coverage = match_count / len(word_set)

    if len(word_set) <= 2 and query_coverage < 0.30:
        return 0.0

    return query_coverage * word_coverage


def overlap_for_sort(query_terms: Sequence[str], title: str, path: str) -> float:
    """Overlap used for ordering.

    Title-only overlap wins when positive. Otherwise a strong title+path
    overlap (>= 0.25) counts at half weight, so notes found through their
    folder survive ranking without beating real title matches.
    """
    title_only = title_overlap_score(query_terms, title, "")
    if title_only > 0:
        return title_only
    full = title_overlap_score(query_terms, title, path)
    if full >= PATH_OVERLAP_FLOOR:
        return full * 0.5
    return 0.0


def split_note_path(path: str) -> Tuple[str, str]:
    """Split a note path into (directory, filename without extension)."""
    directory, _, base = (path or "").rpartition("/")
    return directory, _EXTENSION_RE.sub("", base)


def near_dedup(
    items: List[Tuple[SearchResult, float]], query_terms: Sequence[str]
) -> List[Tuple[SearchResult, float]]:
    """Collapse versioned copies ("Guide.md" vs "Guide v1.md") in one directory.

    Items are (result, overlap) pairs; results need ``path``, ``title`` and
    ``score``. The winner has the higher title+path overlap, then the
    higher score.
    """
    removed = set()
    keys = [split_note_path(result.path) for result, _ in items]
    for i in range(len(items)):
        if i in removed:
            continue
        dir_i, base_i = keys[i]
        base_i = base_i.lower()
        for j in range(i + 1, len(items)):
            if j in removed:
                continue
            dir_j, base_j = keys[j]
            if dir_i != dir_j:
                continue
            base_j = base_j.lower()
            if not (base_j.startswith(base_i) or base_i.startswith(base_j)):
                continue
            ri, rj = items[i][0], items[j][0]
            oi = title_overlap_score(query_terms, ri.title, ri.path)
            oj = title_overlap_score(query_terms, rj.title, rj.path)
            if oj > oi or (oj == oi and rj.score > ri.score):
                removed.add(i)
                break
            removed.add(j)
    return [item for idx, item in enumerate(items) if idx not in removed]


def _tier_key(item: Tuple[SearchResult, float]):
    result, overlap = item
    not_priority = result.content_type not in PRIORITY_TYPES
    if overlap >= HIGH_TIER_OVERLAP:
        return (0, -overlap, not_priority, -result.score)
    if overlap >= MIN_TITLE_OVERLAP:
        return (1, 0.0, not_priority, -result.score)
    # No title signal: the engine score is the better heuristic than type.
    return (2, 0.0, False, -result.score)


def rank_search_results(results: List[SearchResult], query_terms: Sequence[str]) -> List[SearchResult]:
    """Re-order search results using title overlap, noise filtering, and near-dedup.

    Returns the input unchanged when either argument is empty. The sort is
    stable, so equal keys keep their incoming order.
    """
    if not results or not query_terms:
        return results

    items = [(r, overlap_for_sort(query_terms, r.title, r.path)) for r in results]

    filtered = [item for item in items if RAW_OUTPUTS_MARKER not in item[0].path]
    if filtered:
        items = filtered

    items = near_dedup(items, query_terms)
    items = sorted(items, key=_tier_key)
    return [result for result, _ in items]

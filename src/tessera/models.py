"""
Tessera data model -- note chunks in, search results out.

NoteRecord rows are owned by the store; SearchResult / RawSearchResult are
built fresh per query and never persisted.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

SNIPPET_MAX_CHARS = 500


def parse_tags(raw: Any) -> List[str]:
    """Decode the stored JSON tag array. Malformed values yield no tags."""
    if isinstance(raw, list):
        return [str(t) for t in raw]
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(tags, list):
        return []
    return [str(t) for t in tags]


def make_snippet(text: str) -> str:
    return (text or "")[:SNIPPET_MAX_CHARS]


@dataclass
class NoteRecord:
    """One physical chunk of a logical note. chunk_id 0 is the root chunk."""

    path: str
    title: str
    text: str
    chunk_id: int = 0
    chunk_heading: str = "(full)"
    tags: List[str] = field(default_factory=list)
    domain: str = ""
    workstream: str = ""
    agent: Optional[str] = None
    modified: float = 0.0
    content_hash: str = ""
    content_type: str = "note"
    review_by: str = ""
    confidence: float = 0.5
    access_count: int = 0
    id: Optional[int] = None


@dataclass
class SearchOptions:
    top_k: int = 10
    domain: str = ""
    workstream: str = ""
    tags: List[str] = field(default_factory=list)


@dataclass
class RawSearchResult:
    """Un-normalized candidate row; distance is the engine's raw value."""

    note_id: int
    distance: float
    path: str
    title: str
    heading: str
    text: str
    domain: str
    workstream: str
    tags: List[str]
    content_type: str
    confidence: float
    modified: float


@dataclass
class SearchResult:
    path: str
    title: str
    chunk_heading: str
    score: float
    distance: float
    snippet: str
    domain: str = ""
    workstream: str = ""
    tags: List[str] = field(default_factory=list)
    content_type: str = ""
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Index status -- tagged result instead of a dict-or-report union
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoData:
    """The index holds nothing to report on."""

    reason: str = "index is empty"


@dataclass(frozen=True)
class IndexReport:
    note_count: int
    chunk_count: int
    vector_count: int
    content_types: Dict[str, int]
    vectors_available: bool
    fts_available: bool
    embedding_dim: int
    oldest_modified: float
    newest_modified: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


IndexStatus = Union[NoData, IndexReport]

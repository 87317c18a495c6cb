"""
Scoped semantic search.

Every search is bound to an owner; document ids, a course or a note set
only narrow that scope further. Chunks outside the scope are never scored,
so a better match belonging to someone else can not leak into the results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from loguru import logger

try:
    from ..config import config
    from ..errors import ValidationError
    from ..utils.embeddings import EmbeddingProvider
    from ..utils.persistence import Database
    from ..utils.vector_store import SearchHit, VectorStore
except ImportError:
    from src.config import config
    from src.errors import ValidationError
    from src.utils.embeddings import EmbeddingProvider
    from src.utils.persistence import Database
    from src.utils.vector_store import SearchHit, VectorStore


@dataclass(frozen=True)
class SearchScope:
    """
    What a search may see.

    Attributes:
        owner_id: Required; only this user's content is searched
        document_ids: Restrict to these documents
        course_id: Restrict to documents (or notes) of this course
        notes: Search the owner's notes of ``course_id`` instead of documents
    """
    owner_id: str
    document_ids: Optional[Sequence[str]] = None
    course_id: Optional[str] = None
    notes: bool = False

    @classmethod
    def for_documents(cls, owner_id: str, document_ids: Sequence[str]) -> "SearchScope":
        return cls(owner_id=owner_id, document_ids=tuple(document_ids))

    @classmethod
    def for_course(cls, owner_id: str, course_id: str) -> "SearchScope":
        return cls(owner_id=owner_id, course_id=course_id)

    @classmethod
    def for_notes(cls, owner_id: str, course_id: str) -> "SearchScope":
        return cls(owner_id=owner_id, course_id=course_id, notes=True)


@dataclass
class SearchResults:
    """Ordered hits; ``found`` is False when nothing cleared the threshold."""
    hits: List[SearchHit] = field(default_factory=list)
    threshold: float = 0.0

    @property
    def found(self) -> bool:
        return bool(self.hits)

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self):
        return iter(self.hits)

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "threshold": self.threshold,
            "results": [hit.to_dict() for hit in self.hits],
        }


class SemanticRetriever:
    """Embeds a query and ranks in-scope chunks or notes by cosine similarity."""

    def __init__(
        self,
        db: Database,
        embedder: EmbeddingProvider,
        vector_store: Optional[VectorStore] = None,
    ):
        self.db = db
        self.embedder = embedder
        self.vector_store = vector_store or VectorStore()

    def search(
        self,
        scope: SearchScope,
        query_text: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> SearchResults:
        """
        Top-``limit`` hits scoring at least ``threshold``.

        Defaults come from config: 0.5/10 for documents, 0.7/5 for notes.
        Ties are broken by chunk ordinal.
        """
        if not scope.owner_id:
            raise ValidationError("A search scope needs an owner")
        if not query_text or not query_text.strip():
            raise ValidationError("Search query must not be empty")
        if scope.notes and not scope.course_id:
            raise ValidationError("Notes search needs a course")

        if scope.notes:
            threshold = config.rag.notes_similarity_threshold if threshold is None else threshold
            limit = config.rag.notes_top_k if limit is None else limit
        else:
            threshold = config.rag.similarity_threshold if threshold is None else threshold
            limit = config.rag.top_k if limit is None else limit
        if limit < 0:
            raise ValidationError("Search limit must not be negative")

        if limit == 0 or (scope.document_ids is not None and len(scope.document_ids) == 0):
            return SearchResults(threshold=threshold)

        query_vector = self.embedder.embed(query_text.strip())

        with self.db.session_scope() as session:
            if scope.notes:
                hits = self.vector_store.search_notes(
                    session, query_vector, scope.owner_id, scope.course_id, threshold, limit
                )
            else:
                hits = self.vector_store.search_chunks(
                    session,
                    query_vector,
                    scope.owner_id,
                    threshold,
                    limit,
                    document_ids=scope.document_ids,
                    course_id=scope.course_id,
                )

        logger.debug(f"Search returned {len(hits)} hits (threshold={threshold}, limit={limit})")
        return SearchResults(hits=hits, threshold=threshold)

"""
Vector store over the relational chunk and note tables.

Features:
- Persist chunk text with nullable embedding vectors
- Write-once vectors (an embedded chunk is never overwritten)
- Scoped similarity search (owner, document set, course)
- Note vectors for the notes search
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

try:
    from ..models.records import DocumentChunk, Note, SourceDocument
    from .document_loader import TextChunk
    from .embeddings import cosine_similarities
except ImportError:
    from src.models.records import DocumentChunk, Note, SourceDocument
    from src.utils.document_loader import TextChunk
    from src.utils.embeddings import cosine_similarities


@dataclass
class SearchHit:
    """
    One retrieval result.

    Attributes:
        id: Chunk or note id
        parent_id: Document id (chunks) or course id (notes)
        ordinal: Chunk index (notes use 0)
        content: Text content
        score: Cosine similarity to the query
        title: Document filename or note title
    """
    id: str
    parent_id: str
    ordinal: int
    content: str
    score: float
    title: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "ordinal": self.ordinal,
            "content": self.content,
            "score": round(self.score, 4),
            "title": self.title,
        }


def rank(
    hits: List[SearchHit], threshold: float, limit: int
) -> List[SearchHit]:
    """Keep score >= threshold, sort by score desc then ordinal asc, truncate."""
    kept = [h for h in hits if h.score >= threshold]
    kept.sort(key=lambda h: (-h.score, h.ordinal, h.id))
    return kept[:limit]


class VectorStore:
    """
    Chunk/note vector persistence and similarity search.

    Stateless: every method takes the caller's session so writes join the
    caller's transaction.
    """

    # Chunks

    def add_chunks(self, session: Session, document_id: str, chunks: Sequence[TextChunk]) -> int:
        """Insert chunks without vectors. Ordinals come from the chunker."""
        for chunk in chunks:
            session.add(
                DocumentChunk(
                    document_id=document_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    char_count=chunk.char_count,
                    token_count=chunk.token_count,
                    start_char=chunk.start_char,
                    end_char=chunk.end_char,
                )
            )
        session.flush()
        return len(chunks)

    def delete_chunks(self, session: Session, document_id: str) -> None:
        for chunk in session.scalars(
            select(DocumentChunk).where(DocumentChunk.document_id == document_id)
        ):
            session.delete(chunk)
        session.flush()

    def pending_chunks(self, session: Session, document_id: str) -> List[DocumentChunk]:
        """Chunks still missing a vector, in ordinal order."""
        return list(
            session.scalars(
                select(DocumentChunk)
                .where(
                    DocumentChunk.document_id == document_id,
                    DocumentChunk.embedding.is_(None),
                )
                .order_by(DocumentChunk.chunk_index)
            )
        )

    def set_embedding(
        self, session: Session, chunk_id: str, vector: List[float], model_name: str
    ) -> bool:
        """
        Store a vector on a chunk that has none.

        Returns:
            False if the chunk already had a vector (left unchanged)
        """
        result = session.execute(
            update(DocumentChunk)
            .where(DocumentChunk.id == chunk_id, DocumentChunk.embedding.is_(None))
            .values(
                embedding=list(vector),
                embedding_model=model_name,
                embedding_error=None,
                embedding_attempts=DocumentChunk.embedding_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_failure(self, session: Session, chunk_id: str, error: str) -> None:
        session.execute(
            update(DocumentChunk)
            .where(DocumentChunk.id == chunk_id, DocumentChunk.embedding.is_(None))
            .values(
                embedding_error=error[:2000],
                embedding_attempts=DocumentChunk.embedding_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )

    def counts(self, session: Session, document_id: str) -> tuple[int, int]:
        """(total chunks, chunks with a vector) for a document."""
        total = session.scalar(
            select(func.count(DocumentChunk.id)).where(DocumentChunk.document_id == document_id)
        )
        embedded = session.scalar(
            select(func.count(DocumentChunk.id)).where(
                DocumentChunk.document_id == document_id,
                DocumentChunk.embedding.is_not(None),
            )
        )
        return int(total or 0), int(embedded or 0)

    def search_chunks(
        self,
        session: Session,
        query_vector: Sequence[float],
        owner_id: str,
        threshold: float,
        limit: int,
        document_ids: Optional[Sequence[str]] = None,
        course_id: Optional[str] = None,
    ) -> List[SearchHit]:
        """
        Similarity search over embedded chunks of documents owned by ``owner_id``.

        The owner filter is always applied; ``document_ids`` and ``course_id``
        narrow it further.
        """
        stmt = (
            select(DocumentChunk, SourceDocument.filename)
            .join(SourceDocument, DocumentChunk.document_id == SourceDocument.id)
            .where(
                SourceDocument.owner_id == owner_id,
                DocumentChunk.embedding.is_not(None),
            )
        )
        if document_ids is not None:
            stmt = stmt.where(SourceDocument.id.in_(list(document_ids)))
        if course_id is not None:
            stmt = stmt.where(SourceDocument.course_id == course_id)

        rows = session.execute(stmt).all()
        if not rows:
            return []

        scores = cosine_similarities(query_vector, [chunk.embedding for chunk, _ in rows])
        hits = [
            SearchHit(
                id=chunk.id,
                parent_id=chunk.document_id,
                ordinal=chunk.chunk_index,
                content=chunk.content,
                score=float(score),
                title=filename,
            )
            for (chunk, filename), score in zip(rows, scores)
        ]
        return rank(hits, threshold, limit)

    # Notes

    def search_notes(
        self,
        session: Session,
        query_vector: Sequence[float],
        owner_id: str,
        course_id: str,
        threshold: float,
        limit: int,
    ) -> List[SearchHit]:
        notes = list(
            session.scalars(
                select(Note).where(
                    Note.owner_id == owner_id,
                    Note.course_id == course_id,
                    Note.embedding.is_not(None),
                )
            )
        )
        if not notes:
            return []

        scores = cosine_similarities(query_vector, [note.embedding for note in notes])
        hits = [
            SearchHit(
                id=note.id,
                parent_id=note.course_id,
                ordinal=0,
                content=note.content,
                score=float(score),
                title=note.title,
            )
            for note, score in zip(notes, scores)
        ]
        return rank(hits, threshold, limit)

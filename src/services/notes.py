"""
User notes with write-time embeddings.

Notes belong to one owner and one course (optionally a chapter). The
embedding is computed when the note is written; if the provider is down the
note is still saved and simply does not show up in semantic search until
it is next updated.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select

try:
    from ..errors import NotFoundError, UpstreamError, ValidationError
    from ..models.records import Chapter, CourseLevel, Note
    from ..utils.embeddings import EmbeddingProvider
    from ..utils.persistence import Database
    from .progression import load_owned_course
    from .retrieval import SearchResults, SearchScope, SemanticRetriever
except ImportError:
    from src.errors import NotFoundError, UpstreamError, ValidationError
    from src.models.records import Chapter, CourseLevel, Note
    from src.utils.embeddings import EmbeddingProvider
    from src.utils.persistence import Database
    from src.services.progression import load_owned_course
    from src.services.retrieval import SearchResults, SearchScope, SemanticRetriever


def _note_dict(note: Note) -> Dict[str, Any]:
    return {
        "id": note.id,
        "courseId": note.course_id,
        "chapterId": note.chapter_id,
        "title": note.title,
        "content": note.content,
        "embedded": note.embedding is not None,
        "createdAt": note.created_at.isoformat() if note.created_at else None,
        "updatedAt": note.updated_at.isoformat() if note.updated_at else None,
    }


class NoteService:
    def __init__(self, db: Database, embedder: EmbeddingProvider, retriever: SemanticRetriever):
        self.db = db
        self.embedder = embedder
        self.retriever = retriever

    def _embed(self, title: str, content: str) -> Optional[List[float]]:
        try:
            return self.embedder.embed(f"{title}\n\n{content}")
        except UpstreamError as e:
            logger.warning(f"Note embedding failed, saving without vector: {e}")
            return None

    def create_note(
        self,
        owner_id: str,
        course_id: str,
        title: str,
        content: str,
        chapter_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not title.strip() or not content.strip():
            raise ValidationError("Note title and content are required")

        with self.db.session_scope() as session:
            load_owned_course(session, owner_id, course_id)
            if chapter_id is not None:
                chapter = session.get(Chapter, chapter_id)
                level = session.get(CourseLevel, chapter.level_id) if chapter else None
                if level is None or level.course_id != course_id:
                    raise NotFoundError(f"Chapter {chapter_id} not in course {course_id}")

        vector = self._embed(title, content)
        with self.db.session_scope() as session:
            note = Note(
                owner_id=owner_id,
                course_id=course_id,
                chapter_id=chapter_id,
                title=title.strip(),
                content=content,
                embedding=vector,
                embedding_model=self.embedder.model_name if vector is not None else None,
            )
            session.add(note)
            session.flush()
            return _note_dict(note)

    def _owned_note(self, session, owner_id: str, note_id: str) -> Note:
        note = session.get(Note, note_id)
        if note is None or note.owner_id != owner_id:
            raise NotFoundError(f"Note {note_id} not found", user_message="Note not found.")
        return note

    def update_note(
        self,
        owner_id: str,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            note = self._owned_note(session, owner_id, note_id)
            new_title = title.strip() if title is not None else note.title
            new_content = content if content is not None else note.content
        if not new_title or not new_content.strip():
            raise ValidationError("Note title and content are required")

        vector = self._embed(new_title, new_content)
        with self.db.session_scope() as session:
            note = self._owned_note(session, owner_id, note_id)
            note.title = new_title
            note.content = new_content
            note.embedding = vector
            note.embedding_model = self.embedder.model_name if vector is not None else None
            session.flush()
            return _note_dict(note)

    def delete_note(self, owner_id: str, note_id: str) -> None:
        with self.db.session_scope() as session:
            session.delete(self._owned_note(session, owner_id, note_id))

    def list_notes(self, owner_id: str, course_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.session_scope() as session:
            stmt = select(Note).where(Note.owner_id == owner_id)
            if course_id is not None:
                stmt = stmt.where(Note.course_id == course_id)
            return [_note_dict(n) for n in session.scalars(stmt.order_by(Note.updated_at.desc()))]

    def search_notes(
        self,
        owner_id: str,
        course_id: str,
        query: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> SearchResults:
        """Semantic search over the owner's notes for a course (0.7 / 5 by default)."""
        return self.retriever.search(
            SearchScope.for_notes(owner_id, course_id), query, threshold=threshold, limit=limit
        )

"""
Learning Platform - Request-level entry point.

Wires the database, storage, embedding provider and model router into the
services and exposes the operations the presentation layer calls:

1. Document registration and the staged ingestion pipeline
2. Semantic search over documents and notes
3. Quiz serving, submission and remediation
4. Level unlock / skip and chapter completion
5. Points, achievements and stats

Every operation takes a RequestContext (identity, verified at most once per
request) and a JSON-like payload. Payloads are validated against the
request schemas before any service is called. ``handle`` maps the error
taxonomy to a (status, body) pair.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import select

try:
    from .agents.assessment_generator import QuizGenerator
    from .agents.model_router import ModelRouter
    from .agents.rag_instructor import MentorContextBuilder
    from .agents.remediation_agent import RemediationAgent
    from .config import config
    from .errors import ForbiddenError, LearningCoreError, ValidationError, error_response
    from .models.records import (
        ATTEMPT_SUBMITTED,
        QUIZ_TYPE_LEVEL_TEST,
        UNLOCK_TEST_PASSED,
        Chapter,
        Course,
        CourseLevel,
        Quiz,
        QuizAttempt,
        User,
    )
    from .services.course_progress import CourseProgressTracker
    from .services.gamification import GamificationLedger
    from .services.ingestion import IngestionPipeline
    from .services.notes import NoteService
    from .services.progression import LevelProgression, load_course_level, load_owned_course
    from .services.quiz_engine import QuizEngine
    from .services.retrieval import SearchScope, SemanticRetriever
    from .utils.embeddings import EmbeddingGenerator, EmbeddingProvider
    from .utils.persistence import Database
    from .utils.progress import score_summary
    from .utils.request_context import RequestContext
    from .utils.storage import LocalStorage, StorageBackend
    from .utils.validation import (
        EMBED_CHUNKS_SCHEMA,
        NOTE_SCHEMA,
        REGISTER_DOCUMENT_SCHEMA,
        SEARCH_SCHEMA,
        SKIP_LEVEL_SCHEMA,
        SUBMIT_QUIZ_SCHEMA,
        UNLOCK_LEVEL_SCHEMA,
        require_valid,
    )
    from .utils.vector_store import VectorStore
except ImportError:
    from src.agents.assessment_generator import QuizGenerator
    from src.agents.model_router import ModelRouter
    from src.agents.rag_instructor import MentorContextBuilder
    from src.agents.remediation_agent import RemediationAgent
    from src.config import config
    from src.errors import ForbiddenError, LearningCoreError, ValidationError, error_response
    from src.models.records import (
        ATTEMPT_SUBMITTED,
        QUIZ_TYPE_LEVEL_TEST,
        UNLOCK_TEST_PASSED,
        Chapter,
        Course,
        CourseLevel,
        Quiz,
        QuizAttempt,
        User,
    )
    from src.services.course_progress import CourseProgressTracker
    from src.services.gamification import GamificationLedger
    from src.services.ingestion import IngestionPipeline
    from src.services.notes import NoteService
    from src.services.progression import LevelProgression, load_course_level, load_owned_course
    from src.services.quiz_engine import QuizEngine
    from src.services.retrieval import SearchScope, SemanticRetriever
    from src.utils.embeddings import EmbeddingGenerator, EmbeddingProvider
    from src.utils.persistence import Database
    from src.utils.progress import score_summary
    from src.utils.request_context import RequestContext
    from src.utils.storage import LocalStorage, StorageBackend
    from src.utils.validation import (
        EMBED_CHUNKS_SCHEMA,
        NOTE_SCHEMA,
        REGISTER_DOCUMENT_SCHEMA,
        SEARCH_SCHEMA,
        SKIP_LEVEL_SCHEMA,
        SUBMIT_QUIZ_SCHEMA,
        UNLOCK_LEVEL_SCHEMA,
        require_valid,
    )
    from src.utils.vector_store import VectorStore


class LearningPlatform:
    """
    Facade over every service, one instance per process.

    Args:
        db: Database (tables must exist; see ``Database.init_db``)
        storage: Storage collaborator holding uploaded files
        embedder: Embedding provider shared by ingestion, search and notes
        router: Task -> generative model map; optional when no agent is used

    Example:
        >>> platform = LearningPlatform.from_config()
        >>> ctx = RequestContext(token, verify_token)
        >>> status, body = platform.handle(platform.submit_quiz, ctx, payload)
    """

    def __init__(
        self,
        db: Database,
        storage: StorageBackend,
        embedder: EmbeddingProvider,
        router: Optional[ModelRouter] = None,
    ):
        self.db = db
        self.storage = storage
        self.embedder = embedder
        self.router = router

        vector_store = VectorStore()
        self.ledger = GamificationLedger(db)
        self.progression = LevelProgression(db)
        self.quiz_engine = QuizEngine(db, self.progression, self.ledger)
        self.course_progress = CourseProgressTracker(db, self.progression, self.ledger)
        self.pipeline = IngestionPipeline(db, storage, embedder, vector_store=vector_store)
        self.retriever = SemanticRetriever(db, embedder, vector_store=vector_store)
        self.notes = NoteService(db, embedder, self.retriever)

        self.quiz_generator = None
        self.remediation = None
        self.mentor = MentorContextBuilder(self.retriever, router)
        if router is not None:
            self.quiz_generator = QuizGenerator(db, router, self.quiz_engine, self.retriever)
            self.remediation = RemediationAgent(db, router)

    @classmethod
    def from_config(cls) -> "LearningPlatform":
        """Build the production wiring from ``config``."""
        errors = config.validate()
        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))

        db = Database()
        db.init_db()
        platform = cls(
            db=db,
            storage=LocalStorage(),
            embedder=EmbeddingGenerator(),
            router=ModelRouter.from_config(),
        )
        logger.info("Learning platform initialized")
        return platform

    # Error mapping

    @staticmethod
    def handle(operation: Callable[..., Any], *args, **kwargs) -> Tuple[int, Any]:
        """
        Run ``operation`` and return (status_code, body).

        Known errors map to their status and user-facing message; anything
        else is logged and reported as a generic 500.
        """
        try:
            return 200, operation(*args, **kwargs)
        except LearningCoreError as e:
            logger.info(f"{type(e).__name__} in {getattr(operation, '__name__', operation)}: {e}")
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error in {getattr(operation, '__name__', operation)}")
            return error_response(e)

    def _agent(self, agent):
        if agent is None:
            raise ValidationError("Generative features are not configured")
        return agent

    # Users and courses

    def ensure_user(self, user_id: str, email: Optional[str] = None, display_name: Optional[str] = None) -> str:
        with self.db.session_scope() as session:
            if session.get(User, user_id) is None:
                session.add(User(id=user_id, email=email, display_name=display_name))
        return user_id

    def create_course(self, ctx: RequestContext, title: str, levels: List[Dict[str, Any]], description: str = "") -> Dict[str, Any]:
        """
        Store a course outline: ``levels`` is an ordered list of
        ``{"name", "description"?, "chapters": [{"title", "content"?}]}``.

        Level 0 needs no unlock record; it is reachable as soon as the course exists.
        """
        user_id = ctx.require_user()
        if not title or not title.strip():
            raise ValidationError("Course title is required")
        if not levels:
            raise ValidationError("A course needs at least one level")

        with self.db.session_scope() as session:
            course = Course(owner_id=user_id, title=title.strip(), description=description)
            session.add(course)
            for level_index, level_data in enumerate(levels):
                level = CourseLevel(
                    order_index=level_index,
                    name=level_data["name"],
                    description=level_data.get("description", ""),
                )
                course.levels.append(level)
                for chapter_index, chapter_data in enumerate(level_data.get("chapters", [])):
                    level.chapters.append(
                        Chapter(
                            order_index=chapter_index,
                            title=chapter_data["title"],
                            content=chapter_data.get("content", ""),
                        )
                    )
            session.flush()
            outline = {
                "id": course.id,
                "title": course.title,
                "levels": [
                    {
                        "id": level.id,
                        "name": level.name,
                        "orderIndex": level.order_index,
                        "chapterIds": [chapter.id for chapter in level.chapters],
                    }
                    for level in course.levels
                ],
            }

        logger.info(f"Created course {outline['id']} with {len(levels)} levels")
        return outline

    # Documents

    def register_document(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(REGISTER_DOCUMENT_SCHEMA, payload)
        return self.pipeline.register(
            ctx.require_user(),
            data["filename"],
            data["fileType"],
            data["fileSize"],
            data["storagePath"],
            course_id=data.get("courseId"),
        )

    def extract_document(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(EMBED_CHUNKS_SCHEMA, payload)
        return self.pipeline.extract(data["documentId"], owner_id=ctx.require_user())

    def chunk_document(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(EMBED_CHUNKS_SCHEMA, payload)
        count = self.pipeline.chunk(data["documentId"], owner_id=ctx.require_user())
        return {"documentId": data["documentId"], "totalChunks": count}

    def embed_chunks(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST embed-chunks {documentId} -> {embeddedCount, remainingCount, totalChunks}"""
        data = require_valid(EMBED_CHUNKS_SCHEMA, payload)
        return self.pipeline.embed(data["documentId"], owner_id=ctx.require_user()).to_dict()

    def process_document(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(EMBED_CHUNKS_SCHEMA, payload)
        return self.pipeline.process(data["documentId"], owner_id=ctx.require_user())

    def retry_document(self, ctx: RequestContext, document_id: str) -> Dict[str, Any]:
        return self.pipeline.retry(ctx.require_user(), document_id)

    def document_status(self, ctx: RequestContext, document_id: str) -> Dict[str, Any]:
        return self.pipeline.status(ctx.require_user(), document_id)

    def list_documents(self, ctx: RequestContext, course_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.pipeline.list_documents(ctx.require_user(), course_id)

    def delete_document(self, ctx: RequestContext, document_id: str) -> Dict[str, Any]:
        self.pipeline.delete(ctx.require_user(), document_id)
        return {"deleted": True, "documentId": document_id}

    def link_documents(self, ctx: RequestContext, document_ids: List[str], course_id: str) -> Dict[str, Any]:
        linked = self.pipeline.link_to_course(ctx.require_user(), document_ids, course_id)
        return {"linked": linked, "courseId": course_id}

    # Search and notes

    def search_documents(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(SEARCH_SCHEMA, payload)
        user_id = ctx.require_user()
        if "documentIds" in data:
            scope = SearchScope.for_documents(user_id, data["documentIds"])
        elif "courseId" in data:
            scope = SearchScope.for_course(user_id, data["courseId"])
        else:
            scope = SearchScope(owner_id=user_id)
        return self.retriever.search(
            scope, data["query"], threshold=data.get("threshold"), limit=data.get("limit")
        ).to_dict()

    def create_note(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(NOTE_SCHEMA, payload)
        return self.notes.create_note(
            ctx.require_user(), data["courseId"], data["title"], data["content"],
            chapter_id=data.get("chapterId"),
        )

    def update_note(self, ctx: RequestContext, note_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.notes.update_note(
            ctx.require_user(), note_id, title=payload.get("title"), content=payload.get("content")
        )

    def delete_note(self, ctx: RequestContext, note_id: str) -> Dict[str, Any]:
        self.notes.delete_note(ctx.require_user(), note_id)
        return {"deleted": True, "noteId": note_id}

    def list_notes(self, ctx: RequestContext, course_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.notes.list_notes(ctx.require_user(), course_id)

    def search_notes(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = require_valid(SEARCH_SCHEMA, payload)
        if "courseId" not in data:
            raise ValidationError("courseId is required to search notes")
        return self.notes.search_notes(
            ctx.require_user(), data["courseId"], data["query"],
            threshold=data.get("threshold"), limit=data.get("limit"),
        ).to_dict()

    def ask_mentor(self, ctx: RequestContext, course_id: str, question: str) -> Dict[str, Any]:
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)
        if self.router is None:
            raise ValidationError("Generative features are not configured")
        answer = self.mentor.answer(user_id, course_id, question)
        return {"answer": answer.answer, "citations": [c.to_dict() for c in answer.citations]}

    # Quizzes

    def generate_chapter_quiz(self, ctx: RequestContext, course_id: str, chapter_id: str) -> Dict[str, Any]:
        quiz_id = self._agent(self.quiz_generator).generate_section_quiz(ctx, course_id, chapter_id)
        return self.quiz_engine.get_public_quiz(ctx, quiz_id)

    def generate_level_test(self, ctx: RequestContext, course_id: str, level_id: str) -> Dict[str, Any]:
        quiz_id = self._agent(self.quiz_generator).generate_level_test(ctx, course_id, level_id)
        return self.quiz_engine.get_public_quiz(ctx, quiz_id)

    def start_quiz(self, ctx: RequestContext, quiz_id: str) -> Dict[str, Any]:
        """Public quiz (no answers) plus a fresh attempt id."""
        quiz = self.quiz_engine.get_public_quiz(ctx, quiz_id)
        quiz["attemptId"] = self.quiz_engine.create_attempt(ctx, quiz_id)
        return quiz

    def submit_quiz(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST submit-quiz {quizId, answers} -> {score, passed, perQuestionResults}"""
        data = require_valid(SUBMIT_QUIZ_SCHEMA, payload)
        return self.quiz_engine.submit_quiz(
            ctx,
            data["quizId"],
            data["answers"],
            attempt_id=data.get("attemptId"),
            time_spent_seconds=data.get("timeSpentSeconds"),
        )

    def quiz_history(self, ctx: RequestContext, quiz_id: str) -> Dict[str, Any]:
        history = self.quiz_engine.get_attempt_history(ctx, quiz_id)
        return {
            "attempts": history,
            "bestScore": self.quiz_engine.best_score(ctx, quiz_id),
            "summary": score_summary([a["score"] for a in history if a["score"] is not None]),
        }

    def remediation_for(self, ctx: RequestContext, attempt_id: str) -> Dict[str, Any]:
        return self._agent(self.remediation).generate(ctx, attempt_id)

    def mark_remediation_viewed(self, ctx: RequestContext, attempt_id: str) -> Dict[str, Any]:
        self._agent(self.remediation).mark_viewed(ctx, attempt_id)
        return {"attemptId": attempt_id, "viewed": True}

    # Progression

    def unlock_level(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST unlock-level {levelId, attemptId, courseId} -> {nextLevelId|null, courseComplete?}

        The attempt must be the caller's own, submitted and passed, and be a
        level test for ``levelId``.
        """
        data = require_valid(UNLOCK_LEVEL_SCHEMA, payload)
        user_id = ctx.require_user()
        course_id, level_id, attempt_id = data["courseId"], data["levelId"], data["attemptId"]

        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)
            load_course_level(session, course_id, level_id)

            attempt = session.get(QuizAttempt, attempt_id)
            if attempt is None or attempt.user_id != user_id:
                raise ForbiddenError(
                    f"Attempt {attempt_id} does not belong to {user_id}",
                    user_message="This attempt cannot unlock the level.",
                )
            quiz = session.get(Quiz, attempt.quiz_id)
            if quiz.quiz_type != QUIZ_TYPE_LEVEL_TEST or quiz.level_id != level_id:
                raise ForbiddenError(
                    f"Attempt {attempt_id} is not a level test for {level_id}",
                    user_message="This attempt cannot unlock the level.",
                )
            if attempt.status != ATTEMPT_SUBMITTED or not attempt.passed:
                raise ForbiddenError(
                    f"Attempt {attempt_id} has not passed",
                    user_message="Pass the level test to unlock the next level.",
                )

        outcome = self.progression.unlock_next(
            ctx, course_id, level_id, reason=UNLOCK_TEST_PASSED, attempt_id=attempt_id
        )
        return outcome.to_dict()

    def skip_level(self, ctx: RequestContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST skip-level {levelId, courseId} -> {nextLevelId|null}"""
        data = require_valid(SKIP_LEVEL_SCHEMA, payload)
        return self.progression.skip(ctx, data["courseId"], data["levelId"]).to_dict()

    def unlocked_levels(self, ctx: RequestContext, course_id: str) -> Dict[str, Any]:
        return {"courseId": course_id, "unlockedLevelIds": self.progression.unlocked_level_ids(ctx, course_id)}

    def complete_chapter(self, ctx: RequestContext, chapter_id: str) -> Dict[str, Any]:
        return self.course_progress.complete_chapter(ctx, chapter_id)

    # Gamification

    def stats(self, ctx: RequestContext) -> Dict[str, Any]:
        return self.ledger.stats(ctx.require_user())

    def course_levels(self, ctx: RequestContext, course_id: str) -> List[Dict[str, Any]]:
        unlocked = set(self.progression.unlocked_level_ids(ctx, course_id))
        with self.db.session_scope() as session:
            levels = session.scalars(
                select(CourseLevel)
                .where(CourseLevel.course_id == course_id)
                .order_by(CourseLevel.order_index)
            )
            return [
                {
                    "id": level.id,
                    "name": level.name,
                    "orderIndex": level.order_index,
                    "unlocked": level.id in unlocked,
                    "testPassed": self.quiz_engine.has_passed_level_test(ctx, level.id),
                    "chapters": [{"id": c.id, "title": c.title} for c in level.chapters],
                }
                for level in levels
            ]

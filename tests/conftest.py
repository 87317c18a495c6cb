"""
Shared pytest fixtures and configuration for the learning-core tests.

This file is automatically discovered by pytest and provides
fixtures available to all tests: an in-memory database, a deterministic
embedding provider, a scripted generative model and seeded courses.
"""

import hashlib
import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

# Make the repository root importable for all tests
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.errors import UpstreamError  # noqa: E402
from src.models.records import Chapter, Course, CourseLevel, SourceDocument, User  # noqa: E402
from src.utils.document_loader import TextChunk  # noqa: E402
from src.utils.persistence import Database  # noqa: E402
from src.utils.request_context import RequestContext  # noqa: E402
from src.utils.vector_store import VectorStore  # noqa: E402


class FakeEmbedder:
    """
    Deterministic EmbeddingProvider.

    Vectors are seeded from a hash of the text unless ``vectors`` maps the
    exact text to a fixed vector. Any batch containing a text with a
    ``fail_on`` marker raises UpstreamError; any batch containing a
    ``slow_on`` marker sleeps ``delay`` seconds first.
    """

    def __init__(self, dimension=8, model_name="fake-embedding", fail_on=(), slow_on=(), delay=1.0, vectors=None):
        self.dimension = dimension
        self.model_name = model_name
        self.fail_on = tuple(fail_on)
        self.slow_on = tuple(slow_on)
        self.delay = delay
        self.vectors = dict(vectors or {})
        self.calls = []
        self._lock = threading.Lock()

    def vector_for(self, text):
        if text in self.vectors:
            return [float(x) for x in self.vectors[text]]
        seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
        vec = np.random.default_rng(seed).normal(size=self.dimension)
        return (vec / np.linalg.norm(vec)).tolist()

    def embed(self, text):
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        with self._lock:
            self.calls.append(list(texts))
        if any(marker in text for text in texts for marker in self.slow_on):
            time.sleep(self.delay)
        if any(marker in text for text in texts for marker in self.fail_on):
            raise UpstreamError("embedding provider rejected the batch")
        return [self.vector_for(text) for text in texts]

    @property
    def embedded_texts(self):
        return [text for batch in self.calls for text in batch]


class FakeModel:
    """
    Scripted GenerativeModel.

    ``structured`` is returned from generate_structured (or called with the
    prompts when callable); ``error`` is raised from both methods when set.
    """

    def __init__(self, text="Fake answer [1].", structured=None, error=None, model_name="fake-model"):
        self.text = text
        self.structured = structured
        self.error = error
        self.model_name = model_name
        self.calls = []

    def generate_text(self, system_prompt, user_prompt):
        self.calls.append(("text", system_prompt, user_prompt))
        if self.error:
            raise self.error
        return self.text

    def generate_structured(self, system_prompt, user_prompt, output_schema):
        self.calls.append(("structured", system_prompt, user_prompt))
        if self.error:
            raise self.error
        if callable(self.structured):
            return self.structured(system_prompt, user_prompt)
        return self.structured


def make_questions(count, correct="a"):
    """Valid stored-question dicts q1..qN with options a-d."""
    questions = []
    for i in range(1, count + 1):
        questions.append(
            {
                "id": f"q{i}",
                "type": "multiple_choice",
                "question": f"Question number {i}?",
                "options": [{"id": letter, "text": f"Option {letter}"} for letter in "abcd"],
                "correctOptionId": correct,
                "explanation": f"{correct} is right for question {i}",
                "wrongExplanations": [
                    {"optionId": letter, "explanation": f"{letter} is wrong"}
                    for letter in "abcd"
                    if letter != correct
                ],
                "relatedConcept": f"concept-{i}",
            }
        )
    return questions


def answers_with(count, correct_count, correct="a", wrong="b"):
    """Answers where the first ``correct_count`` of ``count`` questions are right."""
    return {f"q{i}": (correct if i <= correct_count else wrong) for i in range(1, count + 1)}


def make_course(db, owner_id, level_names=("Beginner", "Intermediate", "Advanced"), chapters_per_level=2):
    """Insert a course outline; returns ids as a namespace."""
    with db.session_scope() as session:
        course = Course(owner_id=owner_id, title="Python Programming", description="Test course")
        session.add(course)
        for level_index, name in enumerate(level_names):
            level = CourseLevel(order_index=level_index, name=name, description=f"{name} level")
            course.levels.append(level)
            for chapter_index in range(chapters_per_level):
                level.chapters.append(
                    Chapter(
                        order_index=chapter_index,
                        title=f"{name} chapter {chapter_index + 1}",
                        content=f"Content of {name} chapter {chapter_index + 1}.",
                    )
                )
        session.flush()
        return SimpleNamespace(
            course_id=course.id,
            level_ids=[level.id for level in course.levels],
            chapter_ids=[[chapter.id for chapter in level.chapters] for level in course.levels],
        )


def add_embedded_document(db, owner_id, chunks, course_id=None, filename="doc.txt", status="completed"):
    """
    Insert a document whose chunks already carry vectors.

    ``chunks`` is a list of (content, vector-or-None) pairs.
    """
    store = VectorStore()
    with db.session_scope() as session:
        doc = SourceDocument(
            owner_id=owner_id,
            course_id=course_id,
            filename=filename,
            file_type="txt",
            file_size=100,
            storage_path=f"{owner_id}/{filename}-{len(chunks)}-{id(chunks)}",
            processing_status=status,
        )
        session.add(doc)
        session.flush()
        store.add_chunks(
            session,
            doc.id,
            [TextChunk(content=content, chunk_index=i, start_char=0, end_char=len(content)) for i, (content, _) in enumerate(chunks)],
        )
        for chunk, (_, vector) in zip(store.pending_chunks(session, doc.id), chunks):
            if vector is not None:
                store.set_embedding(session, chunk.id, list(vector), "fake-embedding")
        return doc.id


@pytest.fixture
def db():
    """Fresh in-memory SQLite database with all tables."""
    database = Database("sqlite://")
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def users(db):
    """Two users: alice and bob."""
    with db.session_scope() as session:
        session.add_all(
            [
                User(id="alice", email="alice@example.com", display_name="Alice"),
                User(id="bob", email="bob@example.com", display_name="Bob"),
            ]
        )
    return SimpleNamespace(alice="alice", bob="bob")


@pytest.fixture
def alice_ctx(users):
    return RequestContext.for_user(users.alice)


@pytest.fixture
def bob_ctx(users):
    return RequestContext.for_user(users.bob)


@pytest.fixture
def course(db, users):
    """Three-level course (Beginner, Intermediate, Advanced) owned by alice."""
    return make_course(db, users.alice)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def storage(tmp_path):
    from src.utils.storage import LocalStorage

    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def ledger(db):
    from src.services.gamification import GamificationLedger

    return GamificationLedger(db)


@pytest.fixture
def progression(db):
    from src.services.progression import LevelProgression

    return LevelProgression(db)


@pytest.fixture
def quiz_engine(db, progression, ledger):
    from src.services.quiz_engine import QuizEngine

    return QuizEngine(db, progression, ledger, pass_threshold=70.0)


@pytest.fixture(autouse=True)
def reset_token_tracker():
    """
    Auto-fixture to reset token tracker before each test.

    This ensures tests don't interfere with each other.
    """
    from src.config import token_tracker

    token_tracker.reset()
    yield
    token_tracker.reset()


# Pytest hooks for better test output


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark tests in unit/ directory as unit tests
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Mark tests in integration/ directory as integration tests
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

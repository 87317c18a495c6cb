"""
Core services: ingestion, retrieval, notes, quizzes, progression and gamification.
"""

from .ingestion import EmbedResult, IngestionPipeline
from .retrieval import SearchResults, SearchScope, SemanticRetriever
from .notes import NoteService
from .quiz_engine import QuizEngine
from .progression import LevelProgression, UnlockOutcome, UnlockRecord
from .course_progress import CourseProgressTracker
from .gamification import GamificationLedger

__all__ = [
    "EmbedResult",
    "IngestionPipeline",
    "SearchResults",
    "SearchScope",
    "SemanticRetriever",
    "NoteService",
    "QuizEngine",
    "LevelProgression",
    "UnlockOutcome",
    "UnlockRecord",
    "CourseProgressTracker",
    "GamificationLedger",
]

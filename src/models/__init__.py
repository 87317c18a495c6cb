"""
Data models for the learning core.

- records: SQLAlchemy tables (documents, chunks, courses, quizzes, attempts,
  unlocks, points ledger, achievement grants, notes)
- quiz_session: Pure quiz scoring (no I/O)
- achievements: Achievement rule table and point rules
"""

from .records import (
    Base,
    User,
    SourceDocument,
    DocumentChunk,
    Course,
    CourseLevel,
    Chapter,
    Quiz,
    QuizAttempt,
    QuizRemediation,
    LevelUnlock,
    ChapterCompletion,
    Note,
    PointsLedgerEntry,
    AchievementGrant,
)
from .quiz_session import QuizQuestion, QuestionResult, ScoredSubmission, score_submission
from .achievements import ACHIEVEMENT_RULES, POINT_RULES, AchievementRule, StatsSnapshot

__all__ = [
    # Tables
    "Base",
    "User",
    "SourceDocument",
    "DocumentChunk",
    "Course",
    "CourseLevel",
    "Chapter",
    "Quiz",
    "QuizAttempt",
    "QuizRemediation",
    "LevelUnlock",
    "ChapterCompletion",
    "Note",
    "PointsLedgerEntry",
    "AchievementGrant",
    # Scoring
    "QuizQuestion",
    "QuestionResult",
    "ScoredSubmission",
    "score_submission",
    # Achievements
    "ACHIEVEMENT_RULES",
    "POINT_RULES",
    "AchievementRule",
    "StatsSnapshot",
]

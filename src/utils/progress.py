"""
Progress helpers for achievements and dashboards.

Provides:
- Study streak counting from activity dates
- Level/course completion derived from chapter completions
- StatsSnapshot building for achievement evaluation
- Score summary statistics for attempt history
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.orm import Session

try:
    from ..models.achievements import StatsSnapshot
    from ..models.records import (
        ATTEMPT_SUBMITTED,
        Chapter,
        ChapterCompletion,
        CourseLevel,
        QuizAttempt,
        utcnow,
    )
except ImportError:
    from src.models.achievements import StatsSnapshot
    from src.models.records import (
        ATTEMPT_SUBMITTED,
        Chapter,
        ChapterCompletion,
        CourseLevel,
        QuizAttempt,
        utcnow,
    )


def study_streak(activity: Iterable[date | datetime], today: Optional[date] = None) -> int:
    """
    Count consecutive days with activity, going back from ``today``.

    Args:
        activity: Dates or datetimes of study activity (any order, duplicates ok)
        today: Reference day (default: current UTC date)

    Returns:
        Streak length in days; 0 if there was no activity today

    Example:
        >>> from datetime import date
        >>> study_streak([date(2024, 1, 3), date(2024, 1, 2)], today=date(2024, 1, 3))
        2
    """
    today = today or utcnow().date()
    days: Set[date] = {d.date() if isinstance(d, datetime) else d for d in activity}

    streak = 0
    cursor = today
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def score_summary(scores: List[float]) -> Dict[str, float]:
    """
    Summary statistics for a list of quiz scores (0-100).

    Returns:
        Dict with mean, median, min, max, std_dev, count
    """
    if not scores:
        return {"mean": 0.0, "median": 0.0, "min": 0.0, "max": 0.0, "std_dev": 0.0, "count": 0}

    values = sorted(scores)
    n = len(values)
    mean_val = sum(values) / n
    if n % 2 == 1:
        median_val = values[n // 2]
    else:
        median_val = (values[n // 2 - 1] + values[n // 2]) / 2.0
    std_dev = math.sqrt(sum((v - mean_val) ** 2 for v in values) / n)

    return {
        "mean": round(mean_val, 2),
        "median": round(median_val, 2),
        "min": round(values[0], 2),
        "max": round(values[-1], 2),
        "std_dev": round(std_dev, 2),
        "count": n,
    }


def completed_level_ids(session: Session, user_id: str, course_id: Optional[str] = None) -> Set[str]:
    """Ids of levels (with at least one chapter) whose chapters the user has all completed."""
    totals_stmt = select(Chapter.level_id, func.count(Chapter.id)).group_by(Chapter.level_id)
    done_stmt = (
        select(ChapterCompletion.level_id, func.count(ChapterCompletion.id))
        .where(ChapterCompletion.user_id == user_id)
        .group_by(ChapterCompletion.level_id)
    )
    if course_id is not None:
        totals_stmt = totals_stmt.join(CourseLevel, Chapter.level_id == CourseLevel.id).where(
            CourseLevel.course_id == course_id
        )
        done_stmt = done_stmt.where(ChapterCompletion.course_id == course_id)

    totals = dict(session.execute(totals_stmt).all())
    done = dict(session.execute(done_stmt).all())
    return {level_id for level_id, total in totals.items() if total and done.get(level_id, 0) >= total}


def completed_course_ids(session: Session, user_id: str) -> Set[str]:
    """Courses in which the user has completed every level."""
    completed = completed_level_ids(session, user_id)
    course_ids = set(
        session.scalars(
            select(ChapterCompletion.course_id).where(ChapterCompletion.user_id == user_id).distinct()
        )
    )
    result = set()
    for course_id in course_ids:
        level_ids = set(session.scalars(select(CourseLevel.id).where(CourseLevel.course_id == course_id)))
        if level_ids and level_ids <= completed:
            result.add(course_id)
    return result


def activity_dates(session: Session, user_id: str) -> Set[date]:
    """Days on which the user completed a chapter or submitted a quiz."""
    stamps = list(
        session.scalars(select(ChapterCompletion.completed_at).where(ChapterCompletion.user_id == user_id))
    )
    stamps += list(
        session.scalars(
            select(QuizAttempt.submitted_at).where(
                QuizAttempt.user_id == user_id,
                QuizAttempt.status == ATTEMPT_SUBMITTED,
            )
        )
    )
    return {s.date() for s in stamps if s is not None}


def build_stats_snapshot(session: Session, user_id: str, today: Optional[date] = None) -> StatsSnapshot:
    """Aggregate counts used by the achievement rules."""
    chapters_completed = session.scalar(
        select(func.count(ChapterCompletion.id)).where(ChapterCompletion.user_id == user_id)
    ) or 0

    level_ids = completed_level_ids(session, user_id)
    level_names = frozenset(
        name.strip().lower()
        for name in session.scalars(select(CourseLevel.name).where(CourseLevel.id.in_(level_ids)))
    ) if level_ids else frozenset()

    submitted = (QuizAttempt.user_id == user_id, QuizAttempt.status == ATTEMPT_SUBMITTED)
    quizzes_passed = session.scalar(
        select(func.count(QuizAttempt.id)).where(*submitted, QuizAttempt.passed.is_(True))
    ) or 0
    perfect_quizzes = session.scalar(
        select(func.count(QuizAttempt.id)).where(*submitted, QuizAttempt.score >= 100.0)
    ) or 0

    return StatsSnapshot(
        chapters_completed=int(chapters_completed),
        completed_level_names=level_names,
        courses_completed=len(completed_course_ids(session, user_id)),
        quizzes_passed=int(quizzes_passed),
        perfect_quizzes=int(perfect_quizzes),
        streak_days=study_streak(activity_dates(session, user_id), today=today),
    )

"""
Chapter completion tracking.

Completing a chapter is recorded once per (user, chapter). Level and course
completion are derived from chapter completions; their point awards and
achievement checks are side effects that never fail the completion itself.
"""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

try:
    from ..errors import ForbiddenError
    from ..models.records import Chapter, ChapterCompletion, CourseLevel
    from ..utils.persistence import Database
    from ..utils.progress import completed_level_ids
    from ..utils.request_context import RequestContext
    from .gamification import GamificationLedger
    from .progression import LevelProgression
except ImportError:
    from src.errors import ForbiddenError
    from src.models.records import Chapter, ChapterCompletion, CourseLevel
    from src.utils.persistence import Database
    from src.utils.progress import completed_level_ids
    from src.utils.request_context import RequestContext
    from src.services.gamification import GamificationLedger
    from src.services.progression import LevelProgression


class CourseProgressTracker:
    def __init__(self, db: Database, progression: LevelProgression, ledger: GamificationLedger):
        self.db = db
        self.progression = progression
        self.ledger = ledger

    def complete_chapter(self, ctx: RequestContext, chapter_id: str) -> Dict[str, Any]:
        """
        Mark a chapter complete for the caller.

        Raises:
            UnauthorizedError: Anonymous caller
            NotFoundError: Chapter missing or in a course the caller does not own
            ForbiddenError: Chapter belongs to a level that is still locked
        """
        user_id = ctx.require_user()
        if not self.progression.is_chapter_reachable(ctx, chapter_id):
            raise ForbiddenError(
                f"Chapter {chapter_id} is in a locked level",
                user_message="This level is still locked.",
            )

        with self.db.session_scope() as session:
            chapter = session.get(Chapter, chapter_id)
            level = session.get(CourseLevel, chapter.level_id)
            level_id, course_id = level.id, level.course_id

        already_completed = False
        try:
            with self.db.session_scope() as session:
                session.add(
                    ChapterCompletion(
                        user_id=user_id,
                        chapter_id=chapter_id,
                        level_id=level_id,
                        course_id=course_id,
                    )
                )
        except IntegrityError:
            already_completed = True

        with self.db.session_scope() as session:
            done_levels = completed_level_ids(session, user_id, course_id=course_id)
            course_level_ids = set(
                session.scalars(select(CourseLevel.id).where(CourseLevel.course_id == course_id))
            )
        level_completed = level_id in done_levels
        course_completed = bool(course_level_ids) and course_level_ids <= done_levels

        if not already_completed:
            logger.info(f"Chapter {chapter_id} completed by {user_id}")

        self.ledger.try_award_points(user_id, "chapter_complete", chapter_id)
        if level_completed:
            self.ledger.try_award_points(user_id, "level_complete", level_id)
        if course_completed:
            self.ledger.try_award_points(user_id, "course_complete", course_id)

        new_achievements = self.ledger.try_check_achievements(user_id, "learning")
        new_achievements += self.ledger.try_check_achievements(user_id, "streak")

        return {
            "chapterId": chapter_id,
            "alreadyCompleted": already_completed,
            "levelCompleted": level_completed,
            "courseCompleted": course_completed,
            "newAchievements": new_achievements,
        }

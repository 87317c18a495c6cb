"""
Level progression state machine.

States per (user, level): locked, unlocked. Level 0 of every course is
implicitly unlocked for its owner; any other level is unlocked only once a
LevelUnlock row exists. Unlocking is idempotent: the unique (user, level)
constraint decides the winner and later calls return the existing record
unchanged.

Every public operation verifies identity and course ownership before it
reads any progression state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

try:
    from ..errors import NotFoundError, ValidationError
    from ..models.records import (
        UNLOCK_SKIPPED,
        UNLOCK_TEST_PASSED,
        Chapter,
        Course,
        CourseLevel,
        LevelUnlock,
    )
    from ..utils.persistence import Database
    from ..utils.request_context import RequestContext
except ImportError:
    from src.errors import NotFoundError, ValidationError
    from src.models.records import (
        UNLOCK_SKIPPED,
        UNLOCK_TEST_PASSED,
        Chapter,
        Course,
        CourseLevel,
        LevelUnlock,
    )
    from src.utils.persistence import Database
    from src.utils.request_context import RequestContext


UNLOCK_REASONS = (UNLOCK_TEST_PASSED, UNLOCK_SKIPPED)


@dataclass
class UnlockRecord:
    """A durable unlock, as stored."""
    user_id: str
    level_id: str
    reason: str
    attempt_id: Optional[str]
    unlocked_at: datetime
    created: bool

    @classmethod
    def from_row(cls, row: LevelUnlock, created: bool) -> "UnlockRecord":
        return cls(
            user_id=row.user_id,
            level_id=row.level_id,
            reason=row.reason,
            attempt_id=row.attempt_id,
            unlocked_at=row.unlocked_at,
            created=created,
        )


@dataclass
class UnlockOutcome:
    """
    Result of advancing past a level.

    ``next_level_id`` is None and ``course_complete`` True when the level
    had no successor.
    """
    next_level_id: Optional[str]
    next_level_name: Optional[str] = None
    course_complete: bool = False
    record: Optional[UnlockRecord] = None

    @property
    def unlocked(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict:
        if self.course_complete:
            return {"nextLevelId": None, "courseComplete": True}
        return {
            "unlocked": True,
            "nextLevelId": self.next_level_id,
            "nextLevelName": self.next_level_name,
            "courseComplete": False,
        }


def load_owned_course(session: Session, user_id: str, course_id: str) -> Course:
    """The course if ``user_id`` owns it; NotFoundError otherwise (no existence leak)."""
    course = session.get(Course, course_id)
    if course is None or course.owner_id != user_id:
        raise NotFoundError(f"Course {course_id} not found for user", user_message="Course not found.")
    return course


def load_course_level(session: Session, course_id: str, level_id: str) -> CourseLevel:
    level = session.get(CourseLevel, level_id)
    if level is None or level.course_id != course_id:
        raise NotFoundError(f"Level {level_id} not in course {course_id}", user_message="Level not found.")
    return level


class LevelProgression:
    """Per-user unlock state across the ordered levels of a course."""

    def __init__(self, db: Database):
        self.db = db

    def unlock(
        self,
        user_id: str,
        level_id: str,
        reason: str,
        attempt_id: Optional[str] = None,
    ) -> UnlockRecord:
        """
        Record that ``user_id`` may access ``level_id``.

        Idempotent: if the level is already unlocked the stored record is
        returned with its original timestamp and reason.
        """
        if reason not in UNLOCK_REASONS:
            raise ValidationError(f"Unknown unlock reason: {reason}")

        existing = self._find_unlock(user_id, level_id)
        if existing is not None:
            return existing

        try:
            with self.db.session_scope() as session:
                level = session.get(CourseLevel, level_id)
                if level is None:
                    raise NotFoundError(f"Level {level_id} not found")
                row = LevelUnlock(
                    user_id=user_id,
                    level_id=level_id,
                    course_id=level.course_id,
                    reason=reason,
                    attempt_id=attempt_id,
                )
                session.add(row)
                session.flush()
                record = UnlockRecord.from_row(row, created=True)
        except IntegrityError:
            # Lost the race: another writer unlocked it first.
            existing = self._find_unlock(user_id, level_id)
            if existing is None:
                raise
            return existing

        logger.info(f"Level {level_id} unlocked for {user_id} ({reason}, attempt={attempt_id})")
        return record

    def _find_unlock(self, user_id: str, level_id: str) -> Optional[UnlockRecord]:
        with self.db.session_scope() as session:
            row = session.scalar(
                select(LevelUnlock).where(
                    LevelUnlock.user_id == user_id, LevelUnlock.level_id == level_id
                )
            )
            return UnlockRecord.from_row(row, created=False) if row else None

    def unlock_next(
        self,
        ctx: RequestContext,
        course_id: str,
        level_id: str,
        reason: str = UNLOCK_TEST_PASSED,
        attempt_id: Optional[str] = None,
    ) -> UnlockOutcome:
        """
        Unlock the level following ``level_id``.

        Returns a course-complete outcome when ``level_id`` is the last level.
        """
        user_id = ctx.require_user()

        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)
            level = load_course_level(session, course_id, level_id)
            next_level = session.scalar(
                select(CourseLevel).where(
                    CourseLevel.course_id == course_id,
                    CourseLevel.order_index == level.order_index + 1,
                )
            )
            if next_level is None:
                logger.info(f"User {user_id} reached the end of course {course_id}")
                return UnlockOutcome(next_level_id=None, course_complete=True)
            next_id, next_name = next_level.id, next_level.name

        record = self.unlock(user_id, next_id, reason, attempt_id)
        return UnlockOutcome(next_level_id=next_id, next_level_name=next_name, record=record)

    def skip(self, ctx: RequestContext, course_id: str, level_id: str) -> UnlockOutcome:
        """Unlock the next level without a passing attempt (reason=skipped)."""
        return self.unlock_next(ctx, course_id, level_id, reason=UNLOCK_SKIPPED)

    def is_level_reachable(self, ctx: RequestContext, course_id: str, level_id: str) -> bool:
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)
            level = load_course_level(session, course_id, level_id)
            if level.order_index == 0:
                return True
            return session.scalar(
                select(LevelUnlock.id).where(
                    LevelUnlock.user_id == user_id, LevelUnlock.level_id == level_id
                )
            ) is not None

    def is_chapter_reachable(self, ctx: RequestContext, chapter_id: str) -> bool:
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            chapter = session.get(Chapter, chapter_id)
            if chapter is None:
                raise NotFoundError(f"Chapter {chapter_id} not found", user_message="Chapter not found.")
            level = session.get(CourseLevel, chapter.level_id)
            course_id, level_id = level.course_id, level.id
            course = session.get(Course, course_id)
            if course is None or course.owner_id != user_id:
                raise NotFoundError(f"Chapter {chapter_id} not visible", user_message="Chapter not found.")
        return self.is_level_reachable(ctx, course_id, level_id)

    def unlocked_level_ids(self, ctx: RequestContext, course_id: str) -> List[str]:
        """Reachable level ids in order (level 0 included)."""
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            course = load_owned_course(session, user_id, course_id)
            unlocked = set(
                session.scalars(
                    select(LevelUnlock.level_id).where(
                        LevelUnlock.user_id == user_id, LevelUnlock.course_id == course_id
                    )
                )
            )
            return [
                level.id
                for level in course.levels
                if level.order_index == 0 or level.id in unlocked
            ]

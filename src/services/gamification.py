"""
Points ledger and achievement engine.

Awards are exactly-once per (user, event type, reference): the insert runs
under the ledger's uniqueness constraint and a duplicate is treated as
already satisfied. Achievement grants are guarded the same way by the
unique (user, achievement) pair.

The ``try_*`` variants are for callers whose primary action must never fail
because of gamification; they log and swallow every error.
"""

from __future__ import annotations

from datetime import date
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

try:
    from ..models.achievements import (
        ACHIEVEMENT_BONUS_EVENT,
        ACHIEVEMENTS_BY_ID,
        AchievementRule,
        POINT_RULES,
        StatsSnapshot,
        rules_for,
    )
    from ..models.records import AchievementGrant, PointsLedgerEntry, utcnow
    from ..utils.persistence import Database
    from ..utils.progress import build_stats_snapshot
except ImportError:
    from src.models.achievements import (
        ACHIEVEMENT_BONUS_EVENT,
        ACHIEVEMENTS_BY_ID,
        AchievementRule,
        POINT_RULES,
        StatsSnapshot,
        rules_for,
    )
    from src.models.records import AchievementGrant, PointsLedgerEntry, utcnow
    from src.utils.persistence import Database
    from src.utils.progress import build_stats_snapshot


class GamificationLedger:
    """
    Append-only point awards and achievement checks.

    Args:
        db: Database
        point_rules: Event type -> points (default from config)
        today: Callable returning the reference day for streaks
    """

    def __init__(
        self,
        db: Database,
        point_rules: Optional[Dict[str, int]] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.db = db
        self.point_rules = dict(point_rules or POINT_RULES)
        self._today = today or (lambda: utcnow().date())

    def _insert_once(self, record) -> bool:
        """Insert ``record`` in its own transaction; False on a uniqueness violation."""
        try:
            with self.db.session_scope() as session:
                session.add(record)
                session.flush()
        except IntegrityError:
            return False
        return True

    def award_points(
        self,
        user_id: str,
        event_type: str,
        reference_id: str,
        points: Optional[int] = None,
    ) -> bool:
        """
        Award points for an event, at most once per (user, event_type, reference_id).

        Args:
            user_id: User receiving the points
            event_type: Key into the point rules (or any type when ``points`` is given)
            reference_id: Triggering entity (attempt id, chapter id, ...)
            points: Explicit amount overriding the rule table

        Returns:
            True if a ledger row was written, False if it already existed

        Raises:
            ValueError: If the event type has no point rule and no explicit amount
        """
        amount = points if points is not None else self.point_rules.get(event_type)
        if not amount:
            raise ValueError(f"No point rule for event type '{event_type}'")

        created = self._insert_once(
            PointsLedgerEntry(
                user_id=user_id,
                event_type=event_type,
                points=amount,
                reference_id=str(reference_id),
            )
        )
        if created:
            logger.info(f"Awarded {amount} points to {user_id} for {event_type}:{reference_id}")
        else:
            logger.debug(f"Points already awarded for {event_type}:{reference_id}")
        return created

    def _grant_once(self, user_id: str, rule: AchievementRule) -> bool:
        """
        Insert the grant and its bonus ledger row in one transaction.

        Returns False if the achievement was already granted. A bonus row left
        by an earlier run is reused, so the bonus stays exactly-once.
        """
        try:
            with self.db.session_scope() as session:
                session.add(AchievementGrant(user_id=user_id, achievement_id=rule.id))
                session.flush()
                if rule.points:
                    bonus_id = session.scalar(
                        select(PointsLedgerEntry.id).where(
                            PointsLedgerEntry.user_id == user_id,
                            PointsLedgerEntry.event_type == ACHIEVEMENT_BONUS_EVENT,
                            PointsLedgerEntry.reference_id == rule.id,
                        )
                    )
                    if bonus_id is None:
                        session.add(self._bonus_entry(user_id, rule))
                        session.flush()
        except IntegrityError:
            return False
        return True

    def _bonus_entry(self, user_id: str, rule: AchievementRule) -> PointsLedgerEntry:
        return PointsLedgerEntry(
            user_id=user_id,
            event_type=ACHIEVEMENT_BONUS_EVENT,
            points=rule.points,
            reference_id=rule.id,
        )

    def check_achievements(self, user_id: str, category: str) -> List[str]:
        """
        Grant every newly satisfied achievement in ``category``.

        Each grant commits together with its bonus points. A rule whose grant
        fails stays pending for the next check and does not stop the others.

        Returns:
            Ids of achievements granted by this call (for UI notification)
        """
        rules = rules_for(category)

        with self.db.session_scope() as session:
            earned = set(
                session.scalars(
                    select(AchievementGrant.achievement_id).where(AchievementGrant.user_id == user_id)
                )
            )
            pending = [rule for rule in rules if rule.id not in earned]
            if not pending:
                return []
            stats = build_stats_snapshot(session, user_id, today=self._today())

        newly_granted = []
        for rule in pending:
            if not rule.is_met(stats):
                continue
            try:
                granted = self._grant_once(user_id, rule)
            except Exception:
                logger.exception(f"Failed to grant achievement '{rule.id}' to {user_id}")
                continue
            if granted:
                newly_granted.append(rule.id)
                logger.info(f"Achievement '{rule.id}' granted to {user_id} (+{rule.points} points)")

        return newly_granted

    def try_award_points(self, user_id: str, event_type: str, reference_id: str, points: Optional[int] = None) -> bool:
        """award_points that never raises."""
        try:
            return self.award_points(user_id, event_type, reference_id, points=points)
        except Exception:
            logger.exception(f"Failed to award {event_type} points to {user_id}")
            return False

    def try_check_achievements(self, user_id: str, category: str) -> List[str]:
        """check_achievements that never raises."""
        try:
            return self.check_achievements(user_id, category)
        except Exception:
            logger.exception(f"Failed to check {category} achievements for {user_id}")
            return []

    # Stats

    def total_points(self, user_id: str) -> int:
        with self.db.session_scope() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(PointsLedgerEntry.points), 0)).where(
                    PointsLedgerEntry.user_id == user_id
                )
            )
        return int(total or 0)

    def earned_achievements(self, user_id: str) -> List[str]:
        with self.db.session_scope() as session:
            rows = session.scalars(
                select(AchievementGrant.achievement_id)
                .where(AchievementGrant.user_id == user_id)
                .order_by(AchievementGrant.granted_at)
            )
            return [achievement_id for achievement_id in rows if achievement_id in ACHIEVEMENTS_BY_ID]

    def stats_snapshot(self, user_id: str) -> StatsSnapshot:
        with self.db.session_scope() as session:
            return build_stats_snapshot(session, user_id, today=self._today())

    def stats(self, user_id: str) -> dict:
        """Dashboard view: total points, earned achievements and aggregate counts."""
        snapshot = self.stats_snapshot(user_id)
        return {
            "totalPoints": self.total_points(user_id),
            "earnedAchievements": self.earned_achievements(user_id),
            "chaptersCompleted": snapshot.chapters_completed,
            "quizzesPassed": snapshot.quizzes_passed,
            "perfectQuizzes": snapshot.perfect_quizzes,
            "coursesCompleted": snapshot.courses_completed,
            "streakDays": snapshot.streak_days,
        }

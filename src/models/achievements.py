"""
Achievement rules and point values.

Each achievement is a pure predicate over a StatsSnapshot, grouped by
category so callers evaluate only the rules relevant to the event that
just happened.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Tuple

try:
    from ..config import config
except ImportError:
    from src.config import config


POINT_RULES = config.gamification.point_rules

ACHIEVEMENT_BONUS_EVENT = "achievement_bonus"

CATEGORIES = ("learning", "quiz", "streak")


@dataclass(frozen=True)
class StatsSnapshot:
    """
    Aggregate counts for one user at one moment.

    Attributes:
        chapters_completed: Total chapter completions across courses
        completed_level_names: Lower-cased names of fully completed levels
        courses_completed: Courses with every level completed
        quizzes_passed: Submitted attempts with passed = True
        perfect_quizzes: Submitted attempts scoring 100
        streak_days: Consecutive study days ending today
    """
    chapters_completed: int = 0
    completed_level_names: FrozenSet[str] = field(default_factory=frozenset)
    courses_completed: int = 0
    quizzes_passed: int = 0
    perfect_quizzes: int = 0
    streak_days: int = 0


@dataclass(frozen=True)
class AchievementRule:
    id: str
    name: str
    description: str
    category: str
    points: int
    predicate: Callable[[StatsSnapshot], bool]

    def is_met(self, stats: StatsSnapshot) -> bool:
        return bool(self.predicate(stats))


def _level_rule(level: str, points: int, name: str) -> AchievementRule:
    return AchievementRule(
        id=f"level_{level}",
        name=name,
        description=f"Complete the {level.capitalize()} level",
        category="learning",
        points=points,
        predicate=lambda s: level in s.completed_level_names,
    )


ACHIEVEMENT_RULES: Tuple[AchievementRule, ...] = (
    AchievementRule(
        "first_chapter", "First step", "Complete your first chapter",
        "learning", 10, lambda s: s.chapters_completed >= 1,
    ),
    AchievementRule(
        "ten_chapters", "Diligent learner", "Complete 10 chapters",
        "learning", 50, lambda s: s.chapters_completed >= 10,
    ),
    _level_rule("beginner", 25, "Beginner mastered"),
    _level_rule("intermediate", 50, "Intermediate"),
    _level_rule("advanced", 75, "Advanced"),
    _level_rule("master", 100, "Master"),
    _level_rule("guru", 150, "Guru"),
    AchievementRule(
        "course_complete", "Graduate", "Complete a whole course",
        "learning", 200, lambda s: s.courses_completed >= 1,
    ),
    AchievementRule(
        "first_quiz", "First quiz", "Pass your first quiz",
        "quiz", 10, lambda s: s.quizzes_passed >= 1,
    ),
    AchievementRule(
        "quiz_master", "Quiz Master", "Score 100% on 10 quizzes",
        "quiz", 100, lambda s: s.perfect_quizzes >= 10,
    ),
    AchievementRule(
        "streak_7", "Consistent", "Study 7 days in a row",
        "streak", 50, lambda s: s.streak_days >= 7,
    ),
    AchievementRule(
        "streak_30", "Persistent", "Study 30 days in a row",
        "streak", 200, lambda s: s.streak_days >= 30,
    ),
)

ACHIEVEMENTS_BY_ID = {rule.id: rule for rule in ACHIEVEMENT_RULES}


def rules_for(category: str) -> List[AchievementRule]:
    """Rules in ``category``; raises ValueError for unknown categories."""
    if category not in CATEGORIES:
        raise ValueError(f"Unknown achievement category: {category}")
    return [rule for rule in ACHIEVEMENT_RULES if rule.category == category]

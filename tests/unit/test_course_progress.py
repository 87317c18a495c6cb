"""
Unit tests for chapter completion tracking.
"""

from unittest.mock import patch

import pytest

from conftest import make_course
from src.errors import ForbiddenError, NotFoundError
from src.services.course_progress import CourseProgressTracker


@pytest.fixture
def tracker(db, progression, ledger):
    return CourseProgressTracker(db, progression, ledger)


@pytest.fixture
def two_level_course(db, users):
    return make_course(db, "alice", level_names=("Beginner", "Intermediate"), chapters_per_level=1)


class TestCompleteChapter:
    def test_first_completion(self, tracker, alice_ctx, course, ledger):
        result = tracker.complete_chapter(alice_ctx, course.chapter_ids[0][0])

        assert result["alreadyCompleted"] is False
        assert result["levelCompleted"] is False
        assert result["newAchievements"] == ["first_chapter"]
        # chapter points plus the achievement bonus
        assert ledger.total_points("alice") == 10 + 10

    def test_repeat_completion_awards_nothing(self, tracker, alice_ctx, course, ledger):
        tracker.complete_chapter(alice_ctx, course.chapter_ids[0][0])
        again = tracker.complete_chapter(alice_ctx, course.chapter_ids[0][0])

        assert again["alreadyCompleted"] is True
        assert again["newAchievements"] == []
        assert ledger.total_points("alice") == 20

    def test_level_completion(self, tracker, alice_ctx, course, ledger):
        tracker.complete_chapter(alice_ctx, course.chapter_ids[0][0])
        result = tracker.complete_chapter(alice_ctx, course.chapter_ids[0][1])

        assert result["levelCompleted"] is True
        assert result["courseCompleted"] is False
        assert result["newAchievements"] == ["level_beginner"]
        # 2 chapters, level bonus, first_chapter and level_beginner achievements
        assert ledger.total_points("alice") == 2 * 10 + 50 + 10 + 25

    def test_locked_level_is_forbidden(self, tracker, alice_ctx, course):
        with pytest.raises(ForbiddenError):
            tracker.complete_chapter(alice_ctx, course.chapter_ids[1][0])

    def test_foreign_chapter(self, tracker, bob_ctx, course):
        with pytest.raises(NotFoundError):
            tracker.complete_chapter(bob_ctx, course.chapter_ids[0][0])

    def test_course_completion(self, tracker, alice_ctx, two_level_course, progression, ledger):
        course = two_level_course
        tracker.complete_chapter(alice_ctx, course.chapter_ids[0][0])
        progression.skip(alice_ctx, course.course_id, course.level_ids[0])
        result = tracker.complete_chapter(alice_ctx, course.chapter_ids[1][0])

        assert result["levelCompleted"] is True
        assert result["courseCompleted"] is True
        assert set(result["newAchievements"]) == {"level_intermediate", "course_complete"}
        assert ledger.stats("alice")["coursesCompleted"] == 1

    def test_gamification_failure_still_completes(self, tracker, alice_ctx, course, ledger):
        with patch.object(ledger, "award_points", side_effect=RuntimeError("ledger down")):
            result = tracker.complete_chapter(alice_ctx, course.chapter_ids[0][0])

        assert result["alreadyCompleted"] is False
        assert ledger.stats("alice")["chaptersCompleted"] == 1

"""
Quiz serving, attempts and server-side scoring.

Attempt lifecycle: created -> submitted. The submit transition is a
conditional UPDATE on ``status = 'created'``, so of two concurrent submits
exactly one scores the attempt; the other receives the stored result.
Correct option ids are only read inside this module and only returned as
part of a graded result.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from sqlalchemy import select, update

try:
    from ..config import config
    from ..errors import LearningCoreError, NotFoundError, ValidationError
    from ..models.quiz_session import load_questions, score_submission
    from ..models.records import (
        ATTEMPT_CREATED,
        ATTEMPT_SUBMITTED,
        QUIZ_TYPE_LEVEL_TEST,
        QUIZ_TYPE_SECTION,
        UNLOCK_TEST_PASSED,
        Chapter,
        CourseLevel,
        Quiz,
        QuizAttempt,
        utcnow,
    )
    from ..utils.persistence import Database
    from ..utils.request_context import RequestContext
    from ..utils.validation import validate_quiz_questions
    from .gamification import GamificationLedger
    from .progression import LevelProgression, load_owned_course
except ImportError:
    from src.config import config
    from src.errors import LearningCoreError, NotFoundError, ValidationError
    from src.models.quiz_session import load_questions, score_submission
    from src.models.records import (
        ATTEMPT_CREATED,
        ATTEMPT_SUBMITTED,
        QUIZ_TYPE_LEVEL_TEST,
        QUIZ_TYPE_SECTION,
        UNLOCK_TEST_PASSED,
        Chapter,
        CourseLevel,
        Quiz,
        QuizAttempt,
        utcnow,
    )
    from src.utils.persistence import Database
    from src.utils.request_context import RequestContext
    from src.utils.validation import validate_quiz_questions
    from src.services.gamification import GamificationLedger
    from src.services.progression import LevelProgression, load_owned_course


QUIZ_TYPES = (QUIZ_TYPE_SECTION, QUIZ_TYPE_LEVEL_TEST)


def _attempt_summary(attempt: QuizAttempt) -> Dict[str, Any]:
    return {
        "attemptId": attempt.id,
        "quizId": attempt.quiz_id,
        "status": attempt.status,
        "score": attempt.score,
        "passed": attempt.passed,
        "correctCount": attempt.correct_count,
        "totalQuestions": attempt.total_questions,
        "timeSpentSeconds": attempt.time_spent_seconds,
        "startedAt": attempt.started_at.isoformat() if attempt.started_at else None,
        "submittedAt": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
    }


class QuizEngine:
    """
    Serves quizzes without answers, records attempts and grades them.

    Args:
        db: Database
        progression: Unlocks the next level after a passed level test
        ledger: Points and achievements for passed quizzes
        pass_threshold: Default pass mark for quizzes without their own
            (default from config)
    """

    def __init__(
        self,
        db: Database,
        progression: LevelProgression,
        ledger: GamificationLedger,
        pass_threshold: Optional[float] = None,
    ):
        self.db = db
        self.progression = progression
        self.ledger = ledger
        self.pass_threshold = (
            config.assessment.pass_threshold if pass_threshold is None else pass_threshold
        )

    # Quizzes

    def save_quiz(
        self,
        ctx: RequestContext,
        course_id: str,
        questions: List[Dict[str, Any]],
        quiz_type: str = QUIZ_TYPE_SECTION,
        level_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
        title: Optional[str] = None,
        pass_threshold: Optional[float] = None,
    ) -> str:
        """
        Persist a validated quiz and return its id.

        Section quizzes need a chapter; level tests need a level.
        """
        user_id = ctx.require_user()
        if quiz_type not in QUIZ_TYPES:
            raise ValidationError(f"Unknown quiz type: {quiz_type}")
        if pass_threshold is not None and not (0 <= pass_threshold <= 100):
            raise ValidationError("pass_threshold must be between 0 and 100")

        result = validate_quiz_questions({"questions": questions})
        if not result:
            raise ValidationError(f"Invalid quiz questions: {result.errors[0]}")

        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)

            if quiz_type == QUIZ_TYPE_SECTION:
                if not chapter_id:
                    raise ValidationError("Section quizzes require a chapter")
                chapter = session.get(Chapter, chapter_id)
                level = session.get(CourseLevel, chapter.level_id) if chapter else None
                if level is None or level.course_id != course_id:
                    raise NotFoundError(f"Chapter {chapter_id} not in course {course_id}")
                level_id = level.id
            else:
                if not level_id:
                    raise ValidationError("Level tests require a level")
                level = session.get(CourseLevel, level_id)
                if level is None or level.course_id != course_id:
                    raise NotFoundError(f"Level {level_id} not in course {course_id}")

            quiz = Quiz(
                course_id=course_id,
                level_id=level_id,
                chapter_id=chapter_id if quiz_type == QUIZ_TYPE_SECTION else None,
                quiz_type=quiz_type,
                title=title or ("Level test" if quiz_type == QUIZ_TYPE_LEVEL_TEST else "Chapter quiz"),
                questions=result.data["questions"],
                pass_threshold=pass_threshold,
            )
            session.add(quiz)
            session.flush()
            quiz_id = quiz.id

        logger.info(f"Saved {quiz_type} quiz {quiz_id} with {len(questions)} questions")
        return quiz_id

    def _load_visible_quiz(self, session, user_id: str, quiz_id: str) -> Quiz:
        quiz = session.get(Quiz, quiz_id)
        if quiz is None:
            raise NotFoundError(f"Quiz {quiz_id} not found", user_message="Quiz not found.")
        try:
            load_owned_course(session, user_id, quiz.course_id)
        except NotFoundError:
            raise NotFoundError(f"Quiz {quiz_id} not visible", user_message="Quiz not found.")
        return quiz

    def get_public_quiz(self, ctx: RequestContext, quiz_id: str) -> Dict[str, Any]:
        """Quiz as shown before grading: options only, no answers or explanations."""
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            quiz = self._load_visible_quiz(session, user_id, quiz_id)
            return {
                "id": quiz.id,
                "title": quiz.title,
                "quizType": quiz.quiz_type,
                "courseId": quiz.course_id,
                "levelId": quiz.level_id,
                "chapterId": quiz.chapter_id,
                "passThreshold": self._threshold_for(quiz),
                "questions": [q.public_view() for q in load_questions(quiz.questions)],
            }

    def _threshold_for(self, quiz: Quiz) -> float:
        return quiz.pass_threshold if quiz.pass_threshold is not None else self.pass_threshold

    # Attempts

    def create_attempt(self, ctx: RequestContext, quiz_id: str) -> str:
        """
        Open a new attempt.

        Raises:
            NotFoundError: If the quiz does not exist or is not visible
        """
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            self._load_visible_quiz(session, user_id, quiz_id)
            attempt = QuizAttempt(quiz_id=quiz_id, user_id=user_id, status=ATTEMPT_CREATED)
            session.add(attempt)
            session.flush()
            return attempt.id

    def get_attempt(self, ctx: RequestContext, attempt_id: str) -> QuizAttempt:
        """The caller's attempt (detached); NotFoundError for anyone else's."""
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            attempt = session.get(QuizAttempt, attempt_id)
            if attempt is None or attempt.user_id != user_id:
                raise NotFoundError(f"Attempt {attempt_id} not found", user_message="Attempt not found.")
            return attempt

    def submit(
        self,
        ctx: RequestContext,
        attempt_id: str,
        answers: Mapping[str, str],
        time_spent_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Grade an attempt.

        Returns:
            Dict with score, passed and per-question results. A repeated
            submit of an already graded attempt returns the stored result
            without re-scoring or re-awarding.

        Raises:
            NotFoundError: Attempt missing or not the caller's
            ValidationError: Answers reference questions outside the quiz
        """
        user_id = ctx.require_user()

        with self.db.session_scope() as session:
            attempt = session.get(QuizAttempt, attempt_id)
            if attempt is None or attempt.user_id != user_id:
                raise NotFoundError(f"Attempt {attempt_id} not found", user_message="Attempt not found.")
            if attempt.status == ATTEMPT_SUBMITTED:
                return self._stored_result(attempt, already_submitted=True)

            quiz = session.get(Quiz, attempt.quiz_id)
            quiz_type, course_id, level_id = quiz.quiz_type, quiz.course_id, quiz.level_id
            threshold = self._threshold_for(quiz)

            # Scoring errors propagate before anything is written.
            scored = score_submission(load_questions(quiz.questions), dict(answers), threshold)

            result = session.execute(
                update(QuizAttempt)
                .where(QuizAttempt.id == attempt_id, QuizAttempt.status == ATTEMPT_CREATED)
                .values(
                    status=ATTEMPT_SUBMITTED,
                    answers=dict(answers),
                    question_results=[r.to_dict() for r in scored.results],
                    score=scored.score,
                    passed=scored.passed,
                    correct_count=scored.correct_count,
                    total_questions=scored.total_questions,
                    time_spent_seconds=time_spent_seconds,
                    submitted_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1

        if not won:
            logger.info(f"Attempt {attempt_id} was already submitted; returning stored result")
            with self.db.session_scope() as session:
                return self._stored_result(session.get(QuizAttempt, attempt_id), already_submitted=True)

        logger.info(
            f"Attempt {attempt_id} scored {scored.score} "
            f"({scored.correct_count}/{scored.total_questions}, passed={scored.passed})"
        )

        response = scored.to_dict()
        response.update({"attemptId": attempt_id, "passThreshold": threshold, "alreadySubmitted": False})

        if quiz_type == QUIZ_TYPE_LEVEL_TEST and scored.passed:
            response.update(self._unlock_after_test(ctx, course_id, level_id, attempt_id))

        response["newAchievements"] = self._reward(user_id, attempt_id, scored)
        return response

    def submit_quiz(
        self,
        ctx: RequestContext,
        quiz_id: str,
        answers: Mapping[str, str],
        attempt_id: Optional[str] = None,
        time_spent_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create an attempt (unless one is given) and submit it in one call."""
        if attempt_id is None:
            attempt_id = self.create_attempt(ctx, quiz_id)
        else:
            attempt = self.get_attempt(ctx, attempt_id)
            if attempt.quiz_id != quiz_id:
                raise ValidationError("Attempt does not belong to this quiz")
        return self.submit(ctx, attempt_id, answers, time_spent_seconds=time_spent_seconds)

    def _stored_result(self, attempt: QuizAttempt, already_submitted: bool) -> Dict[str, Any]:
        return {
            "attemptId": attempt.id,
            "score": attempt.score,
            "passed": attempt.passed,
            "correctCount": attempt.correct_count,
            "totalQuestions": attempt.total_questions,
            "perQuestionResults": list(attempt.question_results or []),
            "alreadySubmitted": already_submitted,
            "newAchievements": [],
        }

    def _unlock_after_test(
        self, ctx: RequestContext, course_id: str, level_id: str, attempt_id: str
    ) -> Dict[str, Any]:
        # The grade is already committed; a failed unlock can be retried via unlock-level.
        try:
            outcome = self.progression.unlock_next(
                ctx, course_id, level_id, reason=UNLOCK_TEST_PASSED, attempt_id=attempt_id
            )
        except LearningCoreError:
            logger.exception(f"Unlock after level test {attempt_id} failed")
            return {"nextLevelId": None, "courseComplete": False, "unlockFailed": True}
        return {"nextLevelId": outcome.next_level_id, "courseComplete": outcome.course_complete}

    def _reward(self, user_id: str, attempt_id: str, scored) -> List[str]:
        if not scored.passed:
            return []
        self.ledger.try_award_points(user_id, "quiz_passed", attempt_id)
        if scored.is_perfect:
            self.ledger.try_award_points(user_id, "quiz_perfect", attempt_id)
        new_achievements = self.ledger.try_check_achievements(user_id, "quiz")
        new_achievements += self.ledger.try_check_achievements(user_id, "streak")
        return new_achievements

    # History

    def get_attempt_history(self, ctx: RequestContext, quiz_id: str) -> List[Dict[str, Any]]:
        """Caller's submitted attempts for a quiz, newest first."""
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            self._load_visible_quiz(session, user_id, quiz_id)
            attempts = session.scalars(
                select(QuizAttempt)
                .where(
                    QuizAttempt.user_id == user_id,
                    QuizAttempt.quiz_id == quiz_id,
                    QuizAttempt.status == ATTEMPT_SUBMITTED,
                )
                .order_by(QuizAttempt.submitted_at.desc())
            )
            return [_attempt_summary(a) for a in attempts]

    def best_score(self, ctx: RequestContext, quiz_id: str) -> Optional[float]:
        scores = [a["score"] for a in self.get_attempt_history(ctx, quiz_id) if a["score"] is not None]
        return max(scores) if scores else None

    def has_passed_level_test(self, ctx: RequestContext, level_id: str) -> bool:
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            passed = session.scalar(
                select(QuizAttempt.id)
                .join(Quiz, QuizAttempt.quiz_id == Quiz.id)
                .where(
                    QuizAttempt.user_id == user_id,
                    QuizAttempt.passed.is_(True),
                    Quiz.level_id == level_id,
                    Quiz.quiz_type == QUIZ_TYPE_LEVEL_TEST,
                )
                .limit(1)
            )
            return passed is not None

"""
Remediation Agent - Explains what went wrong in a failed quiz attempt.

Builds weak concepts, practice hints and review suggestions from the
attempt's wrong answers. The content is stored separately from the attempt,
which stays immutable.
"""

from __future__ import annotations

from typing import Any, Dict, List

from langchain_core.prompts import PromptTemplate
from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

try:
    from ..errors import NotFoundError, ValidationError
    from ..models.quiz_session import load_questions
    from ..models.records import ATTEMPT_SUBMITTED, Quiz, QuizAttempt, QuizRemediation
    from ..utils.persistence import Database
    from ..utils.request_context import RequestContext
    from ..utils.validation import REMEDIATION_SCHEMA
    from .model_router import ModelRouter
except ImportError:
    from src.errors import NotFoundError, ValidationError
    from src.models.quiz_session import load_questions
    from src.models.records import ATTEMPT_SUBMITTED, Quiz, QuizAttempt, QuizRemediation
    from src.utils.persistence import Database
    from src.utils.request_context import RequestContext
    from src.utils.validation import REMEDIATION_SCHEMA
    from src.agents.model_router import ModelRouter


SYSTEM_PROMPT = (
    "You are a patient tutor. Given the questions a learner got wrong, identify the "
    "underlying concepts they misunderstand and explain them simply, with a short example each."
)

REMEDIATION_PROMPT = PromptTemplate(
    input_variables=["quiz_title", "score", "mistakes"],
    template="""The learner scored {score}% on "{quiz_title}".

**Questions answered incorrectly:**
{mistakes}

**Instructions:**
1. weakConcepts: one entry per misunderstood concept with explanation and example
2. practiceHints: 2-4 concrete things to practise
3. suggestedReview: topics or chapter titles worth re-reading""",
)


def describe_mistakes(questions, results: List[Dict[str, Any]]) -> str:
    by_id = {q.id: q for q in questions}
    lines = []
    for result in results:
        if result.get("isCorrect"):
            continue
        question = by_id.get(result.get("questionId"))
        if question is None:
            continue
        options = {o["id"]: o["text"] for o in question.options}
        chosen = options.get(result.get("selectedOptionId"), "(no answer)")
        lines.append(
            f"- Q: {question.question}\n"
            f"  Chosen: {chosen}\n"
            f"  Correct: {options.get(question.correct_option_id, '')}\n"
            f"  Concept: {question.related_concept or 'n/a'}"
        )
    return "\n".join(lines)


class RemediationAgent:
    def __init__(self, db: Database, router: ModelRouter):
        self.db = db
        self.model = router.for_task("remediation")

    def _owned_attempt(self, session, user_id: str, attempt_id: str) -> QuizAttempt:
        attempt = session.get(QuizAttempt, attempt_id)
        if attempt is None or attempt.user_id != user_id:
            raise NotFoundError(f"Attempt {attempt_id} not found", user_message="Attempt not found.")
        return attempt

    def _existing(self, attempt_id: str):
        with self.db.session_scope() as session:
            row = session.scalar(select(QuizRemediation).where(QuizRemediation.attempt_id == attempt_id))
            return dict(row.content, viewed=row.viewed) if row else None

    def generate(self, ctx: RequestContext, attempt_id: str) -> Dict[str, Any]:
        """
        Remediation content for a failed attempt, generated once and then reused.

        Raises:
            NotFoundError: Attempt missing or not the caller's
            ValidationError: Attempt not submitted yet, or passed
            UpstreamError: Model call failed
        """
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            attempt = self._owned_attempt(session, user_id, attempt_id)
            if attempt.status != ATTEMPT_SUBMITTED:
                raise ValidationError("Submit the quiz before requesting remediation")
            if attempt.passed:
                raise ValidationError("Remediation is only available for failed attempts")
            quiz = session.get(Quiz, attempt.quiz_id)
            questions = load_questions(quiz.questions)
            results = list(attempt.question_results or [])
            score, quiz_title = attempt.score, quiz.title

        existing = self._existing(attempt_id)
        if existing is not None:
            return existing

        prompt = REMEDIATION_PROMPT.format(
            quiz_title=quiz_title, score=score, mistakes=describe_mistakes(questions, results)
        )
        content = self.model.generate_structured(SYSTEM_PROMPT, prompt, REMEDIATION_SCHEMA)

        try:
            with self.db.session_scope() as session:
                session.add(QuizRemediation(attempt_id=attempt_id, user_id=user_id, content=content))
        except IntegrityError:
            return self._existing(attempt_id)

        logger.info(f"Remediation stored for attempt {attempt_id}")
        return dict(content, viewed=False)

    def mark_viewed(self, ctx: RequestContext, attempt_id: str) -> None:
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            self._owned_attempt(session, user_id, attempt_id)
            row = session.scalar(select(QuizRemediation).where(QuizRemediation.attempt_id == attempt_id))
            if row is None:
                raise NotFoundError(f"No remediation for attempt {attempt_id}")
            row.viewed = True

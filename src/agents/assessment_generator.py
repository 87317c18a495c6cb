"""
Quiz Generator Agent - Creates chapter quizzes and level tests from course content.

Uses the router's quiz model through ``generate_structured``; the output is
validated (schema plus semantic checks) before it is stored. Answer
correctness is never decided by the model at grading time, only here at
authoring time.
"""

from __future__ import annotations

import string
from typing import Any, Dict, List, Optional

from langchain_core.prompts import PromptTemplate
from loguru import logger

try:
    from ..config import config
    from ..errors import NotFoundError, UpstreamError
    from ..models.records import QUIZ_TYPE_LEVEL_TEST, QUIZ_TYPE_SECTION, Chapter, CourseLevel
    from ..services.progression import load_owned_course
    from ..services.quiz_engine import QuizEngine
    from ..services.retrieval import SearchScope, SemanticRetriever
    from ..utils.persistence import Database
    from ..utils.request_context import RequestContext
    from ..utils.validation import QUIZ_QUESTIONS_SCHEMA, validate_quiz_questions
    from .model_router import ModelRouter
except ImportError:
    from src.config import config
    from src.errors import NotFoundError, UpstreamError
    from src.models.records import QUIZ_TYPE_LEVEL_TEST, QUIZ_TYPE_SECTION, Chapter, CourseLevel
    from src.services.progression import load_owned_course
    from src.services.quiz_engine import QuizEngine
    from src.services.retrieval import SearchScope, SemanticRetriever
    from src.utils.persistence import Database
    from src.utils.request_context import RequestContext
    from src.utils.validation import QUIZ_QUESTIONS_SCHEMA, validate_quiz_questions
    from src.agents.model_router import ModelRouter


SYSTEM_PROMPT = (
    "You are an expert educational assessment designer. You write clear, unambiguous "
    "multiple-choice and true/false questions that test understanding, not trivia. "
    "Every question has exactly one correct option and an explanation for each wrong option."
)

QUIZ_PROMPT = PromptTemplate(
    input_variables=["scope", "title", "content", "num_questions", "sources"],
    template="""Write {num_questions} questions for a {scope} titled "{title}".

**Material:**
{content}

**Related source excerpts:**
{sources}

**Requirements:**
1. Mix multiple_choice (3-4 options) and true_false (2 options) questions
2. Spread bloomLevel across remember/understand/apply/analyze
3. Give each question a relatedConcept naming the concept it tests
4. explanation says why the correct option is right
5. wrongExplanations covers every other option""",
)


def normalize_ids(questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Re-number questions q1..qN and options a, b, c, d.

    Model output often reuses option ids across questions or uses the
    option text as id; correctOptionId and wrongExplanations are remapped.
    """
    normalized = []
    for i, question in enumerate(questions, start=1):
        mapping = {}
        options = []
        for letter, option in zip(string.ascii_lowercase, question.get("options", [])):
            mapping[option.get("id")] = letter
            options.append({"id": letter, "text": option.get("text", "")})

        q = dict(question)
        q["id"] = f"q{i}"
        q["options"] = options
        q["correctOptionId"] = mapping.get(question.get("correctOptionId"), question.get("correctOptionId"))
        q["wrongExplanations"] = [
            {"optionId": mapping.get(w.get("optionId"), w.get("optionId")), "explanation": w.get("explanation", "")}
            for w in question.get("wrongExplanations", []) or []
        ]
        normalized.append(q)
    return normalized


class QuizGenerator:
    """
    Generates and stores quizzes.

    Args:
        db: Database
        router: Model router (uses the ``quiz`` task)
        quiz_engine: Persists the validated quiz
        retriever: Optional source-document retrieval for grounding
    """

    def __init__(
        self,
        db: Database,
        router: ModelRouter,
        quiz_engine: QuizEngine,
        retriever: Optional[SemanticRetriever] = None,
    ):
        self.db = db
        self.model = router.for_task("quiz")
        self.quiz_engine = quiz_engine
        self.retriever = retriever

    def _sources(self, user_id: str, course_id: str, query: str) -> str:
        if self.retriever is None:
            return "None"
        try:
            results = self.retriever.search(SearchScope.for_course(user_id, course_id), query, limit=5)
        except UpstreamError as e:
            logger.warning(f"Source retrieval for quiz generation failed: {e}")
            return "None"
        if not results.found:
            return "None"
        return "\n\n".join(f"[{hit.title}] {hit.content}" for hit in results)

    def _generate(self, scope: str, title: str, content: str, num_questions: int, sources: str) -> List[Dict[str, Any]]:
        prompt = QUIZ_PROMPT.format(
            scope=scope,
            title=title,
            content=content or "(no chapter text available)",
            num_questions=num_questions,
            sources=sources,
        )
        data = self.model.generate_structured(SYSTEM_PROMPT, prompt, QUIZ_QUESTIONS_SCHEMA)

        questions = normalize_ids(data.get("questions", []))
        result = validate_quiz_questions({"questions": questions})
        if not result:
            raise UpstreamError(f"Generated quiz failed validation: {result.errors[0]}")
        return result.data["questions"]

    def generate_section_quiz(
        self,
        ctx: RequestContext,
        course_id: str,
        chapter_id: str,
        num_questions: Optional[int] = None,
    ) -> str:
        """Generate and store a chapter quiz; returns the quiz id."""
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)
            chapter = session.get(Chapter, chapter_id)
            level = session.get(CourseLevel, chapter.level_id) if chapter else None
            if level is None or level.course_id != course_id:
                raise NotFoundError(f"Chapter {chapter_id} not in course {course_id}")
            title, content = chapter.title, chapter.content or ""

        questions = self._generate(
            "chapter quiz",
            title,
            content,
            num_questions or config.assessment.questions_per_quiz,
            self._sources(user_id, course_id, title),
        )
        return self.quiz_engine.save_quiz(
            ctx, course_id, questions, quiz_type=QUIZ_TYPE_SECTION, chapter_id=chapter_id, title=f"Quiz: {title}"
        )

    def generate_level_test(
        self,
        ctx: RequestContext,
        course_id: str,
        level_id: str,
        num_questions: Optional[int] = None,
    ) -> str:
        """Generate and store a level test covering every chapter of the level."""
        user_id = ctx.require_user()
        with self.db.session_scope() as session:
            load_owned_course(session, user_id, course_id)
            level = session.get(CourseLevel, level_id)
            if level is None or level.course_id != course_id:
                raise NotFoundError(f"Level {level_id} not in course {course_id}")
            name = level.name
            content = "\n\n".join(
                f"## {chapter.title}\n{chapter.content or ''}" for chapter in level.chapters
            )

        questions = self._generate(
            "level test",
            name,
            content,
            num_questions or config.assessment.level_test_questions,
            self._sources(user_id, course_id, name),
        )
        return self.quiz_engine.save_quiz(
            ctx, course_id, questions, quiz_type=QUIZ_TYPE_LEVEL_TEST, level_id=level_id, title=f"Level test: {name}"
        )

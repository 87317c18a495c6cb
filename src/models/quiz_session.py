"""
Quiz questions and server-side scoring.

Pure logic with no database access: the QuizEngine loads the stored
questions, calls ``score_submission`` and persists the result. Correct
option ids only ever leave this module inside a graded result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

try:
    from ..errors import ValidationError
except ImportError:
    from src.errors import ValidationError


@dataclass
class QuizQuestion:
    """
    A stored multiple-choice or true/false question.

    Attributes:
        id: Question identifier (unique within the quiz)
        type: multiple_choice or true_false
        question: Question text
        options: List of {"id", "text"} dicts
        correct_option_id: Id of the correct option (server-side only)
        explanation: Why the correct option is correct
        wrong_explanations: Option id -> why that option is wrong
        bloom_level: Optional cognitive level tag
        difficulty: Optional difficulty tag
        related_concept: Concept the question exercises
    """
    id: str
    type: str
    question: str
    options: List[Dict[str, str]]
    correct_option_id: str
    explanation: str
    wrong_explanations: Dict[str, str] = field(default_factory=dict)
    bloom_level: Optional[str] = None
    difficulty: Optional[str] = None
    related_concept: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuizQuestion":
        wrong = {
            w["optionId"]: w.get("explanation", "")
            for w in data.get("wrongExplanations", []) or []
        }
        return cls(
            id=data["id"],
            type=data.get("type", "multiple_choice"),
            question=data["question"],
            options=[{"id": o["id"], "text": o["text"]} for o in data["options"]],
            correct_option_id=data["correctOptionId"],
            explanation=data.get("explanation", ""),
            wrong_explanations=wrong,
            bloom_level=data.get("bloomLevel"),
            difficulty=data.get("difficulty"),
            related_concept=data.get("relatedConcept"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Full stored form (includes the answer)."""
        data = {
            "id": self.id,
            "type": self.type,
            "question": self.question,
            "options": [dict(o) for o in self.options],
            "correctOptionId": self.correct_option_id,
            "explanation": self.explanation,
            "wrongExplanations": [
                {"optionId": k, "explanation": v} for k, v in self.wrong_explanations.items()
            ],
        }
        for key, value in (
            ("bloomLevel", self.bloom_level),
            ("difficulty", self.difficulty),
            ("relatedConcept", self.related_concept),
        ):
            if value is not None:
                data[key] = value
        return data

    def public_view(self) -> Dict[str, Any]:
        """What the presentation layer may see before grading: no answer, no explanations."""
        return {
            "id": self.id,
            "type": self.type,
            "question": self.question,
            "options": [{"id": o["id"], "text": o["text"]} for o in self.options],
        }


@dataclass
class QuestionResult:
    """Per-question grading outcome returned after submission."""
    question_id: str
    selected_option_id: Optional[str]
    correct_option_id: str
    is_correct: bool
    explanation: str
    wrong_explanation: Optional[str] = None
    related_concept: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questionId": self.question_id,
            "selectedOptionId": self.selected_option_id,
            "correctOptionId": self.correct_option_id,
            "isCorrect": self.is_correct,
            "explanation": self.explanation,
            "wrongExplanation": self.wrong_explanation,
            "relatedConcept": self.related_concept,
        }


@dataclass
class ScoredSubmission:
    score: float
    passed: bool
    correct_count: int
    total_questions: int
    results: List[QuestionResult]

    @property
    def is_perfect(self) -> bool:
        return self.total_questions > 0 and self.correct_count == self.total_questions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "passed": self.passed,
            "correctCount": self.correct_count,
            "totalQuestions": self.total_questions,
            "perQuestionResults": [r.to_dict() for r in self.results],
        }


def load_questions(raw: List[Mapping[str, Any]]) -> List[QuizQuestion]:
    return [QuizQuestion.from_dict(q) for q in raw]


def score_submission(
    questions: List[QuizQuestion],
    answers: Mapping[str, str],
    pass_threshold: float,
) -> ScoredSubmission:
    """
    Grade a submission.

    score = correct / total * 100, rounded to one decimal;
    passed = score >= pass_threshold. Unanswered questions count as wrong.

    Raises:
        ValidationError: If ``answers`` references a question not in the quiz
        ValueError: If the quiz has no questions
    """
    if not questions:
        raise ValueError("Cannot score a quiz with no questions")

    known = {q.id for q in questions}
    unknown = [qid for qid in answers if qid not in known]
    if unknown:
        raise ValidationError(f"Answers reference unknown questions: {', '.join(sorted(unknown))}")

    results = []
    correct = 0
    for question in questions:
        selected = answers.get(question.id)
        is_correct = selected is not None and selected == question.correct_option_id
        if is_correct:
            correct += 1
        results.append(
            QuestionResult(
                question_id=question.id,
                selected_option_id=selected,
                correct_option_id=question.correct_option_id,
                is_correct=is_correct,
                explanation=question.explanation,
                wrong_explanation=None if is_correct else question.wrong_explanations.get(selected),
                related_concept=question.related_concept,
            )
        )

    total = len(questions)
    score = round(correct / total * 100, 1)
    return ScoredSubmission(
        score=score,
        passed=score >= pass_threshold,
        correct_count=correct,
        total_questions=total,
        results=results,
    )

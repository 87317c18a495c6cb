"""
Unit tests for quiz questions and server-side scoring.
"""

import unittest

from conftest import answers_with, make_questions
from src.errors import ValidationError
from src.models.quiz_session import QuizQuestion, load_questions, score_submission


class TestQuizQuestion(unittest.TestCase):
    """Test QuizQuestion dataclass."""

    def setUp(self):
        self.raw = make_questions(1, correct="c")[0]
        self.raw["bloomLevel"] = "apply"
        self.question = QuizQuestion.from_dict(self.raw)

    def test_from_dict(self):
        self.assertEqual(self.question.correct_option_id, "c")
        self.assertEqual(self.question.wrong_explanations["a"], "a is wrong")
        self.assertEqual(self.question.bloom_level, "apply")
        self.assertIsNone(self.question.difficulty)

    def test_public_view_hides_answer(self):
        public = self.question.public_view()
        self.assertEqual(set(public), {"id", "type", "question", "options"})
        self.assertNotIn("correctOptionId", str(public))
        self.assertNotIn("is right", str(public))

    def test_to_dict_keeps_stored_form(self):
        stored = self.question.to_dict()
        self.assertEqual(stored["correctOptionId"], "c")
        self.assertEqual(stored["bloomLevel"], "apply")
        self.assertNotIn("difficulty", stored)
        self.assertEqual(len(stored["wrongExplanations"]), 3)


class TestScoreSubmission(unittest.TestCase):
    """Test score_submission()."""

    def setUp(self):
        self.questions = load_questions(make_questions(10))

    def test_threshold_is_inclusive(self):
        scored = score_submission(self.questions, answers_with(10, 7), pass_threshold=70.0)
        self.assertEqual(scored.score, 70.0)
        self.assertTrue(scored.passed)
        self.assertEqual(scored.correct_count, 7)

    def test_below_threshold_fails(self):
        scored = score_submission(self.questions, answers_with(10, 6), pass_threshold=70.0)
        self.assertEqual(scored.score, 60.0)
        self.assertFalse(scored.passed)

    def test_custom_threshold(self):
        scored = score_submission(self.questions, answers_with(10, 7), pass_threshold=80.0)
        self.assertFalse(scored.passed)

    def test_score_rounded_to_one_decimal(self):
        questions = load_questions(make_questions(3))
        scored = score_submission(questions, answers_with(3, 2), pass_threshold=70.0)
        self.assertEqual(scored.score, 66.7)

    def test_unanswered_counts_as_wrong(self):
        scored = score_submission(self.questions, {"q1": "a"}, pass_threshold=70.0)
        self.assertEqual(scored.score, 10.0)
        self.assertEqual(scored.total_questions, 10)
        self.assertIsNone(scored.results[1].selected_option_id)
        self.assertFalse(scored.results[1].is_correct)

    def test_per_question_feedback(self):
        scored = score_submission(self.questions, answers_with(10, 1, wrong="d"), pass_threshold=70.0)
        right, wrong = scored.results[0], scored.results[1]

        self.assertTrue(right.is_correct)
        self.assertIsNone(right.wrong_explanation)
        self.assertFalse(wrong.is_correct)
        self.assertEqual(wrong.wrong_explanation, "d is wrong")
        self.assertEqual(wrong.correct_option_id, "a")
        self.assertEqual(wrong.related_concept, "concept-2")

    def test_perfect_score(self):
        scored = score_submission(self.questions, answers_with(10, 10), pass_threshold=70.0)
        self.assertTrue(scored.is_perfect)
        self.assertEqual(scored.to_dict()["score"], 100.0)

    def test_unknown_question_rejected(self):
        answers = answers_with(10, 10)
        answers["q99"] = "a"
        with self.assertRaises(ValidationError):
            score_submission(self.questions, answers, pass_threshold=70.0)

    def test_empty_quiz_rejected(self):
        with self.assertRaises(ValueError):
            score_submission([], {}, pass_threshold=70.0)

    def test_result_dict_shape(self):
        result = score_submission(self.questions, answers_with(10, 8), pass_threshold=70.0).to_dict()
        self.assertEqual(result["correctCount"], 8)
        self.assertEqual(result["totalQuestions"], 10)
        self.assertEqual(len(result["perQuestionResults"]), 10)
        self.assertIn("isCorrect", result["perQuestionResults"][0])


if __name__ == "__main__":
    unittest.main()

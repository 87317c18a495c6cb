"""
LLM-backed agents.

- model_router: Task -> generative model routing (mentor, quiz, remediation)
- assessment_generator: Chapter quizzes and level tests
- remediation_agent: Explanations for failed attempts
- rag_instructor: Mentor context with citations

Note: scoring is pure logic in src/models/quiz_session (never model-decided)
"""

from .model_router import GenerativeModel, LangChainModel, ModelRouter
from .assessment_generator import QuizGenerator
from .remediation_agent import RemediationAgent
from .rag_instructor import Citation, MentorAnswer, MentorContextBuilder

__all__ = [
    # Routing
    "GenerativeModel",
    "LangChainModel",
    "ModelRouter",
    # Agents
    "QuizGenerator",
    "RemediationAgent",
    # Mentor
    "Citation",
    "MentorAnswer",
    "MentorContextBuilder",
]

"""
Mentor context builder - retrieval-augmented answers with citations.

Retrieves the caller's document chunks and notes for a course, assembles a
numbered context block and, when asked, hands it to the router's mentor
model. Only content inside the caller's scope is ever put in a prompt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from langchain_core.prompts import PromptTemplate
from loguru import logger

try:
    from ..services.retrieval import SearchScope, SemanticRetriever
    from ..utils.vector_store import SearchHit
    from .model_router import ModelRouter
except ImportError:
    from src.services.retrieval import SearchScope, SemanticRetriever
    from src.utils.vector_store import SearchHit
    from src.agents.model_router import ModelRouter


NO_CONTEXT_ANSWER = (
    "I couldn't find anything about this in your materials or notes. "
    "Try rephrasing the question or uploading a document that covers it."
)

MENTOR_SYSTEM_PROMPT = (
    "You are a supportive learning mentor. Answer using ONLY the provided context. "
    "Cite sources inline as [1], [2], ... matching the numbered context entries. "
    "If the context is insufficient, say so honestly."
)

MENTOR_PROMPT = PromptTemplate(
    input_variables=["question", "context"],
    template="""**Question:** {question}

**Context from the learner's materials:**
{context}

**Answer:**""",
)


@dataclass
class Citation:
    """
    Citation for a piece of retrieved context.

    Attributes:
        source: Document filename or note title
        content: Brief excerpt from the source
        kind: "document" or "note"
        source_id: Chunk or note id
        parent_id: Document id (chunks) or course id (notes)
        chunk_index: Chunk ordinal (documents only)
        score: Similarity to the question
    """
    source: str
    content: str
    kind: str
    source_id: str
    parent_id: str
    chunk_index: Optional[int] = None
    score: float = 0.0

    def __repr__(self) -> str:
        return f"[{self.source}]"

    def to_markdown(self) -> str:
        label = f"**{self.source}**" if self.kind == "document" else f"*Note: {self.source}*"
        return f"{label}\n> {self.content[:150]}...\n"

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "excerpt": self.content[:300],
            "kind": self.kind,
            "sourceId": self.source_id,
            "parentId": self.parent_id,
            "chunkIndex": self.chunk_index,
            "score": round(self.score, 4),
        }

    @classmethod
    def from_hit(cls, hit: SearchHit, kind: str) -> "Citation":
        return cls(
            source=hit.title,
            content=hit.content,
            kind=kind,
            source_id=hit.id,
            parent_id=hit.parent_id,
            chunk_index=hit.ordinal if kind == "document" else None,
            score=hit.score,
        )


@dataclass
class MentorContext:
    question: str
    context: str
    citations: List[Citation] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.citations)


@dataclass
class MentorAnswer:
    answer: str
    citations: List[Citation] = field(default_factory=list)

    def format_with_citations(self) -> str:
        """Format answer followed by a numbered source list."""
        result = self.answer + "\n\n"
        if self.citations:
            result += "## Sources\n\n"
            for i, citation in enumerate(self.citations, 1):
                result += f"{i}. {citation.to_markdown()}\n"
        return result


class MentorContextBuilder:
    """
    Builds mentor prompts from scoped retrieval.

    Args:
        retriever: Semantic retriever
        router: Optional model router; required only for ``answer``
        include_notes: Also search the learner's notes
    """

    def __init__(
        self,
        retriever: SemanticRetriever,
        router: Optional[ModelRouter] = None,
        include_notes: bool = True,
    ):
        self.retriever = retriever
        self.router = router
        self.include_notes = include_notes

    def build(self, owner_id: str, course_id: str, question: str) -> MentorContext:
        citations = [
            Citation.from_hit(hit, "document")
            for hit in self.retriever.search(SearchScope.for_course(owner_id, course_id), question)
        ]
        if self.include_notes:
            citations += [
                Citation.from_hit(hit, "note")
                for hit in self.retriever.search(SearchScope.for_notes(owner_id, course_id), question)
            ]

        context = "\n---\n".join(
            f"[{i}] {c.source}\n{c.content}" for i, c in enumerate(citations, 1)
        )
        logger.debug(f"Mentor context: {len(citations)} citations for course {course_id}")
        return MentorContext(question=question, context=context, citations=citations)

    def answer(self, owner_id: str, course_id: str, question: str) -> MentorAnswer:
        """Answer ``question`` from the learner's own materials."""
        if self.router is None:
            raise ValueError("MentorContextBuilder.answer needs a model router")

        mentor_context = self.build(owner_id, course_id, question)
        if not mentor_context.found:
            return MentorAnswer(answer=NO_CONTEXT_ANSWER)

        prompt = MENTOR_PROMPT.format(question=question, context=mentor_context.context)
        text = self.router.for_task("mentor").generate_text(MENTOR_SYSTEM_PROMPT, prompt)
        return MentorAnswer(answer=text, citations=mentor_context.citations)

"""
Settings for the learning core.

Every section is a dataclass read from the environment (a local .env file
is loaded first). ``config`` is the process-wide instance; components take
the values they need at construction so tests can pass their own.
"""

import os
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from loguru import logger

from dotenv import load_dotenv

load_dotenv()


@dataclass
class ModelConfig:
    """Generative model access (OpenAI-compatible endpoint)."""

    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    model_name: str = field(
        default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    )
    base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL")
    )

    temperature: float = 0.7
    max_tokens: int = 2000

    mentor_temperature: float = 0.7
    quiz_temperature: float = 0.5
    remediation_temperature: float = 0.4

    # task -> model name, resolved once into a ModelRouter
    routes: Dict[str, str] = field(
        default_factory=lambda: {
            "mentor": os.getenv("MENTOR_MODEL", os.getenv("OPENAI_MODEL", "gpt-4o-mini")),
            "quiz": os.getenv("QUIZ_MODEL", os.getenv("OPENAI_MODEL", "gpt-4o-mini")),
            "remediation": os.getenv(
                "REMEDIATION_MODEL", os.getenv("OPENAI_MODEL", "gpt-4o-mini")
            ),
        }
    )

    max_retries: int = 2
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "60.0"))
    )

    def temperature_for(self, task: str) -> float:
        """Temperature for a routed task, falling back to the global one."""
        return getattr(self, f"{task}_temperature", self.temperature)


@dataclass
class RAGConfig:
    """Embedding, chunking and retrieval configuration."""

    # Embeddings
    embedding_model_type: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL_TYPE", "openai")
    )
    embedding_model: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    embedding_dimension: int = field(
        default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSION", "1536"))
    )
    embedding_batch_size: int = 50
    embedding_workers: int = 4
    embedding_timeout: float = field(
        default_factory=lambda: float(os.getenv("EMBEDDING_TIMEOUT", "30.0"))
    )

    # Chunking (characters)
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Retrieval
    top_k: int = 10
    similarity_threshold: float = 0.5  # Minimum similarity score (0, 1]
    notes_top_k: int = 5
    notes_similarity_threshold: float = 0.7

    # Stage lease: a claimed pipeline stage is considered abandoned after this
    stage_lease_seconds: int = 300

    def __post_init__(self):
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be < chunk_size ({self.chunk_size})"
            )


@dataclass
class IngestionConfig:
    """Document registration and extraction limits."""

    allowed_file_types: tuple = ("pdf", "docx", "txt")
    max_file_size_bytes: int = 50 * 1024 * 1024
    min_extracted_chars: int = 10
    summary_max_words: int = 500


@dataclass
class AssessmentConfig:
    """Quiz configuration."""

    # Applied to quizzes that do not carry their own threshold.
    pass_threshold: float = field(
        default_factory=lambda: float(os.getenv("QUIZ_PASS_THRESHOLD", "70.0"))
    )
    questions_per_quiz: int = 5
    level_test_questions: int = 10
    min_options: int = 2
    max_options: int = 4


@dataclass
class GamificationConfig:
    """Points awarded per event type."""

    point_rules: Dict[str, int] = field(
        default_factory=lambda: {
            "chapter_complete": 10,
            "level_complete": 50,
            "course_complete": 200,
            "quiz_passed": 15,
            "quiz_perfect": 10,  # bonus on top of quiz_passed
        }
    )


@dataclass
class PathConfig:
    """Where uploaded files and the default database live."""

    data_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("DATA_DIR", str(Path(__file__).parent.parent / "data"))
        ).resolve()
    )
    storage_dir: Path = field(init=False)

    def __post_init__(self):
        self.storage_dir = self.data_dir / "storage"


@dataclass
class DatabaseConfig:
    """Relational store settings."""

    url: str = field(
        default_factory=lambda: os.getenv(
            "DATABASE_URL",
            "sqlite:///" + str(Path(__file__).parent.parent / "data" / "learning.db"),
        )
    )
    echo: bool = False


@dataclass
class LoggingConfig:
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_tokens: bool = field(
        default_factory=lambda: os.getenv("LOG_TOKENS", "true").lower() == "true"
    )


class Config:
    """
    Process-wide settings, one instance per interpreter.

    Usage:
        from src.config import config

        threshold = config.assessment.pass_threshold
        problems = config.validate()
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.paths = PathConfig()
            cls._instance.model = ModelConfig()
            cls._instance.rag = RAGConfig()
            cls._instance.ingestion = IngestionConfig()
            cls._instance.assessment = AssessmentConfig()
            cls._instance.gamification = GamificationConfig()
            cls._instance.database = DatabaseConfig()
            cls._instance.logging = LoggingConfig()

        return cls._instance

    def validate(self) -> list[str]:
        """
        Check settings that would otherwise fail deep inside a request.

        Returns:
            Human-readable problems, empty when the configuration is usable
        """
        errors = []

        if not self.model.api_key:
            errors.append("OPENAI_API_KEY is not set")

        if not (0 <= self.model.temperature <= 2):
            errors.append(f"temperature must be in [0, 2], got {self.model.temperature}")

        if self.model.request_timeout <= 0:
            errors.append(
                f"request_timeout must be > 0, got {self.model.request_timeout}"
            )

        for task in ("mentor", "quiz", "remediation"):
            if not self.model.routes.get(task):
                errors.append(f"No model routed for task '{task}'")

        rag = self.rag
        checks = [
            (rag.top_k >= 1, f"rag.top_k must be >= 1, got {rag.top_k}"),
            (rag.notes_top_k >= 1, f"rag.notes_top_k must be >= 1, got {rag.notes_top_k}"),
            (
                0 < rag.similarity_threshold <= 1,
                f"rag.similarity_threshold must be in (0, 1], got {rag.similarity_threshold}",
            ),
            (
                0 < rag.notes_similarity_threshold <= 1,
                f"rag.notes_similarity_threshold must be in (0, 1], got {rag.notes_similarity_threshold}",
            ),
            (rag.embedding_dimension > 0, f"rag.embedding_dimension must be > 0, got {rag.embedding_dimension}"),
            (rag.chunk_size > 0, f"rag.chunk_size must be > 0, got {rag.chunk_size}"),
            (rag.chunk_overlap >= 0, f"rag.chunk_overlap must be >= 0, got {rag.chunk_overlap}"),
            (
                rag.chunk_overlap < rag.chunk_size,
                f"rag.chunk_overlap ({rag.chunk_overlap}) must be smaller than chunk_size ({rag.chunk_size})",
            ),
            (rag.embedding_batch_size >= 1, f"rag.embedding_batch_size must be >= 1, got {rag.embedding_batch_size}"),
            (rag.embedding_workers >= 1, f"rag.embedding_workers must be >= 1, got {rag.embedding_workers}"),
            (
                self.ingestion.max_file_size_bytes > 0,
                f"ingestion.max_file_size_bytes must be > 0, got {self.ingestion.max_file_size_bytes}",
            ),
            (
                0 <= self.assessment.pass_threshold <= 100,
                f"assessment.pass_threshold must be in [0, 100], got {self.assessment.pass_threshold}",
            ),
        ]
        errors.extend(message for ok, message in checks if not ok)

        for event_type, points in self.gamification.point_rules.items():
            if points <= 0:
                errors.append(f"Point rule '{event_type}' must be > 0, got {points}")

        return errors


config = Config()


def configure_logging(level: Optional[str] = None) -> None:
    """Install the single stderr sink used by the whole package."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or config.logging.log_level).upper(),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}",
    )


@dataclass
class TokenUsage:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class TokenTracker:
    """
    Token counts per routed task, shared by every model in the process.

    Usage:
        from src.config import token_tracker

        token_tracker.record("quiz", input_tokens=420, output_tokens=900)
        token_tracker.usage("quiz").total_tokens
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_task: Dict[str, TokenUsage] = {}

    def record(self, task: str, input_tokens: int, output_tokens: int) -> None:
        with self._lock:
            usage = self._by_task.setdefault(task, TokenUsage())
            usage.calls += 1
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens

    def usage(self, task: Optional[str] = None) -> TokenUsage:
        """Copy of the counters for one task, or summed over all of them."""
        with self._lock:
            if task is not None:
                found = self._by_task.get(task, TokenUsage())
                return TokenUsage(found.calls, found.input_tokens, found.output_tokens)
            total = TokenUsage()
            for usage in self._by_task.values():
                total.calls += usage.calls
                total.input_tokens += usage.input_tokens
                total.output_tokens += usage.output_tokens
            return total

    def total_tokens(self) -> int:
        return self.usage().total_tokens

    def reset(self) -> None:
        with self._lock:
            self._by_task.clear()


token_tracker = TokenTracker()

"""
Utility modules for the learning core.

This module contains utility functions:
- validation: JSON Schema validation for request payloads and model output
- progress: Streak and stats aggregation
- document_loader: Text extraction and chunking
- embeddings: Embedding providers and cosine similarity
- vector_store: Chunk and note vector persistence and search
- persistence: SQLAlchemy engine and session handling
- storage: Owner-namespaced file storage
- request_context: Per-request identity memoization
"""

from .validation import (
    SchemaValidator,
    require_valid,
    validate_quiz_questions,
)
from .progress import (
    study_streak,
    score_summary,
    build_stats_snapshot,
)
from .document_loader import (
    TextChunk,
    TextChunker,
    extract_text,
    generate_text_summary,
)
from .embeddings import (
    EmbeddingGenerator,
    EmbeddingProvider,
    cosine_similarities,
)
from .vector_store import (
    SearchHit,
    VectorStore,
)
from .persistence import (
    Database,
    init_db,
)
from .storage import (
    LocalStorage,
    StorageBackend,
    owner_prefix_matches,
)
from .request_context import RequestContext

__all__ = [
    # Validation
    "SchemaValidator",
    "require_valid",
    "validate_quiz_questions",
    # Progress analytics
    "study_streak",
    "score_summary",
    "build_stats_snapshot",
    # Document loading
    "TextChunk",
    "TextChunker",
    "extract_text",
    "generate_text_summary",
    # Embeddings
    "EmbeddingGenerator",
    "EmbeddingProvider",
    "cosine_similarities",
    # Vector store
    "SearchHit",
    "VectorStore",
    # Persistence
    "Database",
    "init_db",
    # Storage
    "LocalStorage",
    "StorageBackend",
    "owner_prefix_matches",
    # Request identity
    "RequestContext",
]

"""
Staged, resumable document ingestion.

Stages (``processing_status``):

    registered -> extracting -> extracted -> embedding -> completed
                      |                          |
                      +--------> failed <--------+

Each stage is a separate, independently retryable call. A stage starts by
claiming the document with one conditional UPDATE on (status, lease); the
claim fails with PipelineStateError if the status is wrong or another
invocation holds an unexpired lease. This serializes stages per document
so two embedding runs can never bill the same chunks twice.

Chunk ordinals are assigned by the chunker and persisted before any
embedding starts. Embedding only touches chunks whose vector is NULL, so
re-running the stage resumes where the last run stopped.
"""

from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql.elements import ColumnElement

try:
    from ..config import config
    from ..errors import (
        ConflictError,
        ForbiddenError,
        NotFoundError,
        PipelineStateError,
        UpstreamError,
        ValidationError,
    )
    from ..models.records import (
        STATUS_COMPLETED,
        STATUS_EMBEDDING,
        STATUS_EXTRACTED,
        STATUS_EXTRACTING,
        STATUS_FAILED,
        STATUS_REGISTERED,
        SourceDocument,
        utcnow,
    )
    from ..utils.document_loader import (
        ExtractionError,
        TextChunker,
        extract_text,
        generate_text_summary,
    )
    from ..utils.embeddings import EmbeddingProvider
    from ..utils.persistence import Database
    from ..utils.storage import StorageBackend, StorageError, owner_prefix_matches
    from ..utils.vector_store import VectorStore
    from .progression import load_owned_course
except ImportError:
    from src.config import config
    from src.errors import (
        ConflictError,
        ForbiddenError,
        NotFoundError,
        PipelineStateError,
        UpstreamError,
        ValidationError,
    )
    from src.models.records import (
        STATUS_COMPLETED,
        STATUS_EMBEDDING,
        STATUS_EXTRACTED,
        STATUS_EXTRACTING,
        STATUS_FAILED,
        STATUS_REGISTERED,
        SourceDocument,
        utcnow,
    )
    from src.utils.document_loader import (
        ExtractionError,
        TextChunker,
        extract_text,
        generate_text_summary,
    )
    from src.utils.embeddings import EmbeddingProvider
    from src.utils.persistence import Database
    from src.utils.storage import StorageBackend, StorageError, owner_prefix_matches
    from src.utils.vector_store import VectorStore
    from src.services.progression import load_owned_course


STAGE_EXTRACT = "extract"
STAGE_CHUNK = "chunk"
STAGE_EMBEDDING = "embedding"

# Declared types accepted at registration, normalized to the stored type
FILE_TYPE_ALIASES = {
    "pdf": "pdf",
    "application/pdf": "pdf",
    "docx": "docx",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "txt": "txt",
    "text": "txt",
    "plain-text": "txt",
    "text/plain": "txt",
}


@dataclass
class EmbedResult:
    document_id: str
    status: str
    embedded_count: int
    remaining_count: int
    total_chunks: int
    failed_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "status": self.status,
            "embeddedCount": self.embedded_count,
            "remainingCount": self.remaining_count,
            "totalChunks": self.total_chunks,
            "failedCount": self.failed_count,
        }


def document_info(doc: SourceDocument) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "ownerId": doc.owner_id,
        "courseId": doc.course_id,
        "filename": doc.filename,
        "fileType": doc.file_type,
        "fileSize": doc.file_size,
        "storagePath": doc.storage_path,
        "processingStatus": doc.processing_status,
        "failedStage": doc.failed_stage,
        "errorMessage": doc.error_message,
        "summary": doc.summary,
        "wordCount": doc.word_count,
        "pageCount": doc.page_count,
    }


def normalize_file_type(declared: str) -> Optional[str]:
    return FILE_TYPE_ALIASES.get((declared or "").strip().lower().lstrip("."))


class IngestionPipeline:
    """
    Drives documents through extraction, chunking and embedding.

    Args:
        db: Database
        storage: Storage collaborator holding the uploaded bytes
        embedder: Embedding provider
        vector_store: Chunk persistence (default: new VectorStore)
        chunker: Text chunker (default from config)
        clock: Returns "now" as naive UTC (injectable for lease tests)
    """

    def __init__(
        self,
        db: Database,
        storage: StorageBackend,
        embedder: EmbeddingProvider,
        vector_store: Optional[VectorStore] = None,
        chunker: Optional[TextChunker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: Optional[int] = None,
        workers: Optional[int] = None,
        timeout: Optional[float] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.db = db
        self.storage = storage
        self.embedder = embedder
        self.vector_store = vector_store or VectorStore()
        self.chunker = chunker or TextChunker()
        self.clock = clock or utcnow
        self.batch_size = batch_size or config.rag.embedding_batch_size
        self.workers = workers or config.rag.embedding_workers
        self.timeout = timeout or config.rag.embedding_timeout
        self.lease_seconds = lease_seconds or config.rag.stage_lease_seconds

    # Registration

    def register(
        self,
        owner_id: str,
        filename: str,
        declared_type: str,
        size: int,
        storage_path: str,
        course_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Register an uploaded file.

        Raises:
            ValidationError: Type not allowed or size out of range
            ForbiddenError: Storage path not under ``<owner_id>/``
            NotFoundError: ``course_id`` not owned by ``owner_id``
            ConflictError: Same storage path already registered
        """
        file_type = normalize_file_type(declared_type)
        if file_type is None or file_type not in config.ingestion.allowed_file_types:
            raise ValidationError(
                f"File type '{declared_type}' is not supported. "
                f"Allowed: {', '.join(config.ingestion.allowed_file_types)}"
            )

        max_size = config.ingestion.max_file_size_bytes
        if not isinstance(size, int) or size <= 0:
            raise ValidationError("File size must be a positive number of bytes")
        if size > max_size:
            raise ValidationError(
                f"File is too large ({size} bytes). Maximum is {max_size // (1024 * 1024)} MB"
            )

        if not filename or not filename.strip():
            raise ValidationError("Filename is required")

        if not owner_prefix_matches(storage_path, owner_id):
            raise ForbiddenError(
                f"Storage path {storage_path!r} is outside the owner's namespace",
                user_message="Invalid storage path.",
            )

        try:
            with self.db.session_scope() as session:
                if course_id is not None:
                    load_owned_course(session, owner_id, course_id)
                doc = SourceDocument(
                    owner_id=owner_id,
                    course_id=course_id,
                    filename=filename.strip(),
                    file_type=file_type,
                    file_size=size,
                    storage_path=storage_path,
                    processing_status=STATUS_REGISTERED,
                )
                session.add(doc)
                session.flush()
                info = document_info(doc)
        except IntegrityError as e:
            raise ConflictError(
                f"Document already registered at {storage_path}",
                user_message="This file has already been uploaded.",
            ) from e

        logger.info(f"Registered document {info['id']} ({file_type}, {size} bytes)")
        return info

    # Stage claims

    def _claim(self, document_id: str, condition: ColumnElement, new_status: str, stage: str) -> str:
        """Atomically move the document into ``new_status`` and take the lease."""
        now = self.clock()
        token = str(uuid.uuid4())
        lease_expired = now - timedelta(seconds=self.lease_seconds)

        with self.db.session_scope() as session:
            result = session.execute(
                update(SourceDocument)
                .where(
                    SourceDocument.id == document_id,
                    condition,
                    or_(
                        SourceDocument.stage_token.is_(None),
                        SourceDocument.stage_claimed_at < lease_expired,
                    ),
                )
                .values(
                    processing_status=new_status,
                    stage_token=token,
                    stage_claimed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return token

            doc = session.get(SourceDocument, document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found", user_message="Document not found.")
            busy = doc.stage_token is not None
            raise PipelineStateError(
                f"Cannot start {stage} for document {document_id}: "
                f"status={doc.processing_status}, in_progress={busy}"
            )

    def _release(self, session, document_id: str, token: str, **values) -> None:
        """Clear the lease and apply ``values``; fails if the lease was taken over."""
        result = session.execute(
            update(SourceDocument)
            .where(SourceDocument.id == document_id, SourceDocument.stage_token == token)
            .values(stage_token=None, stage_claimed_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PipelineStateError(f"Lost stage lease on document {document_id}")

    def _heartbeat(self, document_id: str, token: str) -> None:
        with self.db.session_scope() as session:
            result = session.execute(
                update(SourceDocument)
                .where(SourceDocument.id == document_id, SourceDocument.stage_token == token)
                .values(stage_claimed_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PipelineStateError(f"Lost stage lease on document {document_id}")

    def _check_owner(self, document_id: str, owner_id: Optional[str]) -> None:
        if owner_id is None:
            return
        with self.db.session_scope() as session:
            doc = session.get(SourceDocument, document_id)
            if doc is None or doc.owner_id != owner_id:
                raise NotFoundError(f"Document {document_id} not found", user_message="Document not found.")

    # Stages

    def extract(self, document_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Download the file, extract its text and write a summary.

        registered -> extracted, or -> failed on unreadable content. A
        storage failure puts the document back to registered so the stage
        can simply be re-run.
        """
        self._check_owner(document_id, owner_id)
        token = self._claim(
            document_id,
            SourceDocument.processing_status == STATUS_REGISTERED,
            STATUS_EXTRACTING,
            STAGE_EXTRACT,
        )

        with self.db.session_scope() as session:
            doc = session.get(SourceDocument, document_id)
            storage_path, file_type = doc.storage_path, doc.file_type

        try:
            content = self.storage.download(storage_path)
        except StorageError as e:
            logger.warning(f"Storage read failed for document {document_id}: {e}")
            with self.db.session_scope() as session:
                self._release(
                    session, document_id, token,
                    processing_status=STATUS_REGISTERED,
                    error_message=f"Could not read the uploaded file: {e}",
                )
            raise UpstreamError(
                f"Storage read failed for {storage_path}: {e}",
                user_message="The uploaded file could not be read. Please retry.",
            ) from e

        try:
            extracted = extract_text(content, file_type)
        except ExtractionError as e:
            logger.warning(f"Extraction failed for document {document_id}: {e}")
            with self.db.session_scope() as session:
                self._release(
                    session, document_id, token,
                    processing_status=STATUS_FAILED,
                    failed_stage=STAGE_EXTRACT,
                    error_message=str(e),
                )
                return document_info(session.get(SourceDocument, document_id))

        with self.db.session_scope() as session:
            self._release(
                session, document_id, token,
                processing_status=STATUS_EXTRACTED,
                extracted_text=extracted.text,
                summary=generate_text_summary(extracted.text),
                word_count=extracted.word_count,
                page_count=extracted.page_count,
                failed_stage=None,
                error_message=None,
            )
            info = document_info(session.get(SourceDocument, document_id))

        logger.info(f"Extracted document {document_id}: {extracted.word_count} words")
        return info

    def chunk(self, document_id: str, owner_id: Optional[str] = None) -> int:
        """
        Split extracted text into ordinal chunks, persisted without vectors.

        extracted -> embedding. Returns the number of chunks.
        """
        self._check_owner(document_id, owner_id)
        token = self._claim(
            document_id,
            SourceDocument.processing_status == STATUS_EXTRACTED,
            STATUS_EMBEDDING,
            STAGE_CHUNK,
        )

        with self.db.session_scope() as session:
            text = session.get(SourceDocument, document_id).extracted_text or ""
            chunks = self.chunker.chunk(text)

            if not chunks:
                self._release(
                    session, document_id, token,
                    processing_status=STATUS_FAILED,
                    failed_stage=STAGE_CHUNK,
                    error_message="No text to split into chunks",
                )
                return 0

            # A crashed earlier run may have left rows behind.
            self.vector_store.delete_chunks(session, document_id)
            count = self.vector_store.add_chunks(session, document_id, chunks)
            self._release(session, document_id, token, error_message=None, failed_stage=None)

        logger.info(f"Chunked document {document_id} into {count} chunks")
        return count

    def embed(self, document_id: str, owner_id: Optional[str] = None) -> EmbedResult:
        """
        Embed every chunk that still lacks a vector.

        Batches run on a fixed-size worker pool, each bounded by the
        embedding timeout; vectors are written from this thread. A failed
        batch is retried chunk by chunk so one bad chunk only marks itself.
        The document fails (retryably) only if every chunk of some batch
        failed; it completes once no chunk lacks a vector.
        """
        self._check_owner(document_id, owner_id)
        token = self._claim(
            document_id,
            or_(
                SourceDocument.processing_status == STATUS_EMBEDDING,
                and_(
                    SourceDocument.processing_status == STATUS_FAILED,
                    SourceDocument.failed_stage == STAGE_EMBEDDING,
                ),
            ),
            STATUS_EMBEDDING,
            STAGE_EMBEDDING,
        )

        try:
            with self.db.session_scope() as session:
                pending = [
                    (chunk.id, chunk.content)
                    for chunk in self.vector_store.pending_chunks(session, document_id)
                ]

            batches = [
                pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)
            ]
            embedded, failed, batch_wiped_out, last_error = self._run_batches(
                document_id, token, batches
            )
        except PipelineStateError:
            raise
        except Exception as e:
            # Unexpected failure: leave the document resumable.
            logger.exception(f"Embedding stage crashed for document {document_id}")
            with self.db.session_scope() as session:
                self._release(
                    session, document_id, token,
                    processing_status=STATUS_FAILED,
                    failed_stage=STAGE_EMBEDDING,
                    error_message=f"Embedding interrupted: {e}",
                )
            raise

        with self.db.session_scope() as session:
            total, with_vectors = self.vector_store.counts(session, document_id)
            remaining = total - with_vectors

            if remaining == 0:
                status, values = STATUS_COMPLETED, {
                    "processing_status": STATUS_COMPLETED,
                    "failed_stage": None,
                    "error_message": None,
                }
            elif batch_wiped_out:
                status, values = STATUS_FAILED, {
                    "processing_status": STATUS_FAILED,
                    "failed_stage": STAGE_EMBEDDING,
                    "error_message": (
                        f"Embedding failed for {remaining} of {total} chunks: {last_error}. "
                        "Retry to resume."
                    ),
                }
            else:
                status, values = STATUS_EMBEDDING, {
                    "processing_status": STATUS_EMBEDDING,
                    "failed_stage": None,
                    "error_message": (
                        f"{remaining} of {total} chunks could not be embedded yet. Retry to resume."
                    ),
                }
            self._release(session, document_id, token, **values)

        logger.info(
            f"Embedding run for {document_id}: {embedded} embedded, {failed} failed, "
            f"{remaining}/{total} remaining -> {status}"
        )
        return EmbedResult(
            document_id=document_id,
            status="in_progress" if status == STATUS_EMBEDDING else status,
            embedded_count=embedded,
            remaining_count=remaining,
            total_chunks=total,
            failed_count=failed,
        )

    def _run_batches(
        self, document_id: str, token: str, batches: List[List[Tuple[str, str]]]
    ) -> Tuple[int, int, bool, Optional[str]]:
        embedded = failed = 0
        batch_wiped_out = False
        last_error = None
        if not batches:
            return 0, 0, False, None

        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="embed")
        try:
            futures = [
                executor.submit(self.embedder.embed_batch, [text for _, text in batch])
                for batch in batches
            ]
            for batch, future in zip(batches, futures):
                outcomes = self._collect_batch(executor, batch, future)

                with self.db.session_scope() as session:
                    batch_ok = 0
                    for chunk_id, vector, error in outcomes:
                        if vector is not None:
                            if self.vector_store.set_embedding(
                                session, chunk_id, vector, self.embedder.model_name
                            ):
                                batch_ok += 1
                        else:
                            self.vector_store.record_failure(session, chunk_id, error)
                            last_error = error
                embedded += batch_ok
                failed += len(batch) - batch_ok
                if batch_ok == 0:
                    batch_wiped_out = True

                self._heartbeat(document_id, token)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return embedded, failed, batch_wiped_out, last_error

    def _collect_batch(
        self, executor: ThreadPoolExecutor, batch: List[Tuple[str, str]], future
    ) -> List[Tuple[str, Optional[List[float]], Optional[str]]]:
        """(chunk_id, vector or None, error or None) for every chunk of a batch."""
        try:
            vectors = future.result(timeout=self.timeout)
            if len(vectors) != len(batch):
                raise UpstreamError(
                    f"Provider returned {len(vectors)} vectors for {len(batch)} chunks"
                )
            return [
                self._checked(chunk_id, vector) for (chunk_id, _), vector in zip(batch, vectors)
            ]
        except FutureTimeout:
            logger.warning(f"Embedding batch of {len(batch)} timed out after {self.timeout}s")
            return [(chunk_id, None, "Embedding request timed out") for chunk_id, _ in batch]
        except Exception as e:
            logger.warning(f"Embedding batch of {len(batch)} failed, isolating chunks: {e}")

        # Isolate the bad chunk(s)
        outcomes = []
        for chunk_id, text in batch:
            single = executor.submit(self.embedder.embed_batch, [text])
            try:
                vectors = single.result(timeout=self.timeout)
                outcomes.append(self._checked(chunk_id, vectors[0] if vectors else None))
            except FutureTimeout:
                outcomes.append((chunk_id, None, "Embedding request timed out"))
            except Exception as e:
                outcomes.append((chunk_id, None, str(e) or type(e).__name__))
        return outcomes

    def _checked(self, chunk_id: str, vector: Optional[Sequence[float]]):
        dimension = self.embedder.dimension
        if vector is None or len(vector) != dimension:
            got = None if vector is None else len(vector)
            return chunk_id, None, f"Embedding has dimension {got}, expected {dimension}"
        return chunk_id, [float(x) for x in vector], None

    # Convenience

    def chunk_and_embed(self, document_id: str, owner_id: Optional[str] = None) -> EmbedResult:
        self.chunk(document_id, owner_id=owner_id)
        return self.embed(document_id, owner_id=owner_id)

    def process(self, document_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """Run every remaining stage; stops at the first failed stage."""
        info = self.status(owner_id, document_id) if owner_id else self._info(document_id)
        status = info["processingStatus"]

        if status == STATUS_REGISTERED:
            info = self.extract(document_id, owner_id=owner_id)
            status = info["processingStatus"]
        if status == STATUS_EXTRACTED:
            self.chunk(document_id, owner_id=owner_id)
            status = STATUS_EMBEDDING
        if status == STATUS_EMBEDDING or (
            status == STATUS_FAILED and info.get("failedStage") == STAGE_EMBEDDING
        ):
            self.embed(document_id, owner_id=owner_id)

        return self._info(document_id)

    def _info(self, document_id: str) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            doc = session.get(SourceDocument, document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found", user_message="Document not found.")
            return document_info(doc)

    def status(self, owner_id: str, document_id: str) -> Dict[str, Any]:
        """Document info plus chunk counts."""
        self._check_owner(document_id, owner_id)
        info = self._info(document_id)
        with self.db.session_scope() as session:
            total, embedded = self.vector_store.counts(session, document_id)
        info.update({"totalChunks": total, "embeddedChunks": embedded, "remainingChunks": total - embedded})
        return info

    def retry(self, owner_id: str, document_id: str) -> Dict[str, Any]:
        """
        Reset a failed document so its failed stage can run again.

        extract failures go back to registered, chunk failures to extracted,
        embedding failures to embedding.
        """
        self._check_owner(document_id, owner_id)
        restart = {
            STAGE_EXTRACT: STATUS_REGISTERED,
            STAGE_CHUNK: STATUS_EXTRACTED,
            STAGE_EMBEDDING: STATUS_EMBEDDING,
        }
        with self.db.session_scope() as session:
            doc = session.get(SourceDocument, document_id)
            target = restart.get(doc.failed_stage or STAGE_EXTRACT, STATUS_REGISTERED)
            result = session.execute(
                update(SourceDocument)
                .where(
                    SourceDocument.id == document_id,
                    SourceDocument.processing_status == STATUS_FAILED,
                    SourceDocument.stage_token.is_(None),
                )
                .values(processing_status=target, failed_stage=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PipelineStateError(f"Document {document_id} is not in a failed state")

        logger.info(f"Document {document_id} reset to {target} for retry")
        return self._info(document_id)

    def delete(self, owner_id: str, document_id: str) -> None:
        """Remove the stored file, then the document row (chunks cascade)."""
        with self.db.session_scope() as session:
            doc = session.get(SourceDocument, document_id)
            if doc is None or doc.owner_id != owner_id:
                raise NotFoundError(f"Document {document_id} not found", user_message="Document not found.")
            storage_path = doc.storage_path

        try:
            self.storage.remove(storage_path)
        except StorageError as e:
            raise UpstreamError(
                f"Could not remove {storage_path}: {e}",
                user_message="The file could not be deleted. Please retry.",
            ) from e

        with self.db.session_scope() as session:
            doc = session.get(SourceDocument, document_id)
            if doc is not None:
                session.delete(doc)
        logger.info(f"Deleted document {document_id}")

    def link_to_course(self, owner_id: str, document_ids: Sequence[str], course_id: str) -> int:
        """Attach the owner's documents to one of the owner's courses."""
        with self.db.session_scope() as session:
            load_owned_course(session, owner_id, course_id)
            result = session.execute(
                update(SourceDocument)
                .where(
                    SourceDocument.id.in_(list(document_ids)),
                    SourceDocument.owner_id == owner_id,
                )
                .values(course_id=course_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def list_documents(self, owner_id: str, course_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.session_scope() as session:
            stmt = select(SourceDocument).where(SourceDocument.owner_id == owner_id)
            if course_id is not None:
                stmt = stmt.where(SourceDocument.course_id == course_id)
            return [
                document_info(doc)
                for doc in session.scalars(stmt.order_by(SourceDocument.created_at.desc()))
            ]

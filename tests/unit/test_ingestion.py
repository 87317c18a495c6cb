"""
Unit tests for the staged ingestion pipeline.

Covers registration checks, stage claims and leases, contiguous chunk
ordinals, resumable embedding and per-batch failure isolation.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from conftest import FakeEmbedder
from src.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PipelineStateError,
    UpstreamError,
    ValidationError,
)
from src.models.records import DocumentChunk, SourceDocument
from src.services.ingestion import IngestionPipeline, normalize_file_type
from src.utils.document_loader import TextChunker
from src.utils.storage import StorageError


def paragraph_text(count, markers=None):
    """``count`` paragraphs of 90 chars; each becomes one chunk with a 100/10 chunker."""
    markers = markers or {}
    paragraphs = []
    for i in range(count):
        head = f"{markers.get(i, '')}Paragraph {i} "
        paragraphs.append(head + "." * (90 - len(head)))
    return "\n\n".join(paragraphs)


def make_pipeline(db, storage, embedder, **kwargs):
    kwargs.setdefault("chunker", TextChunker(chunk_size=100, chunk_overlap=10))
    kwargs.setdefault("batch_size", 2)
    kwargs.setdefault("workers", 4)
    kwargs.setdefault("timeout", 5)
    return IngestionPipeline(db, storage, embedder, **kwargs)


def upload(pipeline, owner, name, data):
    path = f"{owner}/{name}"
    pipeline.storage.upload(path, data, "text/plain")
    return pipeline.register(owner, name, "txt", len(data), path)["id"]


def chunk_rows(db, document_id):
    with db.session_scope() as session:
        return [
            (c.chunk_index, c.content, c.embedding)
            for c in session.scalars(
                select(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index)
            )
        ]


def document_count(db):
    with db.session_scope() as session:
        return session.scalar(select(func.count(SourceDocument.id)))


@pytest.fixture
def pipeline(db, storage, embedder, users):
    return make_pipeline(db, storage, embedder)


class TestRegistration:
    def test_registers_document(self, pipeline):
        info = pipeline.register("alice", "notes.txt", "txt", 120, "alice/notes.txt")
        assert info["processingStatus"] == "registered"
        assert info["ownerId"] == "alice"
        assert info["fileType"] == "txt"

    def test_foreign_storage_path_forbidden_and_nothing_created(self, pipeline, db):
        with pytest.raises(ForbiddenError):
            pipeline.register("alice", "notes.txt", "txt", 120, "bob/notes.txt")
        assert document_count(db) == 0

    def test_traversal_path_forbidden(self, pipeline, db):
        with pytest.raises(ForbiddenError):
            pipeline.register("alice", "notes.txt", "txt", 120, "alice/../bob/notes.txt")
        assert document_count(db) == 0

    @pytest.mark.parametrize("declared", ["exe", "pptx", "", "image/png"])
    def test_unsupported_type(self, pipeline, declared):
        with pytest.raises(ValidationError):
            pipeline.register("alice", "f", declared, 10, "alice/f")

    @pytest.mark.parametrize("size", [0, -1, 50 * 1024 * 1024 + 1])
    def test_size_limits(self, pipeline, size):
        with pytest.raises(ValidationError):
            pipeline.register("alice", "f.pdf", "pdf", size, "alice/f.pdf")

    def test_duplicate_path_conflict(self, pipeline):
        pipeline.register("alice", "a.txt", "txt", 10, "alice/a.txt")
        with pytest.raises(ConflictError):
            pipeline.register("alice", "a.txt", "txt", 10, "alice/a.txt")

    def test_course_must_be_owned(self, pipeline, db):
        from conftest import make_course

        bobs = make_course(db, "bob")
        with pytest.raises(NotFoundError):
            pipeline.register("alice", "a.txt", "txt", 10, "alice/a.txt", course_id=bobs.course_id)
        assert document_count(db) == 0

    def test_mime_aliases(self):
        assert normalize_file_type("application/pdf") == "pdf"
        assert normalize_file_type(".DOCX") == "docx"
        assert normalize_file_type("text/plain") == "txt"
        assert normalize_file_type("plain-text") == "txt"
        assert normalize_file_type("zip") is None


class TestExtraction:
    def test_extract_then_chunk(self, pipeline, db):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(5).encode())

        info = pipeline.extract(doc_id)
        assert info["processingStatus"] == "extracted"
        assert info["wordCount"] > 0
        assert info["summary"]

        count = pipeline.chunk(doc_id)
        assert count == 5
        assert pipeline.status("alice", doc_id)["processingStatus"] == "embedding"

    def test_chunk_ordinals_contiguous(self, pipeline, db):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(7).encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)

        rows = chunk_rows(db, doc_id)
        assert [index for index, _, _ in rows] == list(range(7))
        assert all(embedding is None for _, _, embedding in rows)

    def test_unreadable_file_fails_extract_stage(self, pipeline):
        doc_id = upload(pipeline, "alice", "empty.txt", b"   ")

        info = pipeline.extract(doc_id)
        assert info["processingStatus"] == "failed"
        assert info["failedStage"] == "extract"
        assert info["errorMessage"]

    def test_storage_failure_leaves_document_retryable(self, pipeline):
        doc_id = pipeline.register("alice", "ghost.txt", "txt", 10, "alice/ghost.txt")["id"]

        with pytest.raises(UpstreamError):
            pipeline.extract(doc_id)

        assert pipeline.status("alice", doc_id)["processingStatus"] == "registered"
        pipeline.storage.upload("alice/ghost.txt", paragraph_text(2).encode(), "text/plain")
        assert pipeline.extract(doc_id)["processingStatus"] == "extracted"

    def test_stage_out_of_order_rejected(self, pipeline):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(2).encode())

        with pytest.raises(PipelineStateError):
            pipeline.chunk(doc_id)
        with pytest.raises(PipelineStateError):
            pipeline.embed(doc_id)

        pipeline.extract(doc_id)
        with pytest.raises(PipelineStateError):
            pipeline.extract(doc_id)

    def test_other_owner_cannot_drive_stages(self, pipeline):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(2).encode())
        with pytest.raises(NotFoundError):
            pipeline.extract(doc_id, owner_id="bob")

    def test_retry_after_extract_failure(self, pipeline):
        doc_id = upload(pipeline, "alice", "empty.txt", b"  ")
        pipeline.extract(doc_id)

        info = pipeline.retry("alice", doc_id)
        assert info["processingStatus"] == "registered"
        assert info["failedStage"] is None

    def test_retry_requires_failed_document(self, pipeline):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(2).encode())
        with pytest.raises(PipelineStateError):
            pipeline.retry("alice", doc_id)


class TestEmbedding:
    def test_process_runs_every_stage(self, pipeline):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(5).encode())

        info = pipeline.process(doc_id, owner_id="alice")
        assert info["processingStatus"] == "completed"

        status = pipeline.status("alice", doc_id)
        assert status["totalChunks"] == 5
        assert status["embeddedChunks"] == 5
        assert status["remainingChunks"] == 0

    def test_vectors_are_complete(self, pipeline, db, embedder):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(3).encode())
        pipeline.process(doc_id)

        for _, _, embedding in chunk_rows(db, doc_id):
            assert len(embedding) == embedder.dimension

    def test_resume_embeds_only_remaining_chunks(self, db, storage, users):
        failing = FakeEmbedder(fail_on=("POISON",))
        pipeline = make_pipeline(db, storage, failing)
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(6, markers={2: "POISON "}).encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)

        first = pipeline.embed(doc_id)
        assert first.embedded_count == 5
        assert first.failed_count == 1
        assert first.remaining_count == 1
        assert first.total_chunks == 6
        assert first.status == "in_progress"

        before = {index: embedding for index, _, embedding in chunk_rows(db, doc_id)}
        assert before[2] is None

        healthy = FakeEmbedder()
        pipeline.embedder = healthy
        second = pipeline.embed(doc_id)

        assert second.embedded_count == 1
        assert second.remaining_count == 0
        assert second.status == "completed"
        assert healthy.embedded_texts == [c for i, c, _ in chunk_rows(db, doc_id) if i == 2]

        after = {index: embedding for index, _, embedding in chunk_rows(db, doc_id)}
        for index, vector in before.items():
            if vector is not None:
                assert after[index] == vector

    def test_failed_chunk_records_error(self, db, storage, users):
        pipeline = make_pipeline(db, storage, FakeEmbedder(fail_on=("POISON",)))
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(4, markers={1: "POISON "}).encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)
        pipeline.embed(doc_id)

        with db.session_scope() as session:
            chunk = session.scalar(
                select(DocumentChunk).where(
                    DocumentChunk.document_id == doc_id, DocumentChunk.chunk_index == 1
                )
            )
            assert chunk.embedding is None
            assert chunk.embedding_attempts == 1
            assert "rejected" in chunk.embedding_error

    def test_wiped_out_batch_fails_document_retryably(self, db, storage, users):
        pipeline = make_pipeline(db, storage, FakeEmbedder(fail_on=("POISON",)))
        text = paragraph_text(4, markers={0: "POISON ", 1: "POISON "})
        doc_id = upload(pipeline, "alice", "bio.txt", text.encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)

        result = pipeline.embed(doc_id)
        assert result.status == "failed"
        assert result.embedded_count == 2
        assert result.remaining_count == 2

        info = pipeline.status("alice", doc_id)
        assert info["failedStage"] == "embedding"
        assert "Retry" in info["errorMessage"]

        pipeline.embedder = FakeEmbedder()
        assert pipeline.embed(doc_id).status == "completed"

    def test_timed_out_batch_marks_its_chunks(self, db, storage, users):
        slow = FakeEmbedder(slow_on=("SLOW",), delay=1.0)
        pipeline = make_pipeline(db, storage, slow, timeout=0.2)
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(4, markers={0: "SLOW "}).encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)

        result = pipeline.embed(doc_id)
        assert result.failed_count == 2
        assert result.embedded_count == 2
        assert result.status == "failed"
        assert "timed out" in pipeline.status("alice", doc_id)["errorMessage"]

    def test_wrong_dimension_never_stored(self, db, storage, users):
        class ShortVectors(FakeEmbedder):
            def vector_for(self, text):
                vector = super().vector_for(text)
                return vector[:-1] if "SHORT" in text else vector

        pipeline = make_pipeline(db, storage, ShortVectors())
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(4, markers={3: "SHORT "}).encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)

        result = pipeline.embed(doc_id)
        assert result.embedded_count == 3
        assert result.status == "in_progress"
        rows = chunk_rows(db, doc_id)
        assert rows[3][2] is None
        assert all(len(e) == 8 for _, _, e in rows[:3])

    def test_completed_document_cannot_be_embedded_again(self, pipeline):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(2).encode())
        pipeline.process(doc_id)
        with pytest.raises(PipelineStateError):
            pipeline.embed(doc_id)


class TestStageLease:
    def test_concurrent_claim_rejected_until_lease_expires(self, db, storage, embedder, users):
        now = [datetime(2026, 1, 1, 12, 0, 0)]
        pipeline = make_pipeline(db, storage, embedder, clock=lambda: now[0], lease_seconds=300)
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(3).encode())
        pipeline.extract(doc_id)
        pipeline.chunk(doc_id)

        # Another invocation holds the embedding stage
        with db.session_scope() as session:
            doc = session.get(SourceDocument, doc_id)
            doc.stage_token = "other-invocation"
            doc.stage_claimed_at = now[0] - timedelta(seconds=10)

        with pytest.raises(PipelineStateError, match="in_progress=True"):
            pipeline.embed(doc_id)

        now[0] += timedelta(seconds=400)
        result = pipeline.embed(doc_id)
        assert result.status == "completed"

        with db.session_scope() as session:
            doc = session.get(SourceDocument, doc_id)
            assert doc.stage_token is None
            assert doc.stage_claimed_at is None

    def test_unknown_document(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.extract("does-not-exist")


class TestManagement:
    def test_delete_removes_file_and_chunks(self, pipeline, db, storage):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(3).encode())
        pipeline.process(doc_id)

        pipeline.delete("alice", doc_id)

        assert document_count(db) == 0
        assert chunk_rows(db, doc_id) == []
        with pytest.raises(StorageError):
            storage.download("alice/bio.txt")

    def test_delete_other_owner_not_found(self, pipeline):
        doc_id = upload(pipeline, "alice", "bio.txt", paragraph_text(1).encode())
        with pytest.raises(NotFoundError):
            pipeline.delete("bob", doc_id)

    def test_link_and_list(self, pipeline, db, course):
        first = upload(pipeline, "alice", "a.txt", paragraph_text(1).encode())
        upload(pipeline, "alice", "b.txt", paragraph_text(1).encode())

        assert pipeline.link_to_course("alice", [first], course.course_id) == 1
        linked = pipeline.list_documents("alice", course_id=course.course_id)
        assert [d["id"] for d in linked] == [first]
        assert len(pipeline.list_documents("alice")) == 2
        assert pipeline.list_documents("bob") == []

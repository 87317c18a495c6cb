"""
Unit tests for the LearningPlatform facade.

Tests error mapping, payload validation and the unlock-level checks.
"""

import pytest

from conftest import FakeEmbedder, FakeModel, answers_with, make_questions
from src.agents.model_router import ModelRouter
from src.agents.rag_instructor import NO_CONTEXT_ANSWER
from src.config import config
from src.errors import NotFoundError
from src.orchestrator import LearningPlatform

LESSON = (
    "Photosynthesis converts light energy into chemical energy stored in glucose.\n\n"
    "It takes place in the chloroplasts of plant cells, which contain chlorophyll.\n\n"
    "The light reactions split water and release oxygen as a by-product.\n\n"
    "The Calvin cycle then fixes carbon dioxide into sugars using ATP and NADPH."
)

OUTLINE = [
    {"name": "Beginner", "chapters": [{"title": "Cells", "content": "Cells are small."}]},
    {"name": "Intermediate", "chapters": [{"title": "Energy"}]},
    {"name": "Advanced", "chapters": [{"title": "Pathways"}]},
]


@pytest.fixture
def platform(db, storage, users):
    router = ModelRouter({"mentor": FakeModel(), "quiz": FakeModel(), "remediation": FakeModel()})
    return LearningPlatform(db, storage, FakeEmbedder(), router=router)


@pytest.fixture
def outline(platform, alice_ctx):
    return platform.create_course(alice_ctx, "Biology", OUTLINE)


def save_level_test(platform, ctx, outline, level_index=0):
    return platform.quiz_engine.save_quiz(
        ctx, outline["id"], make_questions(10), quiz_type="level_test", level_id=outline["levels"][level_index]["id"]
    )


class TestHandle:
    def test_success(self, platform, alice_ctx, outline):
        status, body = platform.handle(platform.unlocked_levels, alice_ctx, outline["id"])
        assert status == 200
        assert body["unlockedLevelIds"] == [outline["levels"][0]["id"]]

    def test_validation_error_is_400(self, platform, alice_ctx):
        status, body = platform.handle(platform.search_documents, alice_ctx, {"query": ""})
        assert status == 400
        assert body["error"] == "validation_error"

    def test_unknown_payload_key_rejected(self, platform, alice_ctx):
        status, _ = platform.handle(platform.submit_quiz, alice_ctx, {"quizId": "q", "answers": {}, "isAdmin": True})
        assert status == 400

    def test_anonymous_is_401(self, platform, outline):
        from src.utils.request_context import RequestContext

        status, body = platform.handle(platform.stats, RequestContext("bad-token", lambda token: None))
        assert status == 401
        assert body["error"] == "unauthorized"

    def test_unexpected_error_is_generic_500(self, platform):
        def explode():
            raise KeyError("internal column name")

        status, body = platform.handle(explode)
        assert status == 500
        assert "column" not in body["message"]

    def test_agents_missing_without_router(self, db, storage, users, alice_ctx, outline):
        bare = LearningPlatform(db, storage, FakeEmbedder())
        status, _ = bare.handle(bare.generate_chapter_quiz, alice_ctx, outline["id"], outline["levels"][0]["chapterIds"][0])
        assert status == 400

    def test_from_config_rejects_invalid_configuration(self, monkeypatch):
        monkeypatch.setattr(config.model, "api_key", "")
        with pytest.raises(ValueError, match="OPENAI_API_KEY"):
            LearningPlatform.from_config()


class TestCourses:
    def test_create_course_outline(self, platform, alice_ctx, outline):
        assert [level["orderIndex"] for level in outline["levels"]] == [0, 1, 2]
        assert len(outline["levels"][0]["chapterIds"]) == 1

    def test_course_levels_view(self, platform, alice_ctx, outline):
        levels = platform.course_levels(alice_ctx, outline["id"])
        assert [level["unlocked"] for level in levels] == [True, False, False]
        assert levels[0]["chapters"][0]["title"] == "Cells"
        assert [level["testPassed"] for level in levels] == [False, False, False]

    def test_course_needs_levels(self, platform, alice_ctx):
        status, _ = platform.handle(platform.create_course, alice_ctx, "Empty", [])
        assert status == 400

    def test_ensure_user_idempotent(self, platform):
        assert platform.ensure_user("carol", "carol@example.com") == "carol"
        assert platform.ensure_user("carol") == "carol"


class TestDocuments:
    def test_register_and_process(self, platform, storage, alice_ctx, outline):
        storage.upload("alice/lesson.txt", LESSON.encode("utf-8"), "text/plain")
        info = platform.register_document(
            alice_ctx,
            {
                "filename": "lesson.txt",
                "fileType": "text/plain",
                "fileSize": len(LESSON),
                "storagePath": "alice/lesson.txt",
                "courseId": outline["id"],
            },
        )
        assert info["processingStatus"] == "registered"

        platform.extract_document(alice_ctx, {"documentId": info["id"]})
        chunked = platform.chunk_document(alice_ctx, {"documentId": info["id"]})
        result = platform.embed_chunks(alice_ctx, {"documentId": info["id"]})

        assert result["embeddedCount"] == chunked["totalChunks"]
        assert result["remainingCount"] == 0
        assert platform.document_status(alice_ctx, info["id"])["processingStatus"] == "completed"
        assert [d["id"] for d in platform.list_documents(alice_ctx, outline["id"])] == [info["id"]]

    def test_foreign_storage_path_is_403(self, platform, alice_ctx):
        status, _ = platform.handle(
            platform.register_document,
            alice_ctx,
            {"filename": "x.txt", "fileType": "txt", "fileSize": 10, "storagePath": "bob/x.txt"},
        )
        assert status == 403

    def test_other_users_document_is_404(self, platform, storage, alice_ctx, bob_ctx):
        storage.upload("alice/lesson.txt", LESSON.encode("utf-8"), "text/plain")
        info = platform.register_document(
            alice_ctx,
            {"filename": "lesson.txt", "fileType": "txt", "fileSize": len(LESSON), "storagePath": "alice/lesson.txt"},
        )
        status, _ = platform.handle(platform.embed_chunks, bob_ctx, {"documentId": info["id"]})
        assert status == 404

    def test_search_notes_needs_course(self, platform, alice_ctx):
        status, body = platform.handle(platform.search_notes, alice_ctx, {"query": "cells"})
        assert status == 400
        assert "courseId" in body["message"]

    def test_mentor_without_material(self, platform, alice_ctx, outline):
        result = platform.ask_mentor(alice_ctx, outline["id"], "What is ATP?")
        assert result == {"answer": NO_CONTEXT_ANSWER, "citations": []}

    def test_mentor_checks_course_owner(self, platform, bob_ctx, outline):
        with pytest.raises(NotFoundError):
            platform.ask_mentor(bob_ctx, outline["id"], "What is ATP?")


class TestQuizzes:
    def test_start_and_submit(self, platform, alice_ctx, outline):
        quiz_id = save_level_test(platform, alice_ctx, outline)
        started = platform.start_quiz(alice_ctx, quiz_id)
        assert "correctOptionId" not in str(started["questions"])

        result = platform.submit_quiz(
            alice_ctx, {"quizId": quiz_id, "attemptId": started["attemptId"], "answers": answers_with(10, 9)}
        )
        assert result["passed"] is True
        assert result["nextLevelId"] == outline["levels"][1]["id"]

        history = platform.quiz_history(alice_ctx, quiz_id)
        assert history["bestScore"] == 90.0
        assert len(history["attempts"]) == 1
        assert history["summary"]["count"] == 1
        assert history["summary"]["mean"] == 90.0

        levels = platform.course_levels(alice_ctx, outline["id"])
        assert [level["testPassed"] for level in levels] == [True, False, False]
        assert [level["unlocked"] for level in levels] == [True, True, False]


class TestUnlockLevel:
    def payload(self, outline, attempt_id, level_index=0):
        return {"courseId": outline["id"], "levelId": outline["levels"][level_index]["id"], "attemptId": attempt_id}

    def test_passed_attempt_unlocks(self, platform, alice_ctx, outline):
        quiz_id = save_level_test(platform, alice_ctx, outline)
        attempt_id = platform.quiz_engine.submit_quiz(alice_ctx, quiz_id, answers_with(10, 7))["attemptId"]

        result = platform.unlock_level(alice_ctx, self.payload(outline, attempt_id))

        assert result["nextLevelId"] == outline["levels"][1]["id"]
        assert result["courseComplete"] is False
        # Already unlocked by the submit; the call is idempotent
        assert platform.unlock_level(alice_ctx, self.payload(outline, attempt_id)) == result

    def test_failed_attempt_is_403(self, platform, alice_ctx, outline):
        quiz_id = save_level_test(platform, alice_ctx, outline)
        attempt_id = platform.quiz_engine.submit_quiz(alice_ctx, quiz_id, answers_with(10, 3))["attemptId"]

        status, _ = platform.handle(platform.unlock_level, alice_ctx, self.payload(outline, attempt_id))
        assert status == 403
        assert platform.unlocked_levels(alice_ctx, outline["id"])["unlockedLevelIds"] == [outline["levels"][0]["id"]]

    def test_unsubmitted_attempt_is_403(self, platform, alice_ctx, outline):
        quiz_id = save_level_test(platform, alice_ctx, outline)
        attempt_id = platform.quiz_engine.create_attempt(alice_ctx, quiz_id)

        status, _ = platform.handle(platform.unlock_level, alice_ctx, self.payload(outline, attempt_id))
        assert status == 403

    def test_attempt_for_another_level_is_403(self, platform, alice_ctx, outline):
        quiz_id = save_level_test(platform, alice_ctx, outline, level_index=0)
        attempt_id = platform.quiz_engine.submit_quiz(alice_ctx, quiz_id, answers_with(10, 10))["attemptId"]

        status, _ = platform.handle(platform.unlock_level, alice_ctx, self.payload(outline, attempt_id, level_index=1))
        assert status == 403

    def test_section_quiz_attempt_is_403(self, platform, alice_ctx, outline):
        quiz_id = platform.quiz_engine.save_quiz(
            alice_ctx, outline["id"], make_questions(5), chapter_id=outline["levels"][0]["chapterIds"][0]
        )
        attempt_id = platform.quiz_engine.submit_quiz(alice_ctx, quiz_id, answers_with(5, 5))["attemptId"]

        status, _ = platform.handle(platform.unlock_level, alice_ctx, self.payload(outline, attempt_id))
        assert status == 403

    def test_unknown_attempt_is_403(self, platform, alice_ctx, outline):
        status, _ = platform.handle(platform.unlock_level, alice_ctx, self.payload(outline, "no-such-attempt"))
        assert status == 403

    def test_foreign_course_is_404(self, platform, alice_ctx, bob_ctx, outline):
        quiz_id = save_level_test(platform, alice_ctx, outline)
        attempt_id = platform.quiz_engine.submit_quiz(alice_ctx, quiz_id, answers_with(10, 10))["attemptId"]

        status, _ = platform.handle(platform.unlock_level, bob_ctx, self.payload(outline, attempt_id))
        assert status == 404

    def test_missing_field_is_400(self, platform, alice_ctx, outline):
        status, _ = platform.handle(platform.unlock_level, alice_ctx, {"courseId": outline["id"]})
        assert status == 400


class TestProgress:
    def test_skip_then_complete(self, platform, alice_ctx, outline):
        skipped = platform.skip_level(alice_ctx, {"courseId": outline["id"], "levelId": outline["levels"][0]["id"]})
        assert skipped["nextLevelName"] == "Intermediate"

        result = platform.complete_chapter(alice_ctx, outline["levels"][1]["chapterIds"][0])
        assert result["levelCompleted"] is True

        stats = platform.stats(alice_ctx)
        assert stats["chaptersCompleted"] == 1
        assert "first_chapter" in stats["earnedAchievements"]
        assert "level_intermediate" in stats["earnedAchievements"]

    def test_locked_chapter_is_403(self, platform, alice_ctx, outline):
        status, _ = platform.handle(platform.complete_chapter, alice_ctx, outline["levels"][2]["chapterIds"][0])
        assert status == 403

    def test_skip_last_level(self, platform, alice_ctx, outline):
        result = platform.skip_level(alice_ctx, {"courseId": outline["id"], "levelId": outline["levels"][2]["id"]})
        assert result == {"nextLevelId": None, "courseComplete": True}

"""
Unit tests for model routing and the LangChain-backed model.
"""

import unittest
from unittest.mock import MagicMock, Mock, patch

import pytest

from conftest import FakeModel
from src.agents.model_router import (
    GenerativeModel,
    LangChainModel,
    ModelRouter,
    parse_json_response,
)
from src.config import ModelConfig, token_tracker
from src.errors import UpstreamError

SCHEMA = {
    "type": "object",
    "required": ["answer"],
    "properties": {"answer": {"type": "string"}},
    "additionalProperties": False,
}


class TestParseJsonResponse:
    @pytest.mark.parametrize(
        "raw",
        [
            '{"answer": "42"}',
            '```json\n{"answer": "42"}\n```',
            'Sure!\n```\n{"answer": "42"}\n```',
        ],
    )
    def test_plain_and_fenced(self, raw):
        assert parse_json_response(raw) == {"answer": "42"}

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_json_response("not json")


class TestModelRouter:
    def test_for_task(self):
        quiz_model = FakeModel(model_name="quiz-model")
        router = ModelRouter({"quiz": quiz_model, "mentor": FakeModel()})

        assert router.for_task("quiz") is quiz_model
        assert set(router.tasks) == {"quiz", "mentor"}

    def test_unknown_task(self):
        with pytest.raises(ValueError, match="summaries"):
            ModelRouter({}).for_task("summaries")

    def test_routes_are_immutable(self):
        models = {"quiz": FakeModel()}
        router = ModelRouter(models)
        models["mentor"] = FakeModel()

        assert router.tasks == ("quiz",)
        with pytest.raises(TypeError):
            router._models["mentor"] = FakeModel()

    def test_fake_model_satisfies_protocol(self):
        assert isinstance(FakeModel(), GenerativeModel)

    @patch("src.agents.model_router.ChatOpenAI")
    def test_from_config_builds_one_model_per_route(self, mock_chat):
        model_config = ModelConfig()
        model_config.routes = {"mentor": "gpt-4o-mini", "quiz": "gpt-4o"}

        router = ModelRouter.from_config(model_config)

        assert router.for_task("quiz").model_name == "gpt-4o"
        assert router.for_task("mentor").model_name == "gpt-4o-mini"
        assert mock_chat.call_count == 2


class TestLangChainModel(unittest.TestCase):
    """Test LangChainModel with a mocked ChatOpenAI."""

    def setUp(self):
        patcher = patch("src.agents.model_router.ChatOpenAI")
        self.mock_chat = patcher.start()
        self.addCleanup(patcher.stop)
        self.llm = MagicMock()
        self.mock_chat.return_value = self.llm
        self.model = LangChainModel(model_name="gpt-test", temperature=0.0, timeout=5, task="mentor")
        token_tracker.reset()

    def reply(self, content, usage=None):
        self.llm.invoke.return_value = Mock(content=content, usage_metadata=usage)

    def test_constructor_passes_timeout(self):
        kwargs = self.mock_chat.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-test")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["temperature"], 0.0)

    def test_generate_text(self):
        self.reply("Photosynthesis makes sugar [1].", usage={"input_tokens": 120, "output_tokens": 30})

        text = self.model.generate_text("system", "question")

        self.assertEqual(text, "Photosynthesis makes sugar [1].")
        messages = self.llm.invoke.call_args.args[0]
        self.assertEqual(messages[0].content, "system")
        self.assertEqual(messages[1].content, "question")
        self.assertEqual(token_tracker.usage("mentor").total_tokens, 150)
        self.assertEqual(token_tracker.usage("quiz").calls, 0)

    def test_generate_structured_validates(self):
        self.reply('```json\n{"answer": "yes", "confidence": 0.9}\n```')

        data = self.model.generate_structured("system", "question", SCHEMA)

        self.assertEqual(data, {"answer": "yes"})
        system_prompt = self.llm.invoke.call_args.args[0][0].content
        self.assertIn("JSON Schema", system_prompt)

    def test_generate_structured_rejects_schema_mismatch(self):
        self.reply('{"answer": 42}')
        with self.assertRaises(UpstreamError):
            self.model.generate_structured("system", "question", SCHEMA)

    def test_generate_structured_rejects_non_json(self):
        self.reply("I'd rather not.")
        with self.assertRaises(UpstreamError):
            self.model.generate_structured("system", "question", SCHEMA)

    def test_provider_error_becomes_upstream_error(self):
        self.llm.invoke.side_effect = ConnectionError("connection reset")
        with self.assertRaises(UpstreamError) as cm:
            self.model.generate_text("system", "question")
        self.assertFalse(cm.exception.timed_out)

    def test_timeout_is_flagged(self):
        class APITimeoutError(Exception):
            pass

        self.llm.invoke.side_effect = APITimeoutError("Request timed out")
        with self.assertRaises(UpstreamError) as cm:
            self.model.generate_text("system", "question")
        self.assertTrue(cm.exception.timed_out)


if __name__ == "__main__":
    unittest.main()

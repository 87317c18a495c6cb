"""
Generative-model access for the agents.

The routing table (task -> model) is resolved once into a ModelRouter at
start-up and handed to the agents that need it; nothing mutates it
afterwards. LangChainModel wraps ChatOpenAI and turns every provider
failure, including timeouts, into UpstreamError.
"""

from __future__ import annotations

import json
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from loguru import logger

try:
    from ..config import ModelConfig, config, token_tracker
    from ..errors import UpstreamError
    from ..utils.validation import SchemaValidator
except ImportError:
    from src.config import ModelConfig, config, token_tracker
    from src.errors import UpstreamError
    from src.utils.validation import SchemaValidator


TASKS = ("mentor", "quiz", "remediation")


@runtime_checkable
class GenerativeModel(Protocol):
    model_name: str

    def generate_text(self, system_prompt: str, user_prompt: str) -> str:
        ...

    def generate_structured(
        self, system_prompt: str, user_prompt: str, output_schema: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...


def parse_json_response(response: str) -> Any:
    """Parse a JSON reply, tolerating a markdown code fence around it."""
    if "```json" in response:
        response = response.split("```json")[1].split("```")[0].strip()
    elif "```" in response:
        response = response.split("```")[1].split("```")[0].strip()
    return json.loads(response)


class LangChainModel:
    """
    ChatOpenAI-backed GenerativeModel.

    Args:
        model_name: OpenAI chat model
        temperature: Sampling temperature
        timeout: Request timeout in seconds (default from config)
        task: Routed task name, used to attribute token usage
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        task: str = "default",
    ):
        self.model_name = model_name or config.model.model_name
        self.temperature = config.model.temperature if temperature is None else temperature
        self.timeout = timeout or config.model.request_timeout
        self.task = task

        self.llm = ChatOpenAI(
            model=self.model_name,
            temperature=self.temperature,
            api_key=config.model.api_key,
            base_url=config.model.base_url,
            timeout=self.timeout,
            max_retries=config.model.max_retries,
            max_tokens=config.model.max_tokens,
        )

    def _invoke(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = self.llm.invoke(
                [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
            )
        except Exception as e:
            timed_out = "timeout" in type(e).__name__.lower()
            logger.warning(f"{self.model_name} call failed ({type(e).__name__}): {e}")
            raise UpstreamError(f"Generative model error: {e}", timed_out=timed_out) from e

        usage = getattr(response, "usage_metadata", None)
        if usage and config.logging.log_tokens:
            token_tracker.record(
                self.task, usage.get("input_tokens", 0), usage.get("output_tokens", 0)
            )

        return response.content

    def generate_text(self, system_prompt: str, user_prompt: str) -> str:
        return self._invoke(system_prompt, user_prompt)

    def generate_structured(
        self, system_prompt: str, user_prompt: str, output_schema: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Ask for JSON matching ``output_schema`` and validate the reply.

        Raises:
            UpstreamError: Call failed, reply is not JSON, or does not match the schema
        """
        instructions = (
            f"{system_prompt}\n\nRespond with a single JSON object only, matching this JSON Schema:\n"
            f"{json.dumps(output_schema)}"
        )
        raw = self._invoke(instructions, user_prompt)

        try:
            data = parse_json_response(raw)
        except (json.JSONDecodeError, IndexError) as e:
            raise UpstreamError(f"Model returned invalid JSON: {e}") from e

        result = SchemaValidator(output_schema).validate(data, auto_repair=True)
        if not result:
            raise UpstreamError(f"Model output does not match schema: {result.errors[0]}")
        return result.data


class ModelRouter:
    """
    Immutable task -> model map.

    Usage:
        router = ModelRouter.from_config()
        text = router.for_task("mentor").generate_text(system, user)
    """

    def __init__(self, models: Mapping[str, GenerativeModel]):
        self._models = MappingProxyType(dict(models))

    @classmethod
    def from_config(cls, model_config: Optional[ModelConfig] = None) -> "ModelRouter":
        model_config = model_config or config.model
        models: Dict[str, GenerativeModel] = {}
        for task, model_name in model_config.routes.items():
            models[task] = LangChainModel(
                model_name=model_name,
                temperature=model_config.temperature_for(task),
                timeout=model_config.request_timeout,
                task=task,
            )
        logger.info(
            "Model routes: " + ", ".join(f"{t}={m.model_name}" for t, m in models.items())
        )
        return cls(models)

    def for_task(self, task: str) -> GenerativeModel:
        try:
            return self._models[task]
        except KeyError:
            raise ValueError(f"No model routed for task '{task}'") from None

    @property
    def tasks(self) -> tuple:
        return tuple(self._models)

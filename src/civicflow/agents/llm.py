"""Shared LLM plumbing for LLM-backed agents.

LLM agents talk to an OpenAI-compatible endpoint through LangChain's
ChatOpenAI client and expect a single JSON object back. Provider and
parsing failures are raised as AgentExecutionError so the orchestrator
can retry them; nothing here retries on its own.
"""

import json
import logging
from typing import Any, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from src.civicflow.errors import AgentExecutionError


logger = logging.getLogger(__name__)


def parse_llm_response(response_text: str) -> Dict[str, Any]:
    """Parse an LLM response into a dictionary.

    Strips markdown code fences that models like to wrap JSON in.

    Raises:
        json.JSONDecodeError: If the response is not valid JSON.
        ValueError: If the JSON is not an object.
    """
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    data = json.loads(text.strip())
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def clamp_unit(value: Any, default: float = 0.0) -> float:
    """Coerce a model-reported confidence into [0, 1]."""
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


class LLMProvider:
    """Lazily-built ChatOpenAI client returning parsed JSON objects.

    Attributes:
        llm_url: URL of the OpenAI-compatible endpoint.
        model_name: Model used for inference.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        timeout: float = 30.0,
        temperature: float = 0.1,
        api_key: str = "not-needed",
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.timeout = timeout
        self.temperature = temperature
        self.api_key = api_key
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key,
            )
        return self._llm

    async def complete_json(
        self,
        agent_type: str,
        system_prompt: str,
        user_prompt: str,
    ) -> Dict[str, Any]:
        """Send a prompt pair and return the parsed JSON object.

        Raises:
            AgentExecutionError: If the call fails or the reply is not JSON.
        """
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ]

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise AgentExecutionError(
                agent_type, f"LLM invocation failed: {e}", cause=e
            ) from e

        response_text = response.content
        if not isinstance(response_text, str):
            raise AgentExecutionError(
                agent_type, f"Unexpected response type: {type(response_text)}"
            )

        try:
            return parse_llm_response(response_text)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(
                "Failed to parse LLM response as JSON",
                extra={
                    "agent_type": agent_type,
                    "response_preview": response_text[:200],
                    "error": str(e),
                },
            )
            raise AgentExecutionError(
                agent_type, f"Invalid JSON response: {e}", cause=e
            ) from e

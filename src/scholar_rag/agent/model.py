"""Model provider contract and the LangChain chat-model adapter."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.tools import BaseTool

from scholar_rag.errors import ProviderUnavailable

_JSON_FENCE = re.compile(r"```(?:json)?\s*|\s*```")


class ModelProvider(Protocol):
    """Text generation with optional tool schemas."""

    async def generate(
        self,
        messages: Sequence[BaseMessage],
        *,
        tools: Sequence[BaseTool] | None = None,
        temperature: float | None = None,
    ) -> AIMessage:
        """Return an AI message carrying text and/or `tool_calls`."""

    def stream(
        self,
        messages: Sequence[BaseMessage],
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas of a tool-free completion."""


class LangChainModelProvider:
    """Wraps a LangChain `BaseChatModel`; errors surface as `ProviderUnavailable`."""

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    async def generate(
        self,
        messages: Sequence[BaseMessage],
        *,
        tools: Sequence[BaseTool] | None = None,
        temperature: float | None = None,
    ) -> AIMessage:
        runnable: Any = self.llm.bind_tools(list(tools)) if tools else self.llm
        if temperature is not None:
            runnable = runnable.bind(temperature=temperature)
        try:
            response = await runnable.ainvoke(list(messages))
        except Exception as exc:
            raise ProviderUnavailable("model", str(exc)) from exc
        if isinstance(response, AIMessage):
            return response
        return AIMessage(content=str(getattr(response, "content", response)))

    async def stream(
        self,
        messages: Sequence[BaseMessage],
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        runnable: Any = self.llm if temperature is None else self.llm.bind(temperature=temperature)
        try:
            async for chunk in runnable.astream(list(messages)):
                text = message_text(chunk)
                if text:
                    yield text
        except Exception as exc:
            raise ProviderUnavailable("model", str(exc)) from exc


async def generate_text(
    provider: ModelProvider,
    prompt: str,
    *,
    system: str | None = None,
    temperature: float | None = None,
) -> str:
    messages: list[BaseMessage] = []
    if system:
        messages.append(SystemMessage(content=system))
    messages.append(HumanMessage(content=prompt))
    response = await provider.generate(messages, temperature=temperature)
    return message_text(response)


def message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts).strip()
    return str(content or "")


def parse_json_reply(text: str) -> Any:
    """Parse a JSON model reply, tolerating markdown code fences.

    Raises:
        ValueError: when the reply holds no valid JSON.
    """

    cleaned = _JSON_FENCE.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"(\{.*\}|\[.*\])", cleaned, flags=re.DOTALL)
        if match is None:
            raise ValueError(f"Reply is not JSON: {text[:80]!r}") from None
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Reply is not JSON: {text[:80]!r}") from exc

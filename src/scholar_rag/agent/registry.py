"""Tool dispatch table built on Pydantic v2 models."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Literal

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from scholar_rag.errors import ToolUnavailable
from scholar_rag.types import ToolTrace

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[dict[str, Any]]]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    tags: list[str] = Field(default_factory=list)

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self.args_schema.model_validate(payload)
        return await self.handler(data)


@dataclass(slots=True)
class ToolOutcome:
    """Result of one dispatched call. Dispatch never raises for tool errors."""

    name: str
    status: Literal["ok", "error", "unavailable"]
    output: dict[str, Any] | None = None
    error: str | None = None
    latency_ms: float = 0.0


class ToolRegistry:
    """Stores tool specs, dispatches calls by name, and exports LangChain tools."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._observer: Callable[[ToolTrace], None] | None = None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def names(self) -> frozenset[str]:
        return frozenset(self._tools)

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    async def execute(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Run a tool and return its output.

        Raises:
            ToolUnavailable: when ``name`` is not registered.
            pydantic.ValidationError: when ``payload`` does not match the schema.
        """

        spec = self._tools.get(name)
        if spec is None:
            raise ToolUnavailable(name)
        start = perf_counter()
        output = await spec.invoke(payload)
        self._notify(name, payload, _preview(output), (perf_counter() - start) * 1000.0)
        return output

    async def dispatch(self, name: str, payload: dict[str, Any]) -> ToolOutcome:
        """Run a tool, folding every failure into the returned outcome.

        Unknown names fall through to the ``unavailable`` arm.
        """

        start = perf_counter()
        try:
            output = await self.execute(name, payload)
        except ToolUnavailable as exc:
            logger.warning("Model requested unknown tool %s", name)
            return ToolOutcome(name=name, status="unavailable", error=str(exc))
        except ValidationError as exc:
            latency_ms = (perf_counter() - start) * 1000.0
            logger.warning("Invalid arguments for tool %s: %s", name, exc.errors())
            self._notify(name, payload, str(exc), latency_ms, status="error")
            return ToolOutcome(name=name, status="error", error=str(exc), latency_ms=latency_ms)
        except Exception as exc:
            latency_ms = (perf_counter() - start) * 1000.0
            logger.exception("Tool %s failed", name)
            self._notify(name, payload, str(exc), latency_ms, status="error")
            return ToolOutcome(name=name, status="error", error=str(exc), latency_ms=latency_ms)
        return ToolOutcome(
            name=name,
            status="ok",
            output=output,
            latency_ms=(perf_counter() - start) * 1000.0,
        )

    def as_langchain_tools(self) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._tools.values():
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    coroutine=self._build_coroutine(spec),
                )
            )
        return tools

    def _build_coroutine(self, spec: ToolSpec) -> Callable[..., Awaitable[dict[str, Any]]]:
        async def _call(**kwargs: Any) -> dict[str, Any]:
            return await self.execute(spec.name, kwargs)

        return _call

    def _notify(
        self,
        name: str,
        payload: dict[str, Any],
        preview: str,
        latency_ms: float,
        *,
        status: str = "ok",
    ) -> None:
        if self._observer is not None:
            self._observer(
                ToolTrace(
                    name=name,
                    input_payload=payload,
                    output_preview=preview[:320],
                    latency_ms=latency_ms,
                    status=status,
                )
            )


def _preview(output: dict[str, Any]) -> str:
    return json.dumps(output, ensure_ascii=False, default=str)

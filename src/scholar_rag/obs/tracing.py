"""Step tracing, timers, and token accounting."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from typing import Any

from scholar_rag.types import AgentStep, StepType

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


class StepRecorder:
    """Append-only step trace for one turn.

    ``step_index`` increases by one per recorded step. Steps recorded for the
    same concurrent dispatch share a ``group_index``.
    """

    def __init__(
        self,
        *,
        observer: Callable[[AgentStep], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.steps: list[AgentStep] = []
        self._observer = observer
        self._clock = clock
        self._group = 0

    def __len__(self) -> int:
        return len(self.steps)

    def new_group(self) -> int:
        self._group += 1
        return self._group

    def record(
        self,
        step_type: StepType,
        *,
        group_index: int | None = None,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
        tool_output: Any = None,
        reasoning: str | None = None,
        error: str | None = None,
        duration_ms: float = 0.0,
        token_usage: dict[str, int] | None = None,
    ) -> AgentStep:
        step = AgentStep(
            step_index=len(self.steps),
            group_index=group_index if group_index is not None else self.new_group(),
            step_type=step_type,
            timestamp=self._clock(),
            duration_ms=duration_ms,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_output=tool_output,
            reasoning=reasoning,
            error=error,
            token_usage=token_usage,
        )
        self.steps.append(step)
        if self._observer is not None:
            self._observer(step)
        return step


class Timer:
    """Context timer used around model and tool calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def token_usage(message: Any, *, prompt: str = "", completion: str = "") -> dict[str, int]:
    """Token counts reported by the model, or estimated from text when absent."""

    usage = getattr(message, "usage_metadata", None)
    if usage:
        return {
            "input_tokens": int(usage.get("input_tokens", 0)),
            "output_tokens": int(usage.get("output_tokens", 0)),
            "total_tokens": int(usage.get("total_tokens", 0)),
        }
    input_tokens = estimate_token_count(prompt)
    output_tokens = estimate_token_count(completion)
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }

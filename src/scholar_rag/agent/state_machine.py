"""Orchestrator states and the pure transition function."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from langchain_core.messages import AIMessage

from scholar_rag.agent.model import message_text
from scholar_rag.types import Language


class AgentState(str, Enum):
    INIT = "init"
    DECOMPOSE = "decompose"
    RETRIEVE = "retrieve"
    VERIFY = "verify"
    SYNTHESIZE = "synthesize"
    LANGUAGE_CORRECTION = "language_correction"
    BLOCKED = "blocked"
    EMPATHY = "empathy"
    TOOL_UNAVAILABLE = "tool_unavailable"
    DONE = "done"


TERMINAL_STATES = frozenset(
    {AgentState.DONE, AgentState.BLOCKED, AgentState.EMPATHY, AgentState.TOOL_UNAVAILABLE}
)

# Later phases win when one step mixes tools.
_TOOL_STATES: dict[str, AgentState] = {
    "decompose_query": AgentState.DECOMPOSE,
    "expand_query": AgentState.RETRIEVE,
    "search_documents": AgentState.RETRIEVE,
    "verify_claim": AgentState.VERIFY,
    "synthesize_answer": AgentState.SYNTHESIZE,
}
_PHASE_ORDER = (
    AgentState.DECOMPOSE,
    AgentState.RETRIEVE,
    AgentState.VERIFY,
    AgentState.SYNTHESIZE,
)


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ModelOutput:
    """A model reply reduced to what the transition function needs."""

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()

    @classmethod
    def from_message(cls, message: AIMessage) -> "ModelOutput":
        calls = tuple(
            ToolCall(
                id=str(call.get("id") or f"call_{idx}"),
                name=str(call.get("name", "")),
                args=dict(call.get("args") or {}),
            )
            for idx, call in enumerate(message.tool_calls or [])
        )
        return cls(text=message_text(message), tool_calls=calls)


@dataclass(frozen=True, slots=True)
class Transition:
    state: AgentState
    calls: tuple[ToolCall, ...] = ()
    answer: str | None = None
    reason: str | None = None


def next_state(
    state: AgentState,
    output: ModelOutput | None,
    steps_used: int,
    max_steps: int,
    known_tools: Collection[str],
) -> Transition:
    """Decide the next state from the latest model output.

    ``steps_used`` counts tool-calling steps already executed. Once it reaches
    ``max_steps`` the only move left is a forced SYNTHESIZE. A reply without
    tool calls is the final answer. Calls naming an unregistered tool still
    go out as one group, so the dispatch table's default arm can record them,
    and the run then ends in TOOL_UNAVAILABLE.
    """

    if state in TERMINAL_STATES:
        return Transition(state)
    if steps_used >= max_steps:
        return Transition(AgentState.SYNTHESIZE, reason="step_budget_exhausted")
    if output is None:
        return Transition(AgentState.SYNTHESIZE, reason="no_model_output")
    if not output.tool_calls:
        return Transition(AgentState.DONE, answer=output.text)

    if any(call.name not in known_tools for call in output.tool_calls):
        return Transition(AgentState.TOOL_UNAVAILABLE, calls=output.tool_calls, reason="unknown_tool")

    phases = {_TOOL_STATES.get(call.name, AgentState.RETRIEVE) for call in output.tool_calls}
    target = max(phases, key=_PHASE_ORDER.index)
    return Transition(target, calls=output.tool_calls)


def after_synthesis(answer_language: Language, query_language: Language, corrected: bool) -> AgentState:
    """Route a produced answer: one language correction pass at most."""

    if answer_language != query_language and not corrected:
        return AgentState.LANGUAGE_CORRECTION
    return AgentState.DONE

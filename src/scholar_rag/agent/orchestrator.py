"""Tool-calling agent loop with guardrail checkpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from time import perf_counter

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage, ToolMessage

from scholar_rag.agent.model import ModelProvider
from scholar_rag.agent.registry import ToolOutcome, ToolRegistry
from scholar_rag.agent.state_machine import (
    AgentState,
    ModelOutput,
    ToolCall,
    after_synthesis,
    next_state,
)
from scholar_rag.agent.tools import (
    Synthesis,
    TurnContext,
    register_builtin_tools,
    source_triples,
    synthesize_answer,
)
from scholar_rag.config import AgentConfig, RagOptions
from scholar_rag.errors import LanguageMismatch, ProviderUnavailable, ValidationBlocked
from scholar_rag.guardrails.service import GuardrailService
from scholar_rag.language import LANGUAGE_NAMES, detect_language, message
from scholar_rag.obs.tracing import StepRecorder, Timer, token_usage
from scholar_rag.retrieval.hybrid import HybridRetriever
from scholar_rag.retrieval.reranker import RerankerService
from scholar_rag.session.state import SessionStateStore
from scholar_rag.types import (
    SEVERITY_ORDER,
    AgenticRagResult,
    AgentStep,
    Failure,
    GuardrailResults,
    Language,
    RunStatus,
    StepType,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are an academic research assistant with access to specialized tools.

Capabilities:
1) Search documents with hybrid retrieval (Okapi BM25 + vector similarity).
2) Expand queries with academic synonyms.
3) Decompose complex academic questions into simpler sub-questions.
4) Verify claims against retrieved sources.
5) Synthesize information from multiple documents.

Rules:
- Always ground answers in tool outputs from `search_documents`.
- Cite every factual statement with source numbers like [1], [2], [3].
- Only cite numbers returned by `search_documents`.
- If evidence is missing, say explicitly that it cannot be verified.
- Always answer in {language}.

Parallel tool execution:
- For complex questions, FIRST call `decompose_query`.
- Then call `search_documents` for ALL sub-questions IN ONE RESPONSE; do not call them one at a time.
- Finish with `synthesize_answer` or a final cited answer.
""".strip()

_STEP_TYPES: dict[str, StepType] = {
    "search_documents": "retrieval",
    "synthesize_answer": "synthesis",
}


def system_prompt(language: Language) -> str:
    return SYSTEM_PROMPT.format(language=LANGUAGE_NAMES[language])


@dataclass(slots=True)
class _LoopOutcome:
    state: AgentState
    answer: str | None = None
    reason: str | None = None


class _AnswerRelay:
    """Hands streamed synthesis text to a caller.

    Deltas are held until enough words have arrived to confirm the answer is
    in the query language; after that they pass straight through. Held text
    is released when the pass turns out to be final, and dropped when a
    language correction replaces it.
    """

    def __init__(
        self,
        emit: Callable[[str], None],
        on_retract: Callable[[], None] | None,
        language: Language,
        *,
        min_words: int = 12,
    ) -> None:
        self.language = language
        self.min_words = min_words
        self._emit = emit
        self._on_retract = on_retract
        self._held: list[str] = []
        self._sent: list[str] = []
        self._live = False

    @property
    def text(self) -> str:
        return "".join(self._sent)

    def feed(self, delta: str) -> None:
        if self._live:
            self._send(delta)
            return
        self._held.append(delta)
        held = "".join(self._held)
        if len(held.split()) >= self.min_words and detect_language(held) == self.language:
            self.release()

    def release(self) -> None:
        self._live = True
        held, self._held = "".join(self._held), []
        if held:
            self._send(held)

    def restart(self) -> None:
        self.retract()
        self._held = []
        self._live = False

    def retract(self) -> None:
        if self._sent and self._on_retract is not None:
            self._on_retract()
        self._sent = []

    def _send(self, text: str) -> None:
        self._sent.append(text)
        self._emit(text)


class AgentOrchestrator:
    """Runs one agent turn: guardrails, tool loop, synthesis, and checks.

    The loop asks the model for tool calls, dispatches each step's calls
    concurrently, and advances through `next_state`. Session state is shared
    only through the injected `SessionStateStore`.
    """

    def __init__(
        self,
        *,
        provider: ModelProvider,
        retriever: HybridRetriever,
        sessions: SessionStateStore,
        reranker: RerankerService | None = None,
        guardrails: GuardrailService | None = None,
        config: AgentConfig | None = None,
    ) -> None:
        self.provider = provider
        self.retriever = retriever
        self.sessions = sessions
        self.reranker = reranker
        self.guardrails = guardrails
        self.config = config or AgentConfig()

    def prepare(self, query: str, options: RagOptions | None = None) -> TurnContext:
        opts = options or RagOptions()
        return TurnContext(
            session_id=opts.session_id or uuid.uuid4().hex,
            language=detect_language(query),
            retrieval_strategy=opts.retrieval_strategy,
            use_reranker=opts.use_reranker and opts.reranker_strategy != "none",
            reranker_strategy=opts.reranker_strategy,
        )

    async def run(
        self,
        query: str,
        options: RagOptions | None = None,
        *,
        context: TurnContext | None = None,
        on_step: Callable[[AgentStep], None] | None = None,
        on_text: Callable[[str], None] | None = None,
        on_retract: Callable[[], None] | None = None,
    ) -> AgenticRagResult:
        """Run one full turn and return the answer with its step trace.

        When ``on_text`` is given, a synthesis pass is streamed to it as the
        model produces it. ``on_retract`` is called when text already handed
        out is replaced, either by a language correction or by a failure.
        """

        opts = options or RagOptions()
        ctx = context or self.prepare(query, opts)
        relay = _AnswerRelay(on_text, on_retract, ctx.language) if on_text is not None else None
        self.sessions.begin_turn(ctx.session_id)
        try:
            result = await self._run(query, opts, ctx, on_step, relay)
        finally:
            self.sessions.end_turn(ctx.session_id)
        if relay is not None and relay.text.strip() != result.answer:
            relay.retract()
        return result

    async def _run(
        self,
        query: str,
        opts: RagOptions,
        ctx: TurnContext,
        on_step: Callable[[AgentStep], None] | None,
        relay: _AnswerRelay | None,
    ) -> AgenticRagResult:
        language = ctx.language
        recorder = StepRecorder(observer=on_step)
        guardrail_results = GuardrailResults()
        flags: dict[str, object] = {}
        started = perf_counter()
        logger.info(
            "Starting turn session=%s language=%s strategy=%s guardrails=%s",
            ctx.session_id,
            language,
            ctx.retrieval_strategy,
            opts.enable_guardrails,
        )

        def finish(answer: str, status: RunStatus, failure: Failure | None = None) -> AgenticRagResult:
            sources = ctx.collected_sources()
            result = AgenticRagResult(
                answer=answer,
                status=status,
                session_id=ctx.session_id,
                language=language,
                steps=list(recorder.steps),
                retrieved_chunks=sources,
                citations=ctx.citations(),
                guardrail_results=guardrail_results,
                total_latency_ms=(perf_counter() - started) * 1000.0,
                flags=flags,
                failure=failure,
            )
            logger.info(
                "Finished turn session=%s status=%s steps=%d sources=%d latency_ms=%.1f",
                ctx.session_id,
                status,
                len(result.steps),
                len(sources),
                result.total_latency_ms,
            )
            return result

        effective_query = query
        if opts.enable_guardrails and self.guardrails is not None:
            try:
                effective_query = await self._check_input(self.guardrails, query, guardrail_results)
            except ValidationBlocked as exc:
                logger.info("Input blocked session=%s: %s", ctx.session_id, exc)
                recorder.record("reasoning", reasoning=str(exc))
                text = message("policy_blocked", language)
                return finish(text, "blocked", Failure(kind="validation_blocked", message=text))
            except ProviderUnavailable as exc:
                logger.error("Input guardrails failed session=%s: %s", ctx.session_id, exc)
                text = message("generic_failure", language)
                return finish(text, "failed", Failure(kind="guardrail_unavailable", message=text))

            try:
                reaction = await self.guardrails.detect_negative_reaction(query)
            except Exception:
                logger.exception("Negative reaction detection failed session=%s", ctx.session_id)
                reaction = None
            if reaction is not None and reaction.detected:
                guardrail_results.negative_reaction = reaction
                if SEVERITY_ORDER.index(reaction.severity) >= SEVERITY_ORDER.index("high"):
                    recorder.record(
                        "reasoning",
                        reasoning=f"negative reaction: {reaction.reaction_type}",
                    )
                    return finish(reaction.suggested_response, "empathetic")

        registry = ToolRegistry()
        register_builtin_tools(
            registry,
            context=ctx,
            provider=self.provider,
            retriever=self.retriever,
            sessions=self.sessions,
            reranker=self.reranker,
            config=self.config,
        )
        max_steps = opts.max_steps or self.config.max_steps

        try:
            try:
                outcome = await asyncio.wait_for(
                    self._agent_loop(effective_query, ctx, registry, recorder, max_steps),
                    timeout=self.config.turn_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Turn exceeded %.1fs; synthesizing from %d partial sources",
                    self.config.turn_timeout_seconds,
                    len(ctx.sources),
                )
                flags["timed_out"] = True
                outcome = _LoopOutcome(AgentState.SYNTHESIZE, reason="timed_out")

            if outcome.state is AgentState.TOOL_UNAVAILABLE:
                text = message("tool_unavailable", language)
                return finish(text, "tool_unavailable", Failure(kind="tool_unavailable", message=text))

            if outcome.state is AgentState.SYNTHESIZE and outcome.reason == "step_budget_exhausted":
                flags["step_budget_exhausted"] = True
            answer = await asyncio.wait_for(
                self._finalize(effective_query, ctx, recorder, outcome, flags, relay),
                timeout=self.config.synthesis_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Synthesis exceeded %.1fs session=%s; returning failure",
                self.config.synthesis_timeout_seconds,
                ctx.session_id,
            )
            flags["synthesis_timed_out"] = True
            text = message("generic_failure", language)
            return finish(text, "failed", Failure(kind="timeout", message=text))
        except ProviderUnavailable as exc:
            logger.warning("Generation failed session=%s: %s", ctx.session_id, exc)
            text = message("generic_failure", language)
            return finish(text, "failed", Failure(kind="provider_unavailable", message=text))

        if opts.enable_guardrails and self.guardrails is not None:
            try:
                verdict = await self.guardrails.validate_output(
                    answer,
                    query=query,
                    sources=ctx.collected_sources(),
                )
            except Exception:
                logger.exception("Output guardrails failed session=%s", ctx.session_id)
                flags["output_validation_skipped"] = True
            else:
                guardrail_results.output = verdict
                if verdict.violations:
                    flags["output_violations"] = [v.rule for v in verdict.violations]

        return finish(answer, "completed")

    async def _check_input(self, guardrails: GuardrailService, query: str, results: GuardrailResults) -> str:
        """Validate ``query`` and return the text the agent should work on.

        Raises `ValidationBlocked` for policy violations and
        `ProviderUnavailable` when the guardrail service itself fails.
        """

        try:
            verdict = await guardrails.validate_input(query)
        except Exception as exc:
            raise ProviderUnavailable("guardrails", str(exc)) from exc
        results.input = verdict
        if not verdict.passed:
            raise ValidationBlocked(verdict)
        return verdict.modified_content or query

    async def _finalize(
        self,
        query: str,
        ctx: TurnContext,
        recorder: StepRecorder,
        outcome: _LoopOutcome,
        flags: dict[str, object],
        relay: _AnswerRelay | None,
    ) -> str:
        if outcome.state is AgentState.SYNTHESIZE:
            answer = (await self._synthesize(query, ctx, recorder, outcome.reason, relay=relay)).answer
        else:
            answer = outcome.answer or ""

        answer_language = detect_language(answer)
        if after_synthesis(answer_language, ctx.language, corrected=False) is AgentState.LANGUAGE_CORRECTION:
            mismatch = LanguageMismatch(ctx.language, answer_language)
            logger.info("Re-synthesizing answer: %s", mismatch)
            answer = (
                await self._synthesize(query, ctx, recorder, str(mismatch), strict_language=True, relay=relay)
            ).answer
            flags["language_corrected"] = True
        if relay is not None:
            relay.release()
        return answer

    async def _agent_loop(
        self,
        query: str,
        ctx: TurnContext,
        registry: ToolRegistry,
        recorder: StepRecorder,
        max_steps: int,
    ) -> _LoopOutcome:
        messages: list[BaseMessage] = [
            SystemMessage(content=system_prompt(ctx.language)),
            HumanMessage(content=query),
        ]
        tools = registry.as_langchain_tools()
        known = registry.names()
        state = AgentState.INIT
        steps_used = 0

        while True:
            reply = None
            output = None
            timer = Timer()
            if steps_used < max_steps:
                with timer:
                    reply = await self.provider.generate(
                        messages, tools=tools, temperature=self.config.temperature
                    )
                output = ModelOutput.from_message(reply)

            transition = next_state(state, output, steps_used, max_steps, known)
            logger.debug(
                "Transition %s -> %s calls=%d steps_used=%d",
                state.value,
                transition.state.value,
                len(transition.calls),
                steps_used,
            )

            if transition.state is AgentState.DONE:
                answer = (transition.answer or "").strip()
                if not answer:
                    return _LoopOutcome(AgentState.SYNTHESIZE, reason="empty_answer")
                recorder.record(
                    "synthesis",
                    reasoning="final answer from model",
                    tool_output={"answer": answer},
                    duration_ms=timer.elapsed_ms,
                    token_usage=token_usage(reply, completion=answer),
                )
                return _LoopOutcome(AgentState.DONE, answer=answer)

            if not transition.calls:
                return _LoopOutcome(transition.state, reason=transition.reason)

            messages.append(reply)
            outcomes = await self._dispatch_group(registry, transition.calls, recorder)
            steps_used += 1
            for call, outcome in zip(transition.calls, outcomes, strict=True):
                messages.append(
                    ToolMessage(
                        content=_tool_message_content(outcome),
                        tool_call_id=call.id,
                        name=call.name,
                    )
                )

            if transition.state is AgentState.TOOL_UNAVAILABLE:
                return _LoopOutcome(AgentState.TOOL_UNAVAILABLE, reason=transition.reason)

            synthesized = next(
                (o for o in outcomes if o.name == "synthesize_answer" and o.status == "ok" and o.output),
                None,
            )
            if synthesized is not None:
                return _LoopOutcome(AgentState.DONE, answer=str(synthesized.output["answer"]))
            state = transition.state

    async def _dispatch_group(
        self,
        registry: ToolRegistry,
        calls: tuple[ToolCall, ...],
        recorder: StepRecorder,
    ) -> list[ToolOutcome]:
        group = recorder.new_group()
        results = await asyncio.gather(
            *(registry.dispatch(call.name, call.args) for call in calls),
            return_exceptions=True,
        )
        outcomes: list[ToolOutcome] = []
        for call, result in zip(calls, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Tool task %s failed: %s", call.name, result)
                result = ToolOutcome(name=call.name, status="error", error=str(result))
            outcomes.append(result)
            output = result.output or {}
            recorder.record(
                _STEP_TYPES.get(call.name, "tool_call"),
                group_index=group,
                tool_name=call.name,
                tool_input=call.args,
                tool_output=output or None,
                error=result.error,
                duration_ms=result.latency_ms,
                token_usage=output.get("token_usage"),
            )
        return outcomes

    async def _synthesize(
        self,
        query: str,
        ctx: TurnContext,
        recorder: StepRecorder,
        reason: str | None,
        *,
        strict_language: bool = False,
        relay: _AnswerRelay | None = None,
    ) -> Synthesis:
        sources = source_triples(ctx.collected_sources())[: self.config.synthesis_source_limit]
        if relay is not None:
            relay.restart()
        with Timer() as timer:
            result = await synthesize_answer(
                self.provider,
                query,
                sources,
                ctx.language,
                temperature=self.config.temperature,
                strict_language=strict_language,
                on_delta=relay.feed if relay is not None else None,
            )
        recorder.record(
            "synthesis",
            tool_name="synthesize_answer",
            tool_input={"question": query, "source_count": len(sources)},
            tool_output={"answer": result.answer, "source_count": result.source_count},
            reasoning=reason,
            duration_ms=timer.elapsed_ms,
            token_usage=result.token_usage,
        )
        return result


def _tool_message_content(outcome: ToolOutcome) -> str:
    if outcome.status == "ok":
        payload = {k: v for k, v in (outcome.output or {}).items() if k != "token_usage"}
    else:
        payload = {"status": outcome.status, "error": outcome.error}
    return json.dumps(payload, ensure_ascii=False, default=str)

"""Caller-facing engine API and production wiring."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Literal

from scholar_rag.agent.fallback import OfflineModelProvider
from scholar_rag.agent.model import LangChainModelProvider, ModelProvider
from scholar_rag.agent.orchestrator import AgentOrchestrator
from scholar_rag.config import (
    AgentConfig,
    EngineSettings,
    RagOptions,
    RerankerConfig,
    RetrievalConfig,
)
from scholar_rag.guardrails.service import GuardrailService, PatternGuardrailService
from scholar_rag.retrieval.document_store import DocumentStore
from scholar_rag.retrieval.embedder import Embedder, HashingEmbedder, LangChainEmbedder
from scholar_rag.retrieval.hybrid import HybridRetriever
from scholar_rag.retrieval.reranker import RerankerService, build_rerankers
from scholar_rag.session.state import InMemorySessionStore, SessionStateStore
from scholar_rag.types import AgenticRagResult, AgentStep, Citation, Language, RetrievalResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamEvent:
    type: Literal["step", "text", "retract", "done"]
    step: AgentStep | None = None
    text: str | None = None
    result: AgenticRagResult | None = None


class AgenticRagStream:
    """Live view of one running turn.

    Must be created inside a running event loop; the turn starts immediately.
    `events()` yields each recorded step as it happens and the answer text in
    chunks while the final synthesis streams. A ``retract`` event means the
    text sent so far was replaced and should be discarded. The last event is
    ``done`` carrying the result.
    """

    def __init__(self, orchestrator: AgentOrchestrator, query: str, options: RagOptions) -> None:
        self.context = orchestrator.prepare(query, options)
        self.steps: list[AgentStep] = []
        self._streamed: list[str] = []
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._task = asyncio.create_task(self._drive(orchestrator, query, options))

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def language(self) -> Language:
        return self.context.language

    @property
    def retrieved_chunks(self) -> list[RetrievalResult]:
        return self.context.collected_sources()

    @property
    def citations(self) -> list[Citation]:
        return self.context.citations()

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def result(self) -> AgenticRagResult:
        return await self._task

    async def _drive(
        self,
        orchestrator: AgentOrchestrator,
        query: str,
        options: RagOptions,
    ) -> AgenticRagResult:
        try:
            result = await orchestrator.run(
                query,
                options,
                context=self.context,
                on_step=self._on_step,
                on_text=self._on_text,
                on_retract=self._on_retract,
            )
            if not self._streamed:
                self._queue.put_nowait(StreamEvent(type="text", text=result.answer))
            self._queue.put_nowait(StreamEvent(type="done", result=result))
            return result
        finally:
            self._queue.put_nowait(None)

    def _on_step(self, step: AgentStep) -> None:
        self.steps.append(step)
        self._queue.put_nowait(StreamEvent(type="step", step=step))

    def _on_text(self, text: str) -> None:
        self._streamed.append(text)
        self._queue.put_nowait(StreamEvent(type="text", text=text))

    def _on_retract(self) -> None:
        self._streamed.clear()
        self._queue.put_nowait(StreamEvent(type="retract"))


class AgenticRagEngine:
    """Agentic hybrid-retrieval engine.

    Owns the retriever, reranker, session store and guardrails; the document
    store and model provider are supplied by the caller.
    """

    def __init__(
        self,
        *,
        provider: ModelProvider,
        document_store: DocumentStore,
        embedder: Embedder,
        sessions: SessionStateStore | None = None,
        guardrails: GuardrailService | None = None,
        reranker: RerankerService | None = None,
        retrieval_config: RetrievalConfig | None = None,
        reranker_config: RerankerConfig | None = None,
        agent_config: AgentConfig | None = None,
        cross_encoder_scorer: Callable[[str, list[str]], Sequence[float]] | None = None,
    ) -> None:
        retrieval_cfg = retrieval_config or RetrievalConfig()
        reranker_cfg = reranker_config or RerankerConfig()
        self.provider = provider
        self.retriever = HybridRetriever(document_store, embedder, retrieval_cfg)
        self.reranker = reranker or RerankerService(
            build_rerankers(
                provider,
                reranker_cfg,
                cross_encoder_scorer=cross_encoder_scorer,
                rrf_k=retrieval_cfg.rrf_k,
            ),
            reranker_cfg,
        )
        self.sessions = sessions or InMemorySessionStore()
        self.guardrails = guardrails or PatternGuardrailService()
        self.orchestrator = AgentOrchestrator(
            provider=provider,
            retriever=self.retriever,
            sessions=self.sessions,
            reranker=self.reranker,
            guardrails=self.guardrails,
            config=agent_config,
        )

    async def run(self, query: str, options: RagOptions | None = None) -> AgenticRagResult:
        return await self.orchestrator.run(query, options or RagOptions())

    def stream(self, query: str, options: RagOptions | None = None) -> AgenticRagStream:
        return AgenticRagStream(self.orchestrator, query, options or RagOptions())

    def clear_session(self, session_id: str) -> None:
        self.sessions.clear(session_id)


async def run_agentic_rag(
    engine: AgenticRagEngine,
    query: str,
    options: RagOptions | None = None,
) -> AgenticRagResult:
    return await engine.run(query, options)


def create_model_provider(settings: EngineSettings) -> ModelProvider:
    if not settings.llm_configured:
        logger.info("No API key configured; using the offline model provider")
        return OfflineModelProvider(max_sub_questions=settings.agent.max_sub_questions)

    api_key = settings.openai_api_key
    if settings.azure_endpoint:
        from langchain_openai import AzureChatOpenAI

        llm = AzureChatOpenAI(
            azure_endpoint=settings.azure_endpoint,
            azure_deployment=settings.chat_model,
            api_version=settings.azure_api_version,
            api_key=api_key,
            temperature=settings.agent.temperature,
        )
    else:
        from langchain_openai import ChatOpenAI

        llm = ChatOpenAI(model=settings.chat_model, api_key=api_key, temperature=settings.agent.temperature)
    return LangChainModelProvider(llm)


def create_embedder(settings: EngineSettings) -> Embedder:
    if not settings.llm_configured:
        return HashingEmbedder()

    api_key = settings.openai_api_key
    if settings.azure_endpoint:
        from langchain_openai import AzureOpenAIEmbeddings

        embeddings = AzureOpenAIEmbeddings(
            azure_endpoint=settings.azure_endpoint,
            azure_deployment=settings.embedding_model,
            api_version=settings.azure_api_version,
            api_key=api_key,
        )
    else:
        from langchain_openai import OpenAIEmbeddings

        embeddings = OpenAIEmbeddings(model=settings.embedding_model, api_key=api_key)
    return LangChainEmbedder(embeddings)


def build_engine(
    document_store: DocumentStore,
    settings: EngineSettings | None = None,
    *,
    embedder: Embedder | None = None,
) -> AgenticRagEngine:
    """Wire an engine from environment settings.

    Without an API key the engine runs fully offline with the deterministic
    provider and the hashing embedder. ``embedder`` must match the one used
    to index ``document_store``.
    """

    cfg = settings or EngineSettings()
    return AgenticRagEngine(
        provider=create_model_provider(cfg),
        document_store=document_store,
        embedder=embedder or create_embedder(cfg),
        sessions=InMemorySessionStore(cfg.session),
        retrieval_config=cfg.retrieval,
        reranker_config=cfg.reranker,
        agent_config=cfg.agent,
    )

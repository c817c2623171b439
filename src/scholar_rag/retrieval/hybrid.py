"""Hybrid retriever combining vector and BM25 branches."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable

from scholar_rag.config import RetrievalConfig, RetrievalStrategy
from scholar_rag.errors import ProviderUnavailable
from scholar_rag.language import detect_language
from scholar_rag.retrieval.document_store import DocumentStore
from scholar_rag.retrieval.embedder import Embedder
from scholar_rag.retrieval.fusion import FusionLayer, single_branch
from scholar_rag.types import Language, RetrievalResult, ScoredChunk

logger = logging.getLogger(__name__)


class HybridRetriever:
    """Runs the vector and keyword branches and fuses them with RRF.

    Each branch is oversampled to ``top_k * oversample_factor`` candidates
    before fusion. Both branches are awaited together; when one of them fails
    the hybrid path continues with the other.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.document_store = document_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.fusion = FusionLayer(rrf_k=self.config.rrf_k)

    async def retrieve(
        self,
        query: str,
        *,
        top_k: int | None = None,
        min_similarity: float | None = None,
        strategy: RetrievalStrategy | None = None,
        language: Language | None = None,
    ) -> list[RetrievalResult]:
        final_k = top_k or self.config.top_k
        threshold = self.config.min_similarity if min_similarity is None else min_similarity
        mode = strategy or self.config.strategy
        lang = language or detect_language(query)
        candidate_k = final_k * self.config.oversample_factor

        routes: dict[str, Awaitable[list[ScoredChunk]]] = {}
        if mode in ("vector", "hybrid"):
            routes["vector"] = self._vector_branch(query, candidate_k)
        if mode in ("keyword", "hybrid"):
            routes["keyword"] = self.document_store.keyword_search(query, candidate_k, lang)

        outcomes = await asyncio.gather(*routes.values(), return_exceptions=True)
        branches: dict[str, list[ScoredChunk]] = {}
        for route, outcome in zip(routes, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Retrieval branch %s failed: %s", route, outcome)
                continue
            branches[route] = outcome

        if not branches:
            raise ProviderUnavailable("retrieval", f"all branches failed for strategy={mode}")

        if mode == "hybrid":
            if len(branches) < 2:
                logger.warning("Hybrid retrieval degraded to %s branch", next(iter(branches)))
            results = self.fusion.fuse(branches)
        else:
            results = single_branch(branches[mode], mode)

        kept = [r for r in results if r.fused_score >= threshold][:final_k]
        logger.debug(
            "Retrieved %d/%d results strategy=%s language=%s",
            len(kept),
            len(results),
            mode,
            lang,
        )
        return kept

    async def _vector_branch(self, query: str, k: int) -> list[ScoredChunk]:
        embedding = await self.embedder.embed_query(query)
        return await self.document_store.vector_search(embedding, k)

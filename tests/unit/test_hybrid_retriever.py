import pytest

from scholar_rag.config import RetrievalConfig
from scholar_rag.errors import ProviderUnavailable
from scholar_rag.retrieval.document_store import InMemoryDocumentStore
from scholar_rag.retrieval.hybrid import HybridRetriever


class _BrokenVectorStore(InMemoryDocumentStore):
    async def vector_search(self, query_embedding, k):
        raise RuntimeError("vector index offline")


class _BrokenStore(_BrokenVectorStore):
    async def keyword_search(self, query_text, k, language):
        raise RuntimeError("keyword index offline")


def _populate(store, embedder, corpus):
    store.upsert(corpus, [embedder.embed_sync(chunk.content) for chunk in corpus])
    return store


async def test_hybrid_retrieval_ranks_matching_chunk_first(store, embedder) -> None:
    retriever = HybridRetriever(store, embedder)

    results = await retriever.retrieve("berapa biaya kuliah per semester", top_k=3)

    assert results[0].chunk_id == "biaya-0"
    assert results[0].retrieval_method == "hybrid"
    assert results[0].vector_score is not None
    assert results[0].bm25_score is not None
    assert len(results) <= 3


async def test_hybrid_retrieval_is_deterministic(store, embedder) -> None:
    retriever = HybridRetriever(store, embedder)

    first = await retriever.retrieve("thesis defense supervisors")
    second = await retriever.retrieve("thesis defense supervisors")

    assert [(r.chunk_id, r.fused_score) for r in first] == [(r.chunk_id, r.fused_score) for r in second]


async def test_keyword_strategy_normalizes_scores(store, embedder) -> None:
    retriever = HybridRetriever(store, embedder)

    results = await retriever.retrieve("library books", strategy="keyword", language="en")

    assert results[0].chunk_id == "library-0"
    assert results[0].fused_score == 1.0
    assert results[0].vector_score is None
    assert all(0.0 <= r.fused_score <= 1.0 for r in results)


async def test_threshold_can_empty_the_result(store, embedder) -> None:
    retriever = HybridRetriever(store, embedder, RetrievalConfig(min_similarity=0.5))

    assert await retriever.retrieve("biaya kuliah") == []


async def test_hybrid_degrades_to_surviving_branch(embedder, corpus) -> None:
    retriever = HybridRetriever(_populate(_BrokenVectorStore(), embedder, corpus), embedder)

    results = await retriever.retrieve("tuition fees semester", language="en")

    assert results
    assert results[0].chunk_id == "tuition-0"
    assert all(r.vector_score is None for r in results)


async def test_all_branches_failing_raises_provider_unavailable(embedder, corpus) -> None:
    retriever = HybridRetriever(_populate(_BrokenStore(), embedder, corpus), embedder)

    with pytest.raises(ProviderUnavailable):
        await retriever.retrieve("tuition fees")


async def test_empty_store_returns_nothing(embedder) -> None:
    retriever = HybridRetriever(InMemoryDocumentStore(), embedder)

    assert await retriever.retrieve("anything at all") == []

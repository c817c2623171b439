"""Document store contract and an in-memory implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from rank_bm25 import BM25Okapi

from scholar_rag.language import tokenize
from scholar_rag.types import Chunk, Language, ScoredChunk

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    """Read-only retrieval contract the engine relies on."""

    async def vector_search(self, query_embedding: list[float], k: int) -> list[ScoredChunk]:
        """Nearest chunks by cosine similarity."""

    async def keyword_search(self, query_text: str, k: int, language: Language) -> list[ScoredChunk]:
        """Top chunks by Okapi BM25 over the language-aware index."""

    async def get_chunks(self, chunk_ids: list[str]) -> list[Chunk]:
        """Fetch chunk metadata by id, skipping unknown ids."""


@dataclass(slots=True)
class _StoredChunk:
    chunk: Chunk
    embedding: list[float]


class InMemoryDocumentStore:
    """Deterministic store used for tests and single-process deployments.

    BM25 indexes are built lazily per language and invalidated on upsert.
    Rankings break score ties by (document_id, chunk_id).
    """

    def __init__(self) -> None:
        self._store: dict[str, _StoredChunk] = {}
        self._bm25: dict[str, tuple[BM25Okapi, list[Chunk], list[set[str]]] | None] = {}

    def __len__(self) -> int:
        return len(self._store)

    def upsert(self, chunks: list[Chunk], embeddings: list[list[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            self._store[chunk.chunk_id] = _StoredChunk(chunk=chunk, embedding=embedding)
        self._bm25.clear()

    async def vector_search(self, query_embedding: list[float], k: int) -> list[ScoredChunk]:
        records = list(self._store.values())
        if not records:
            return []
        scores = _cosine_scores(query_embedding, [record.embedding for record in records])
        scored = [
            ScoredChunk(chunk=record.chunk, score=float(score), route="vector")
            for record, score in zip(records, scores, strict=True)
        ]
        return _rank(scored, k)

    async def keyword_search(self, query_text: str, k: int, language: Language) -> list[ScoredChunk]:
        index = self._bm25_index(language)
        query_terms = tokenize(query_text, language)
        if index is None or not query_terms:
            return []

        bm25, chunks, vocabularies = index
        terms = set(query_terms)
        scores = bm25.get_scores(query_terms)
        # Only chunks sharing at least one term are keyword candidates.
        scored = [
            ScoredChunk(chunk=chunk, score=float(score), route="keyword")
            for chunk, score, vocabulary in zip(chunks, scores, vocabularies, strict=True)
            if terms & vocabulary
        ]
        return _rank(scored, k)

    async def get_chunks(self, chunk_ids: list[str]) -> list[Chunk]:
        return [self._store[cid].chunk for cid in chunk_ids if cid in self._store]

    def _bm25_index(self, language: Language) -> tuple[BM25Okapi, list[Chunk], list[set[str]]] | None:
        if language not in self._bm25:
            chunks = [record.chunk for record in self._store.values()]
            corpus = [tokenize(_index_text(chunk), language) for chunk in chunks]
            if not chunks or not any(corpus):
                self._bm25[language] = None
            else:
                logger.debug("Building BM25 index language=%s chunks=%d", language, len(chunks))
                self._bm25[language] = (BM25Okapi(corpus), chunks, [set(doc) for doc in corpus])
        return self._bm25[language]


def _index_text(chunk: Chunk) -> str:
    if chunk.keywords:
        return f"{chunk.content} {' '.join(chunk.keywords)}"
    return chunk.content


def _rank(items: list[ScoredChunk], k: int) -> list[ScoredChunk]:
    ranked = sorted(
        items,
        key=lambda item: (-item.score, item.chunk.document_id, item.chunk.chunk_id),
    )
    return [
        ScoredChunk(chunk=item.chunk, score=item.score, route=item.route, rank=i + 1)
        for i, item in enumerate(ranked[:k])
    ]


def _cosine_scores(query: list[float], embeddings: list[list[float]]) -> np.ndarray:
    """Cosine similarity of one query against every stored embedding.

    Rows whose dimension differs from the query, and zero vectors, score 0.
    """

    scores = np.zeros(len(embeddings))
    q = np.asarray(query, dtype=float)
    q_norm = np.linalg.norm(q)
    if q.size == 0 or q_norm == 0:
        return scores
    for idx, embedding in enumerate(embeddings):
        if len(embedding) != q.size:
            continue
        v = np.asarray(embedding, dtype=float)
        v_norm = np.linalg.norm(v)
        if v_norm > 0:
            scores[idx] = float(q @ v) / (q_norm * v_norm)
    return scores

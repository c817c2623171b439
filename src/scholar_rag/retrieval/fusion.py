"""Reciprocal Rank Fusion over branch rankings."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from math import fsum

from scholar_rag.types import RetrievalResult, ScoredChunk


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[str]],
    *,
    k: int = 60,
) -> dict[str, float]:
    """Fuse ranked id lists into ``{id: Σ 1 / (k + rank)}`` with 1-based ranks.

    Contributions are summed with `math.fsum`, so the result does not depend
    on the order in which rankings are supplied.
    """

    contributions: dict[str, list[float]] = {}
    for ranking in rankings:
        for rank, item_id in enumerate(ranking, start=1):
            contributions.setdefault(item_id, []).append(1.0 / (k + rank))
    return {item_id: fsum(parts) for item_id, parts in contributions.items()}


class FusionLayer:
    """Fuses vector and keyword branch hits into one ranked candidate list."""

    def __init__(self, rrf_k: int = 60) -> None:
        self.rrf_k = rrf_k

    def fuse(self, branches: Mapping[str, list[ScoredChunk]]) -> list[RetrievalResult]:
        """Combine branch hits with RRF.

        A chunk missing from a branch gets no contribution from it and a
        `None` score for that branch. Output is sorted by fused score, then
        by (document_id, chunk_id).
        """

        if not branches:
            return []

        fused = reciprocal_rank_fusion(
            [[hit.chunk.chunk_id for hit in hits] for hits in branches.values()],
            k=self.rrf_k,
        )
        vector_hits = {hit.chunk.chunk_id: hit for hit in branches.get("vector", [])}
        keyword_hits = {hit.chunk.chunk_id: hit for hit in branches.get("keyword", [])}

        chunks = {hit.chunk.chunk_id: hit.chunk for hits in branches.values() for hit in hits}
        results = []
        for chunk_id, chunk in chunks.items():
            vector = vector_hits.get(chunk_id)
            keyword = keyword_hits.get(chunk_id)
            results.append(
                RetrievalResult.from_chunk(
                    chunk,
                    fused_score=fused[chunk_id],
                    retrieval_method="hybrid",
                    vector_score=vector.score if vector else None,
                    bm25_score=keyword.score if keyword else None,
                )
            )
        return sort_results(results)


def single_branch(hits: list[ScoredChunk], route: str) -> list[RetrievalResult]:
    """Return a branch's native ranking with its score copied into fused_score.

    Keyword scores are divided by the branch maximum (floored at 1.0) so that
    thresholds apply on a comparable scale.
    """

    if route == "keyword":
        scale = max([hit.score for hit in hits] + [1.0])
        return [
            RetrievalResult.from_chunk(
                hit.chunk,
                fused_score=hit.score / scale,
                retrieval_method="keyword",
                bm25_score=hit.score,
            )
            for hit in hits
        ]
    return [
        RetrievalResult.from_chunk(
            hit.chunk,
            fused_score=hit.score,
            retrieval_method="vector",
            vector_score=hit.score,
        )
        for hit in hits
    ]


def sort_results(results: list[RetrievalResult]) -> list[RetrievalResult]:
    return sorted(results, key=lambda r: (-r.fused_score, r.document_id, r.chunk_id))

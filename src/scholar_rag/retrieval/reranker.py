"""Second-pass reranking strategies."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import replace
from math import log2
from typing import Any

from scholar_rag.agent.model import ModelProvider, generate_text, parse_json_reply
from scholar_rag.config import RerankerConfig, RerankerStrategy
from scholar_rag.errors import ProviderUnavailable
from scholar_rag.language import detect_language
from scholar_rag.retrieval.fusion import reciprocal_rank_fusion
from scholar_rag.types import Language, RetrievalResult

logger = logging.getLogger(__name__)

_SCORE_PATTERN = re.compile(r"\d+(?:\.\d+)?")
_DOC_ID_PATTERN = re.compile(r"doc_(\d+)")

PairScorer = Callable[[str, list[str]], Sequence[float]]
Scores = list[tuple[float, str | None]]

_POINTWISE_SYSTEM: dict[Language, str] = {
    "en": (
        "You are an academic document relevance assessor. Score how relevant a "
        "passage is to the user's question from 0.0 (not relevant) to 1.0 "
        "(directly answers the question)."
    ),
    "id": (
        "Anda adalah penilai relevansi dokumen akademik. Beri skor seberapa "
        "relevan sebuah bagian dokumen terhadap pertanyaan pengguna, dari 0.0 "
        "(tidak relevan) hingga 1.0 (langsung menjawab pertanyaan)."
    ),
}

_LISTWISE_SYSTEM: dict[Language, str] = {
    "en": (
        "You are an academic document relevance assessor. Rank the documents from "
        "most relevant (rank 1) to least relevant. Respond in JSON: "
        '{"rankings": [{"id": "doc_X", "rank": 1, "score": 0.95, "reasoning": "..."}]}'
    ),
    "id": (
        "Anda adalah penilai relevansi dokumen akademik. Urutkan dokumen dari yang "
        "paling relevan (rank 1) hingga paling tidak relevan. Jawab dalam JSON: "
        '{"rankings": [{"id": "doc_X", "rank": 1, "score": 0.95, "reasoning": "..."}]}'
    ),
}

_PAIRWISE_SYSTEM: dict[Language, str] = {
    "en": (
        "Compare two document passages and decide which is more relevant for "
        'answering the question. Respond with only "A" or "B".'
    ),
    "id": (
        "Bandingkan dua bagian dokumen dan tentukan mana yang lebih relevan untuk "
        'menjawab pertanyaan. Jawab hanya dengan "A" atau "B".'
    ),
}


class Reranker(ABC):
    """Scores candidates; higher is more relevant."""

    strategy: str = "none"

    @abstractmethod
    async def score(self, query: str, results: list[RetrievalResult]) -> Scores:
        """Return one ``(score, reasoning)`` pair per input result, in input order."""


class CrossEncoderReranker(Reranker):
    """Independent relevance score per (query, passage) pair.

    The default scorer lazily loads a `sentence_transformers.CrossEncoder`
    and runs it in a worker thread.
    """

    strategy = "cross_encoder"

    def __init__(
        self,
        scorer: PairScorer | None = None,
        *,
        model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
        passage_chars: int = 512,
    ) -> None:
        self._scorer = scorer
        self.model_name = model_name
        self.passage_chars = passage_chars
        self._model: Any | None = None

    async def score(self, query: str, results: list[RetrievalResult]) -> Scores:
        passages = [r.content[: self.passage_chars] for r in results]
        scorer = self._scorer or self._predict
        scores = await asyncio.to_thread(scorer, query, passages)
        return [(float(value), None) for value in scores]

    def _predict(self, query: str, passages: list[str]) -> Sequence[float]:
        if self._model is None:
            try:
                from sentence_transformers import CrossEncoder
            except ImportError as exc:
                raise ProviderUnavailable(
                    "cross_encoder", "install the 'cross-encoder' extra to enable it"
                ) from exc
            logger.info("Loading cross-encoder: %s", self.model_name)
            self._model = CrossEncoder(self.model_name)
        return self._model.predict([(query, passage) for passage in passages])


class LLMPointwiseReranker(Reranker):
    """One model prompt per passage; passages are scored concurrently."""

    strategy = "llm"

    def __init__(self, provider: ModelProvider, *, detailed: bool = True, passage_chars: int = 500) -> None:
        self.provider = provider
        self.detailed = detailed
        self.passage_chars = passage_chars

    async def score(self, query: str, results: list[RetrievalResult]) -> Scores:
        language = detect_language(query)
        return list(
            await asyncio.gather(*(self._score_one(query, r, language) for r in results))
        )

    async def _score_one(self, query: str, result: RetrievalResult, language: Language) -> tuple[float, str | None]:
        passage = result.content[: self.passage_chars]
        if self.detailed:
            prompt = (
                f"Question: {query}\n\nPassage: {passage}\n\n"
                'Respond in JSON format: {"score": <number>, "reasoning": "<one sentence>"}'
            )
        else:
            prompt = f"Question: {query}\n\nPassage: {passage}\n\nRespond with only the relevance score (0.0-1.0):"

        try:
            text = await generate_text(
                self.provider, prompt, system=_POINTWISE_SYSTEM[language], temperature=0.0
            )
        except ProviderUnavailable as exc:
            logger.warning("Pointwise rerank call failed for %s: %s", result.chunk_id, exc)
            return result.fused_score, None

        try:
            parsed = parse_json_reply(text)
            if isinstance(parsed, dict):
                return _clamp(float(parsed.get("score", 0.0))), parsed.get("reasoning")
            return _clamp(float(parsed)), None
        except (ValueError, TypeError):
            match = _SCORE_PATTERN.search(text)
            if match is None:
                return result.fused_score, None
            return _clamp(float(match.group(0))), None


class LLMListwiseReranker(Reranker):
    """Asks the model once for a full ordering of all candidates."""

    strategy = "llm_listwise"

    def __init__(self, provider: ModelProvider, *, passage_chars: int = 300) -> None:
        self.provider = provider
        self.passage_chars = passage_chars

    async def score(self, query: str, results: list[RetrievalResult]) -> Scores:
        language = detect_language(query)
        listing = "\n\n".join(
            f"Document {idx + 1} (id: doc_{idx}):\n{r.content[: self.passage_chars]}"
            for idx, r in enumerate(results)
        )
        prompt = f"Question: {query}\n\n{listing}\n\nRank these {len(results)} documents by relevance:"
        text = await generate_text(
            self.provider, prompt, system=_LISTWISE_SYSTEM[language], temperature=0.0
        )

        parsed = parse_json_reply(text)
        rankings = parsed.get("rankings", []) if isinstance(parsed, dict) else parsed
        if not isinstance(rankings, list):
            raise ValueError("listwise reply has no rankings list")

        scores: Scores = [(0.0, None) for _ in results]
        for position, entry in enumerate(rankings, start=1):
            if not isinstance(entry, dict):
                continue
            match = _DOC_ID_PATTERN.search(str(entry.get("id", "")))
            if match is None:
                continue
            idx = int(match.group(1))
            if not 0 <= idx < len(results):
                continue
            rank = int(entry.get("rank", position))
            value = entry.get("score")
            score = float(value) if value is not None else 1.0 - (rank - 1) * 0.1
            scores[idx] = (_clamp(score), entry.get("reasoning"))
        return scores


class PairwiseReranker(Reranker):
    """Cohere-style pairwise preference voting over sampled passage pairs.

    Pairs are sampled with a generator seeded from the query, so the same
    query and candidates always produce the same comparisons.
    """

    strategy = "cohere"

    def __init__(self, provider: ModelProvider, *, max_comparisons: int = 20, passage_chars: int = 500) -> None:
        self.provider = provider
        self.max_comparisons = max_comparisons
        self.passage_chars = passage_chars

    async def score(self, query: str, results: list[RetrievalResult]) -> Scores:
        if len(results) <= 1:
            return [(1.0, None) for _ in results]

        rng = random.Random(f"{query}|{len(results)}")
        budget = min(len(results) * 2, self.max_comparisons)
        pairs = []
        for _ in range(budget):
            first, second = rng.sample(range(len(results)), 2)
            pairs.append((first, second))

        language = detect_language(query)
        verdicts = await asyncio.gather(
            *(self._compare(query, results[a], results[b], language) for a, b in pairs)
        )
        wins = [0.0 for _ in results]
        for (a, b), verdict in zip(pairs, verdicts, strict=True):
            if verdict == "A":
                wins[a] += 1
            elif verdict == "B":
                wins[b] += 1

        top = max(wins + [1.0])
        return [(value / top, None) for value in wins]

    async def _compare(self, query: str, a: RetrievalResult, b: RetrievalResult, language: Language) -> str | None:
        prompt = (
            f"Question: {query}\n\nPassage A:\n{a.content[: self.passage_chars]}\n\n"
            f"Passage B:\n{b.content[: self.passage_chars]}\n\nWhich passage is more relevant?"
        )
        try:
            text = await generate_text(
                self.provider, prompt, system=_PAIRWISE_SYSTEM[language], temperature=0.0
            )
        except ProviderUnavailable as exc:
            logger.debug("Pairwise comparison skipped: %s", exc)
            return None
        verdict = text.strip().upper()[:1]
        return verdict if verdict in ("A", "B") else None


class EnsembleReranker(Reranker):
    """Combines member orderings with reciprocal rank fusion."""

    strategy = "ensemble"

    def __init__(self, members: list[Reranker], *, rrf_k: int = 60) -> None:
        if not members:
            raise ValueError("ensemble needs at least one member")
        self.members = members
        self.rrf_k = rrf_k

    async def score(self, query: str, results: list[RetrievalResult]) -> Scores:
        outcomes = await asyncio.gather(
            *(member.score(query, results) for member in self.members),
            return_exceptions=True,
        )
        orderings: list[list[str]] = []
        reasoning: dict[int, str] = {}
        for member, outcome in zip(self.members, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Ensemble member %s failed: %s", member.strategy, outcome)
                continue
            order = sorted(range(len(results)), key=lambda i: (-outcome[i][0], i))
            orderings.append([str(i) for i in order])
            for idx, (_, note) in enumerate(outcome):
                if note and idx not in reasoning:
                    reasoning[idx] = note

        if not orderings:
            raise ProviderUnavailable("reranker", "all ensemble members failed")

        fused = reciprocal_rank_fusion(orderings, k=self.rrf_k)
        return [(fused.get(str(i), 0.0), reasoning.get(i)) for i in range(len(results))]


class RerankerService:
    """Applies a named strategy, falling back to the incoming order on failure."""

    def __init__(self, strategies: dict[str, Reranker], config: RerankerConfig | None = None) -> None:
        self.strategies = strategies
        self.config = config or RerankerConfig()

    async def rerank(
        self,
        query: str,
        results: list[RetrievalResult],
        strategy: RerankerStrategy | None = None,
        *,
        top_k: int | None = None,
    ) -> list[RetrievalResult]:
        name = strategy or self.config.strategy
        limit = top_k or self.config.top_k
        annotated = [
            replace(r, original_rank=idx + 1, reranked_score=r.fused_score, reranker_strategy="none")
            for idx, r in enumerate(results)
        ]
        if name == "none" or not results:
            return annotated[:limit]

        reranker = self.strategies.get(name)
        if reranker is None:
            logger.warning("Reranker strategy %s is not configured; keeping retrieval order", name)
            return annotated[:limit]

        try:
            scores = await reranker.score(query, results)
        except Exception as exc:
            logger.warning("Reranker %s failed, keeping retrieval order: %s", name, exc)
            return annotated[:limit]
        if len(scores) != len(results):
            logger.warning("Reranker %s returned %d scores for %d results", name, len(scores), len(results))
            return annotated[:limit]

        rescored = [
            replace(item, reranked_score=score, reranker_strategy=name, reranker_reasoning=note)
            for item, (score, note) in zip(annotated, scores, strict=True)
        ]
        rescored.sort(key=lambda r: (-(r.reranked_score or 0.0), r.original_rank or 0))
        return [r for r in rescored if (r.reranked_score or 0.0) >= self.config.min_score][:limit]


def build_rerankers(
    provider: ModelProvider,
    config: RerankerConfig | None = None,
    *,
    cross_encoder_scorer: PairScorer | None = None,
    rrf_k: int = 60,
) -> dict[str, Reranker]:
    cfg = config or RerankerConfig()
    cross = CrossEncoderReranker(cross_encoder_scorer, model_name=cfg.cross_encoder_model)
    listwise = LLMListwiseReranker(provider)
    return {
        "cross_encoder": cross,
        "llm": LLMPointwiseReranker(provider, detailed=cfg.llm_detailed_scoring, passage_chars=cfg.passage_chars),
        "llm_listwise": listwise,
        "cohere": PairwiseReranker(
            provider, max_comparisons=cfg.pairwise_max_comparisons, passage_chars=cfg.passage_chars
        ),
        "ensemble": EnsembleReranker([cross, listwise], rrf_k=rrf_k),
    }


def reranker_metrics(results: list[RetrievalResult], relevant_ids: set[str]) -> dict[str, float]:
    """nDCG, MRR, precision and mean absolute rank change of a reranked list."""

    if not results:
        return {"ndcg": 0.0, "mrr": 0.0, "precision": 0.0, "rank_change": 0.0}

    dcg = sum(
        1.0 / log2(idx + 2) for idx, r in enumerate(results) if r.chunk_id in relevant_ids
    )
    ideal = sum(1.0 / log2(i + 2) for i in range(min(len(relevant_ids), len(results))))
    mrr = next(
        (1.0 / (idx + 1) for idx, r in enumerate(results) if r.chunk_id in relevant_ids),
        0.0,
    )
    precision = sum(1 for r in results if r.chunk_id in relevant_ids) / len(results)
    rank_change = sum(
        abs((idx + 1) - (r.original_rank or idx + 1)) for idx, r in enumerate(results)
    ) / len(results)
    return {
        "ndcg": dcg / ideal if ideal > 0 else 0.0,
        "mrr": mrr,
        "precision": precision,
        "rank_change": rank_change,
    }


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))

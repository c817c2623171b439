"""Built-in tool implementations for the agent loop."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from scholar_rag.agent.model import ModelProvider, generate_text, message_text, parse_json_reply
from scholar_rag.agent.registry import ToolRegistry, ToolSpec
from scholar_rag.config import AgentConfig, RerankerStrategy, RetrievalStrategy
from scholar_rag.language import LANGUAGE_NAMES, expand_query, message
from scholar_rag.obs.tracing import token_usage
from scholar_rag.retrieval.hybrid import HybridRetriever
from scholar_rag.retrieval.reranker import RerankerService
from scholar_rag.session.state import SessionStateStore
from scholar_rag.types import Citation, Language, RetrievalResult

logger = logging.getLogger(__name__)

_CONTENT_PREVIEW = 500


class DecomposeQueryInput(BaseModel):
    question: str = Field(min_length=1)
    max_sub_questions: int = Field(default=3, ge=2, le=5)


class ExpandQueryInput(BaseModel):
    query: str = Field(min_length=1)


class SearchDocumentsInput(BaseModel):
    query: str = Field(min_length=1)
    strategy: RetrievalStrategy | None = None
    top_k: int = Field(default=5, ge=1, le=20)


class VerifyClaimInput(BaseModel):
    claim: str = Field(min_length=1)
    context: str = Field(min_length=1)


class SourceInput(BaseModel):
    title: str
    content: str
    citation_number: int | None = None


class SynthesizeAnswerInput(BaseModel):
    question: str = Field(min_length=1)
    sources: list[SourceInput] = Field(default_factory=list)


@dataclass(slots=True)
class TurnContext:
    """Per-turn inputs shared by the tool handlers."""

    session_id: str
    language: Language
    retrieval_strategy: RetrievalStrategy = "hybrid"
    use_reranker: bool = True
    reranker_strategy: RerankerStrategy | None = None
    sources: dict[str, RetrievalResult] = field(default_factory=dict)

    def collected_sources(self) -> list[RetrievalResult]:
        """Unique chunks surfaced during this turn, in citation order."""
        return sorted(self.sources.values(), key=lambda r: r.citation_number or 0)

    def citations(self) -> list[Citation]:
        return [
            Citation(citation_number=r.citation_number, chunk_id=r.chunk_id, document_title=r.document_title)
            for r in self.collected_sources()
            if r.citation_number is not None
        ]


@dataclass(slots=True)
class Synthesis:
    answer: str
    source_count: int
    token_usage: dict[str, int] | None = None


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    context: TurnContext,
    provider: ModelProvider,
    retriever: HybridRetriever,
    sessions: SessionStateStore,
    reranker: RerankerService | None = None,
    config: AgentConfig | None = None,
) -> None:
    """Register the agent tool set for one turn.

    Tools:
    - `decompose_query`: split a complex question into sub-questions.
    - `expand_query`: academic synonym expansion.
    - `search_documents`: hybrid retrieval, reranking, and citation numbering.
    - `verify_claim`: check a claim against supplied context.
    - `synthesize_answer`: cited answer from sources in the query language.
    """

    cfg = config or AgentConfig()
    language = context.language

    async def _decompose(input_data: DecomposeQueryInput) -> dict[str, Any]:
        prompt = _DECOMPOSE_PROMPT[language].format(
            count=input_data.max_sub_questions,
            question=input_data.question,
        )
        text = await generate_text(provider, prompt, temperature=0.3)
        try:
            parsed = parse_json_reply(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list) and parsed and all(isinstance(q, str) and q.strip() for q in parsed):
            return {
                "sub_questions": [q.strip() for q in parsed][: input_data.max_sub_questions],
                "next_action": "Call search_documents for ALL sub-questions in the same response.",
            }
        logger.info("Decomposition reply unparsable; searching the question as is")
        return {
            "sub_questions": [input_data.question],
            "next_action": "Call search_documents for this question.",
        }

    async def _expand(input_data: ExpandQueryInput) -> dict[str, Any]:
        return {
            "original_query": input_data.query,
            "expanded_terms": expand_query(input_data.query, limit=5),
        }

    async def _search(input_data: SearchDocumentsInput) -> dict[str, Any]:
        strategy = input_data.strategy or context.retrieval_strategy
        rerank = reranker is not None and context.use_reranker
        candidate_k = input_data.top_k * 2 if rerank else input_data.top_k
        results = await retriever.retrieve(
            input_data.query,
            top_k=candidate_k,
            strategy=strategy,
            language=language,
        )
        if rerank and results:
            results = await reranker.rerank(
                input_data.query,
                results,
                context.reranker_strategy,
                top_k=input_data.top_k,
            )
        results = results[: input_data.top_k]

        cited = await sessions.add_chunks(context.session_id, results)
        for result in cited:
            context.sources.setdefault(result.chunk_id, result)
        logger.debug(
            "search_documents query=%r strategy=%s found=%d",
            input_data.query[:80],
            strategy,
            len(cited),
        )
        return {
            "found": len(cited),
            "documents": [
                {
                    "citation": r.citation_number,
                    "chunk_id": r.chunk_id,
                    "title": r.document_title,
                    "content": _truncate(r.content, _CONTENT_PREVIEW),
                    "score": round(r.reranked_score if r.reranked_score is not None else r.fused_score, 4),
                    "method": r.retrieval_method,
                }
                for r in cited
            ],
        }

    async def _verify(input_data: VerifyClaimInput) -> dict[str, Any]:
        prompt = _VERIFY_PROMPT[language].format(claim=input_data.claim, context=input_data.context)
        text = await generate_text(provider, prompt, temperature=0.1)
        try:
            parsed = parse_json_reply(text)
            if not isinstance(parsed, dict):
                raise ValueError("verification reply is not an object")
            return {
                "supported": bool(parsed.get("supported", False)),
                "confidence": float(parsed.get("confidence", 0.0)),
                "evidence": str(parsed.get("evidence", "")),
            }
        except (ValueError, TypeError):
            return {"supported": False, "confidence": 0.0, "evidence": message("verify_failed", language)}

    async def _synthesize(input_data: SynthesizeAnswerInput) -> dict[str, Any]:
        if input_data.sources:
            in_use = max((c.citation_number for c in sessions.citations(context.session_id)), default=0)
            sources = number_sources(input_data.sources, context.collected_sources(), in_use=in_use)
        else:
            sources = source_triples(context.collected_sources())
        result = await synthesize_answer(
            provider,
            input_data.question,
            sources[: cfg.synthesis_source_limit],
            language,
            temperature=cfg.temperature,
        )
        return {
            "answer": result.answer,
            "source_count": result.source_count,
            "token_usage": result.token_usage,
        }

    registry.register(
        ToolSpec(
            name="decompose_query",
            description=(
                "Decompose a complex academic question into simpler sub-questions. After using "
                "this tool, call search_documents for ALL sub-questions in the same response."
            ),
            args_schema=DecomposeQueryInput,
            handler=_decompose,
            tags=["planning"],
        )
    )
    registry.register(
        ToolSpec(
            name="expand_query",
            description="Expand a query with academic synonyms to improve retrieval coverage.",
            args_schema=ExpandQueryInput,
            handler=_expand,
            tags=["retrieval"],
        )
    )
    registry.register(
        ToolSpec(
            name="search_documents",
            description=(
                "Search the knowledge base with hybrid retrieval (Okapi BM25 + vector similarity). "
                "Returns documents with citation numbers. Use once per sub-question."
            ),
            args_schema=SearchDocumentsInput,
            handler=_search,
            tags=["retrieval", "rag"],
        )
    )
    registry.register(
        ToolSpec(
            name="verify_claim",
            description="Verify a claim against retrieved context to prevent hallucination.",
            args_schema=VerifyClaimInput,
            handler=_verify,
            tags=["verification"],
        )
    )
    registry.register(
        ToolSpec(
            name="synthesize_answer",
            description="Synthesize the final answer from sources with [n] citations.",
            args_schema=SynthesizeAnswerInput,
            handler=_synthesize,
            tags=["synthesis"],
        )
    )


async def synthesize_answer(
    provider: ModelProvider,
    question: str,
    sources: list[tuple[int, str, str]],
    language: Language,
    *,
    temperature: float | None = None,
    strict_language: bool = False,
    on_delta: Callable[[str], None] | None = None,
) -> Synthesis:
    """Answer ``question`` from numbered sources in ``language``.

    With no sources the localized "no evidence" answer is returned without a
    model call. When ``on_delta`` is given the answer is streamed and each
    chunk is passed to it as it arrives.
    """

    if not sources:
        return Synthesis(answer=message("no_evidence", language), source_count=0)

    sources_text = "\n\n".join(f"[{number}] {title}:\n{content}" for number, title, content in sources)
    instructions = SYNTHESIS_INSTRUCTIONS.format(language=LANGUAGE_NAMES[language])
    if strict_language:
        instructions += "\n" + _STRICT_LANGUAGE.format(language=LANGUAGE_NAMES[language])
    prompt = f"Question: {question}\n\nSources:\n{sources_text}"

    messages = [SystemMessage(content=instructions), HumanMessage(content=prompt)]
    reply = None
    if on_delta is None:
        reply = await provider.generate(messages, temperature=temperature)
        answer = message_text(reply).strip()
    else:
        chunks: list[str] = []
        async for delta in provider.stream(messages, temperature=temperature):
            chunks.append(delta)
            on_delta(delta)
        answer = "".join(chunks).strip()
    return Synthesis(
        answer=answer,
        source_count=len(sources),
        token_usage=token_usage(reply, prompt=instructions + prompt, completion=answer),
    )


def source_triples(results: list[RetrievalResult]) -> list[tuple[int, str, str]]:
    return [
        (r.citation_number, r.document_title, r.content)
        for r in results
        if r.citation_number is not None
    ]


def number_sources(
    sources: list[SourceInput],
    known: list[RetrievalResult],
    *,
    in_use: int = 0,
) -> list[tuple[int, str, str]]:
    """Attach session citation numbers to model-supplied sources.

    A source without a number is matched to a retrieved chunk by title and
    content. Unmatched sources are numbered after the highest session citation
    so they can never borrow the number of a different chunk.
    """

    next_free = max([in_use, *(r.citation_number or 0 for r in known)]) + 1
    numbered: list[tuple[int, str, str]] = []
    for source in sources:
        number = source.citation_number
        if number is None:
            match = next(
                (r for r in known if r.document_title == source.title and _same_passage(r.content, source.content)),
                None,
            )
            number = match.citation_number if match is not None else None
        if number is None:
            number = next_free
            next_free += 1
        numbered.append((number, source.title, source.content))
    return numbered


def _same_passage(stored: str, supplied: str) -> bool:
    supplied = supplied.strip()
    if supplied.endswith("..."):
        supplied = supplied[:-3]
    return bool(supplied) and stored.startswith(supplied)


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


SYNTHESIS_INSTRUCTIONS = """
You synthesize answers for an academic question-answering assistant.

Rules:
1) Use ONLY the numbered sources provided. Do not add outside facts.
2) Cite every factual statement with its source number in square brackets, like [1] or [2][3].
3) Only cite numbers that appear in the sources list.
4) If the sources do not contain the answer, say that it cannot be verified from the documents.
5) Write the entire answer in {language}.
""".strip()

_STRICT_LANGUAGE = (
    "Your previous answer was written in the wrong language. "
    "Rewrite it completely in {language}; keep the same citations."
)

_DECOMPOSE_PROMPT: dict[Language, str] = {
    "en": (
        "Decompose this academic question into at most {count} simpler sub-questions that "
        "together answer the original question. Answer in English.\n\n"
        "Question: {question}\n\nReturn only a JSON array of sub-question strings."
    ),
    "id": (
        "Uraikan pertanyaan akademis ini menjadi paling banyak {count} sub-pertanyaan yang lebih "
        "sederhana yang bersama-sama menjawab pertanyaan asli. Jawab dalam Bahasa Indonesia.\n\n"
        "Pertanyaan: {question}\n\nKembalikan hanya array JSON berisi sub-pertanyaan."
    ),
}

_VERIFY_PROMPT: dict[Language, str] = {
    "en": (
        "Verify whether this claim is supported by the context.\n\n"
        "Claim: {claim}\n\nContext: {context}\n\n"
        'Respond with JSON: {{"supported": boolean, "confidence": number (0-1), "evidence": string}}'
    ),
    "id": (
        "Verifikasi apakah klaim ini didukung oleh konteks. Jawab dalam Bahasa Indonesia.\n\n"
        "Klaim: {claim}\n\nKonteks: {context}\n\n"
        'Jawab dengan JSON: {{"supported": boolean, "confidence": number (0-1), "evidence": string}}'
    ),
}

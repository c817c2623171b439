"""Deterministic model provider used when no external LLM is configured."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage
from langchain_core.tools import BaseTool

from scholar_rag.agent.model import message_text
from scholar_rag.language import detect_language, tokenize

_QUESTION_SPLIT = re.compile(r"\?+|;|\s+(?:dan|and|serta|also)\s+", flags=re.IGNORECASE)
_SOURCE_BLOCK = re.compile(r"^\[(\d+)\]\s*(.*?):\n(.*?)(?=\n\n\[\d+\]|\Z)", flags=re.DOTALL | re.MULTILINE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_PASSAGE_DOC = re.compile(r"Document \d+ \(id: (doc_\d+)\):\n(.*?)(?=\n\nDocument \d+ \(id:|\n\nRank these|\Z)", re.DOTALL)


class OfflineModelProvider:
    """Rule-based stand-in for a chat model.

    Agent steps follow a fixed plan: decompose multi-part questions, search
    every sub-question in one parallel step, then call `synthesize_answer`.
    Tool-free prompts are answered extractively: synthesis picks the best
    matching sentence per source with its citation, and decomposition,
    verification and reranking prompts get JSON built from term overlap.
    """

    def __init__(self, *, max_sub_questions: int = 3, sentences_per_source: int = 1) -> None:
        self.max_sub_questions = max_sub_questions
        self.sentences_per_source = sentences_per_source

    async def generate(
        self,
        messages: Sequence[BaseMessage],
        *,
        tools: Sequence[BaseTool] | None = None,
        temperature: float | None = None,
    ) -> AIMessage:
        del temperature  # output is deterministic
        if tools:
            return self._plan(messages, {tool.name for tool in tools})
        return AIMessage(content=self._complete(messages))

    async def stream(
        self,
        messages: Sequence[BaseMessage],
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        reply = await self.generate(messages, temperature=temperature)
        for token in re.findall(r"\S+\s*", message_text(reply)):
            yield token

    def _plan(self, messages: Sequence[BaseMessage], tool_names: set[str]) -> AIMessage:
        question = _last_human(messages)
        last_calls = _last_tool_calls(messages)
        step = sum(1 for m in messages if isinstance(m, AIMessage) and m.tool_calls)

        if not last_calls:
            parts = split_question(question, self.max_sub_questions)
            if len(parts) > 1 and "decompose_query" in tool_names:
                return _call(step, "decompose_query", {"question": question, "max_sub_questions": max(2, len(parts))})
            return _call(step, "search_documents", {"query": question})

        previous = {call["name"] for call in last_calls}
        if "decompose_query" in previous:
            sub_questions = _tool_payload(messages, "decompose_query").get("sub_questions") or [question]
            return AIMessage(
                content="",
                tool_calls=[
                    {"id": f"call_{step}_{idx}", "name": "search_documents", "args": {"query": q}}
                    for idx, q in enumerate(sub_questions)
                ],
            )
        if "search_documents" in previous and "synthesize_answer" in tool_names:
            return _call(step, "synthesize_answer", {"question": question})
        return AIMessage(content="")

    def _complete(self, messages: Sequence[BaseMessage]) -> str:
        prompt = _last_human(messages)

        if "Sources:\n" in prompt:
            return self._extractive_answer(prompt)
        if "Rank these" in prompt:
            return self._rank_documents(prompt)
        if "Passage A:" in prompt:
            return self._prefer_passage(prompt)
        if "Passage:" in prompt:
            question, passage = _field(prompt, "Question"), _field(prompt, "Passage")
            score = overlap(question, passage)
            return json.dumps({"score": round(score, 3), "reasoning": "term overlap"})
        if "Claim:" in prompt or "Klaim:" in prompt:
            claim = _field(prompt, "Claim") or _field(prompt, "Klaim")
            context = _field(prompt, "Context") or _field(prompt, "Konteks")
            score = overlap(claim, context)
            return json.dumps(
                {"supported": score >= 0.5, "confidence": round(score, 3), "evidence": context[:200]},
                ensure_ascii=False,
            )
        if "JSON array" in prompt or "array JSON" in prompt:
            question = _field(prompt, "Question") or _field(prompt, "Pertanyaan")
            return json.dumps(split_question(question, self.max_sub_questions), ensure_ascii=False)
        return ""

    def _extractive_answer(self, prompt: str) -> str:
        question = _field(prompt, "Question")
        body = prompt.split("Sources:\n", 1)[1]
        candidates: list[tuple[float, str]] = []
        for number, _title, content in _SOURCE_BLOCK.findall(body):
            sentences = [s.strip() for s in _SENTENCE_SPLIT.split(content.strip()) if s.strip()]
            ranked = sorted(sentences, key=lambda s: -overlap(question, s))
            for sentence in ranked[: self.sentences_per_source]:
                candidates.append((overlap(question, sentence), f"{sentence} [{number}]"))
        # Sources sharing no term with the question are left out.
        lines = [line for score, line in candidates if score > 0] or [line for _, line in candidates[:1]]
        return "\n".join(lines)

    def _rank_documents(self, prompt: str) -> str:
        question = _field(prompt, "Question")
        scored = [(doc_id, overlap(question, text)) for doc_id, text in _PASSAGE_DOC.findall(prompt)]
        ordered = sorted(scored, key=lambda item: -item[1])
        return json.dumps(
            {
                "rankings": [
                    {"id": doc_id, "rank": rank, "score": round(score, 3)}
                    for rank, (doc_id, score) in enumerate(ordered, start=1)
                ]
            }
        )

    def _prefer_passage(self, prompt: str) -> str:
        question = _field(prompt, "Question")
        a = prompt.split("Passage A:", 1)[1].split("Passage B:", 1)[0]
        b = prompt.split("Passage B:", 1)[1].split("Which passage", 1)[0]
        return "A" if overlap(question, a) >= overlap(question, b) else "B"


def split_question(question: str, limit: int = 3) -> list[str]:
    """Split a multi-part question on question marks and conjunctions."""

    parts = [part.strip(" ,.") for part in _QUESTION_SPLIT.split(question)]
    parts = [part for part in parts if len(part.split()) >= 2]
    if len(parts) <= 1:
        return [question.strip()]
    suffix = "?" if "?" in question else ""
    return [part[0].upper() + part[1:] + suffix for part in parts[:limit]]


def overlap(query: str, text: str) -> float:
    """Share of query terms that occur in ``text``."""

    language = detect_language(query)
    terms = set(tokenize(query, language))
    if not terms:
        return 0.0
    return len(terms & set(tokenize(text, language))) / len(terms)


def _call(step: int, name: str, args: dict[str, Any]) -> AIMessage:
    return AIMessage(content="", tool_calls=[{"id": f"call_{step}_0", "name": name, "args": args}])


def _last_human(messages: Sequence[BaseMessage]) -> str:
    for msg in reversed(messages):
        if isinstance(msg, HumanMessage):
            return message_text(msg)
    return ""


def _last_tool_calls(messages: Sequence[BaseMessage]) -> list[dict[str, Any]]:
    for msg in reversed(messages):
        if isinstance(msg, AIMessage) and msg.tool_calls:
            return list(msg.tool_calls)
        if isinstance(msg, HumanMessage):
            break
    return []


def _tool_payload(messages: Sequence[BaseMessage], name: str) -> dict[str, Any]:
    for msg in reversed(messages):
        if isinstance(msg, ToolMessage) and msg.name == name:
            try:
                payload = json.loads(message_text(msg))
            except json.JSONDecodeError:
                return {}
            return payload if isinstance(payload, dict) else {}
    return {}


def _field(prompt: str, label: str) -> str:
    match = re.search(rf"^{label}:\s*(.*?)(?=\n\n|\Z)", prompt, flags=re.DOTALL | re.MULTILINE)
    return match.group(1).strip() if match else ""

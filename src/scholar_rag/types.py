"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Language = Literal["en", "id"]
Severity = Literal["none", "low", "medium", "high", "critical"]
StepType = Literal["reasoning", "tool_call", "retrieval", "synthesis"]
RunStatus = Literal["completed", "blocked", "empathetic", "tool_unavailable", "failed"]

SEVERITY_ORDER: tuple[Severity, ...] = ("none", "low", "medium", "high", "critical")


@dataclass(slots=True)
class Chunk:
    """A stored section of a source document. Owned by the document store."""

    chunk_id: str
    document_id: str
    document_title: str
    content: str
    keywords: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RetrievalResult:
    """A retrieval hit with per-branch scores and the fused score."""

    chunk_id: str
    document_id: str
    document_title: str
    content: str
    fused_score: float
    retrieval_method: str
    vector_score: float | None = None
    bm25_score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    citation_number: int | None = None
    original_rank: int | None = None
    reranked_score: float | None = None
    reranker_strategy: str | None = None
    reranker_reasoning: str | None = None

    @classmethod
    def from_chunk(cls, chunk: Chunk, **scores: Any) -> "RetrievalResult":
        return cls(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            document_title=chunk.document_title,
            content=chunk.content,
            metadata=dict(chunk.metadata),
            **scores,
        )


@dataclass(slots=True, frozen=True)
class Citation:
    """Session-stable source number for a chunk."""

    citation_number: int
    chunk_id: str
    document_title: str


@dataclass(slots=True)
class AgentStep:
    """One recorded unit of orchestrator work."""

    step_index: int
    group_index: int
    step_type: StepType
    timestamp: float
    duration_ms: float = 0.0
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_output: Any = None
    reasoning: str | None = None
    error: str | None = None
    token_usage: dict[str, int] | None = None


@dataclass(slots=True)
class GuardrailViolation:
    rule: str
    type: str
    severity: Severity
    description: str
    action: Literal["blocked", "flagged", "modified", "allowed", "redirect"]
    matched_content: str | None = None
    remediation: str | None = None


@dataclass(slots=True)
class GuardrailVerdict:
    """Outcome of one guardrail check."""

    passed: bool
    violations: list[GuardrailViolation] = field(default_factory=list)
    severity: Severity = "none"
    suggested_response: str | None = None
    modified_content: str | None = None
    requires_escalation: bool = False


@dataclass(slots=True)
class NegativeReaction:
    detected: bool
    reaction_type: str | None = None
    language: Language = "en"
    confidence: float = 0.0
    severity: Severity = "low"
    suggested_response: str = ""


@dataclass(slots=True)
class GuardrailResults:
    input: GuardrailVerdict | None = None
    negative_reaction: NegativeReaction | None = None
    output: GuardrailVerdict | None = None


@dataclass(slots=True)
class Failure:
    kind: str
    message: str


@dataclass(slots=True)
class AgenticRagResult:
    """Everything a caller receives for one query turn."""

    answer: str
    status: RunStatus
    session_id: str
    language: Language
    steps: list[AgentStep] = field(default_factory=list)
    retrieved_chunks: list[RetrievalResult] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    guardrail_results: GuardrailResults = field(default_factory=GuardrailResults)
    total_latency_ms: float = 0.0
    flags: dict[str, Any] = field(default_factory=dict)
    failure: Failure | None = None


def max_severity(severities: list[Severity]) -> Severity:
    highest: Severity = "none"
    for severity in severities:
        if SEVERITY_ORDER.index(severity) > SEVERITY_ORDER.index(highest):
            highest = severity
    return highest


@dataclass(slots=True)
class ScoredChunk:
    """A branch hit with its native score and 1-based rank."""

    chunk: Chunk
    score: float
    route: str
    rank: int = 0


@dataclass(slots=True)
class ToolTrace:
    """Observer record for one executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    status: str = "ok"

"""Configuration models for the agentic retrieval engine."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

RetrievalStrategy = Literal["vector", "keyword", "hybrid"]
RerankerStrategy = Literal[
    "none", "cross_encoder", "llm", "llm_listwise", "cohere", "ensemble"
]


class RetrievalConfig(BaseModel):
    """Configures dual-branch retrieval and reciprocal rank fusion."""

    top_k: int = Field(default=5, ge=1, le=50)
    min_similarity: float = Field(default=0.0, ge=0.0)
    oversample_factor: int = Field(default=3, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    strategy: RetrievalStrategy = "hybrid"


class RerankerConfig(BaseModel):
    """Configures second-pass reranking."""

    strategy: RerankerStrategy = "cross_encoder"
    top_k: int = Field(default=5, ge=1)
    min_score: float = Field(default=0.0)
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    llm_detailed_scoring: bool = True
    pairwise_max_comparisons: int = Field(default=20, ge=1)
    passage_chars: int = Field(default=500, ge=50)


class AgentConfig(BaseModel):
    """Configures the tool-calling loop and its latency budget."""

    max_steps: int = Field(default=5, ge=1, le=20)
    turn_timeout_seconds: float = Field(default=60.0, gt=0.0)
    synthesis_timeout_seconds: float = Field(default=30.0, gt=0.0)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_sub_questions: int = Field(default=3, ge=2, le=5)
    synthesis_source_limit: int = Field(default=10, ge=1)


class SessionConfig(BaseModel):
    """Configures eviction of per-session streaming state."""

    ttl_seconds: float = Field(default=3600.0, gt=0.0)
    max_sessions: int = Field(default=1000, ge=1)


class EngineSettings(BaseSettings):
    """Environment-driven settings used to wire a production engine."""

    model_config = SettingsConfigDict(
        env_prefix="SCHOLAR_RAG_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    openai_api_key: SecretStr | None = None
    azure_endpoint: str | None = None
    azure_api_version: str = "2024-10-21"
    chat_model: str = "gpt-4.1-mini"
    embedding_model: str = "text-embedding-3-small"

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    reranker: RerankerConfig = Field(default_factory=RerankerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @property
    def llm_configured(self) -> bool:
        return self.openai_api_key is not None


class RagOptions(BaseModel):
    """Per-call options accepted by the engine."""

    session_id: str | None = None
    retrieval_strategy: RetrievalStrategy = "hybrid"
    enable_guardrails: bool = True
    use_reranker: bool = True
    reranker_strategy: RerankerStrategy | None = None
    max_steps: int | None = Field(default=None, ge=1, le=20)

"""Agentic hybrid-retrieval engine for academic question answering."""

from .config import EngineSettings, RagOptions, RerankerConfig, RetrievalConfig
from .engine import AgenticRagEngine, build_engine, run_agentic_rag

__all__ = [
    "AgenticRagEngine",
    "EngineSettings",
    "RagOptions",
    "RerankerConfig",
    "RetrievalConfig",
    "build_engine",
    "run_agentic_rag",
]

"""Error taxonomy for the retrieval engine."""

from __future__ import annotations

from scholar_rag.types import GuardrailVerdict


class ScholarRagError(Exception):
    """Base class for engine errors."""


class ValidationBlocked(ScholarRagError):
    """Input failed a policy guardrail and must not be processed."""

    def __init__(self, verdict: GuardrailVerdict) -> None:
        rules = ", ".join(v.rule for v in verdict.violations if v.action == "blocked")
        super().__init__(f"Input blocked by guardrails: {rules or 'policy'}")
        self.verdict = verdict


class ToolUnavailable(ScholarRagError):
    """The model requested a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ProviderUnavailable(ScholarRagError):
    """An embedding, generation, or retrieval backend call failed."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider} unavailable: {message}")
        self.provider = provider


class LanguageMismatch(ScholarRagError):
    """The produced answer is not in the language of the query."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Answer language {actual!r} does not match query language {expected!r}")
        self.expected = expected
        self.actual = actual

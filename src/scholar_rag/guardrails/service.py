"""Guardrail service contract and the pattern-based default implementation."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from scholar_rag.guardrails.patterns import (
    ACADEMIC_INTEGRITY_PATTERNS,
    ACADEMIC_TOPICS,
    COMMAND_VERBS,
    CRITICAL_PII,
    INJECTION_PATTERNS,
    NEGATIVE_REACTION_PATTERNS,
    NUMERIC_CITATION,
    PII_PATTERNS,
    QUESTION_PATTERN,
    REACTION_RESPONSES,
    REACTION_SEVERITY,
    TOXICITY_PATTERNS,
)
from scholar_rag.types import (
    GuardrailVerdict,
    GuardrailViolation,
    NegativeReaction,
    RetrievalResult,
    Severity,
    max_severity,
)

logger = logging.getLogger(__name__)


class GuardrailService(Protocol):
    """Policy checks run before and after the agent loop."""

    async def validate_input(self, text: str) -> GuardrailVerdict:
        """Check a user query; ``passed`` is False when it must be blocked."""

    async def detect_negative_reaction(self, text: str) -> NegativeReaction:
        """Classify frustration, disappointment, confusion or a help request."""

    async def validate_output(
        self,
        answer: str,
        *,
        query: str,
        sources: Sequence[RetrievalResult],
    ) -> GuardrailVerdict:
        """Check a produced answer against the sources it was built from."""


class PatternGuardrailService:
    """Regex-driven guardrails covering English and Indonesian input.

    Input checks: PII (redacted into ``modified_content``), prompt injection
    and toxicity (blocking), academic integrity (flagged) and topic relevance
    (informational). Output checks: PII, toxicity and numeric citation
    verification.
    """

    def __init__(self, *, topic_min_length: int = 50) -> None:
        self.topic_min_length = topic_min_length

    async def validate_input(self, text: str) -> GuardrailVerdict:
        violations: list[GuardrailViolation] = []
        redacted = _check_pii(text, violations)
        _check_patterns(
            text,
            INJECTION_PATTERNS,
            violations,
            rule="prompt_injection",
            severity="critical",
            action="blocked",
            description="Potential prompt injection attempt detected",
            remediation="This type of request is not allowed",
        )
        _check_patterns(
            text,
            TOXICITY_PATTERNS,
            violations,
            rule="toxic_content",
            kind="toxicity",
            severity="high",
            action="blocked",
            description="Potentially inappropriate or harmful content detected",
            remediation="Please rephrase your question in a constructive manner",
        )
        _check_patterns(
            text,
            ACADEMIC_INTEGRITY_PATTERNS,
            violations,
            rule="academic_integrity",
            severity="medium",
            action="flagged",
            description="Request may violate academic integrity policies",
            remediation="I can help you learn the concepts, but I cannot complete assignments for you",
        )
        self._check_topic_relevance(text, violations)

        verdict = GuardrailVerdict(
            passed=not any(v.action == "blocked" for v in violations),
            violations=violations,
            severity=max_severity([v.severity for v in violations]),
            modified_content=redacted if redacted != text else None,
        )
        logger.debug(
            "Input validation passed=%s severity=%s violations=%d",
            verdict.passed,
            verdict.severity,
            len(violations),
        )
        return verdict

    async def detect_negative_reaction(self, text: str) -> NegativeReaction:
        for language in ("id", "en"):
            for reaction_type, patterns in NEGATIVE_REACTION_PATTERNS.items():
                if any(pattern.search(text) for pattern in patterns[language]):
                    severity = REACTION_SEVERITY[reaction_type]
                    return NegativeReaction(
                        detected=True,
                        reaction_type=reaction_type,
                        language=language,
                        confidence=0.85,
                        severity=severity,
                        suggested_response=REACTION_RESPONSES[reaction_type][language],
                    )
        return NegativeReaction(detected=False)

    async def validate_output(
        self,
        answer: str,
        *,
        query: str,
        sources: Sequence[RetrievalResult],
    ) -> GuardrailVerdict:
        violations: list[GuardrailViolation] = []
        for name, pattern in PII_PATTERNS.items():
            match = pattern.search(answer)
            if match is not None:
                violations.append(
                    GuardrailViolation(
                        rule=f"output_pii_{name}",
                        type="pii_detection",
                        severity="high",
                        description=f"Answer contains potential {name.replace('_', ' ')}",
                        action="flagged",
                        matched_content=match.group(0),
                    )
                )
        _check_patterns(
            answer,
            TOXICITY_PATTERNS,
            violations,
            rule="output_toxicity",
            kind="toxicity",
            severity="high",
            action="flagged",
            description="Answer contains potentially inappropriate content",
        )

        known = {s.citation_number for s in sources if s.citation_number is not None}
        for number in sorted({int(n) for n in NUMERIC_CITATION.findall(answer)}):
            if number not in known:
                violations.append(
                    GuardrailViolation(
                        rule="unverified_citation",
                        type="citation_verification",
                        severity="low",
                        description=f"Citation [{number}] does not match any retrieved source",
                        action="flagged",
                        matched_content=f"[{number}]",
                    )
                )

        return GuardrailVerdict(
            passed=not violations,
            violations=violations,
            severity=max_severity([v.severity for v in violations]),
        )

    def _check_topic_relevance(self, text: str, violations: list[GuardrailViolation]) -> None:
        lowered = text.lower()
        relevant = (
            QUESTION_PATTERN.search(text) is not None
            or any(topic in lowered for topic in ACADEMIC_TOPICS)
            or any(verb in lowered for verb in COMMAND_VERBS)
        )
        if not relevant and len(text) > self.topic_min_length:
            violations.append(
                GuardrailViolation(
                    rule="topic_relevance",
                    type="topic_relevance",
                    severity="low",
                    description="Query may not be relevant to academic content",
                    action="allowed",
                )
            )


def _check_pii(text: str, violations: list[GuardrailViolation]) -> str:
    redacted = text
    for name, pattern in PII_PATTERNS.items():
        match = pattern.search(text)
        if match is None:
            continue
        violations.append(
            GuardrailViolation(
                rule=f"pii_{name}",
                type="pii_detection",
                severity="critical" if name in CRITICAL_PII else "high",
                description=f"Detected potential {name.replace('_', ' ')} in input",
                action="modified",
                matched_content=match.group(0),
                remediation="PII has been redacted",
            )
        )
        redacted = pattern.sub(f"[REDACTED_{name.upper()}]", redacted)
    return redacted


def _check_patterns(
    text: str,
    patterns: Sequence[re.Pattern[str]],
    violations: list[GuardrailViolation],
    *,
    rule: str,
    severity: Severity,
    action: str,
    description: str,
    kind: str | None = None,
    remediation: str | None = None,
) -> None:
    for pattern in patterns:
        match = pattern.search(text)
        if match is None:
            continue
        violations.append(
            GuardrailViolation(
                rule=rule,
                type=kind or rule,
                severity=severity,
                description=description,
                action=action,
                matched_content=match.group(0),
                remediation=remediation,
            )
        )
        # One violation per rule is enough to decide.
        return


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter keyed by caller id."""

    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def check(self, user_id: str) -> GuardrailVerdict:
        now = self._clock()
        window = self._windows.get(user_id)
        if window is None or now > window.reset_at:
            self._windows[user_id] = _Window(count=1, reset_at=now + self.window_seconds)
            return GuardrailVerdict(passed=True)

        if window.count >= self.max_requests:
            logger.info("Rate limit exceeded for %s", user_id)
            return GuardrailVerdict(
                passed=False,
                violations=[
                    GuardrailViolation(
                        rule="rate_limit_exceeded",
                        type="rate_limiting",
                        severity="medium",
                        description=(
                            f"Rate limit exceeded: {self.max_requests} requests per "
                            f"{self.window_seconds:g}s"
                        ),
                        action="blocked",
                    )
                ],
                severity="medium",
            )

        window.count += 1
        return GuardrailVerdict(passed=True)


_default_limiter = RateLimiter()


def check_rate_limit(user_id: str, limiter: RateLimiter | None = None) -> GuardrailVerdict:
    return (limiter or _default_limiter).check(user_id)


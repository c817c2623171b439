"""Per-session streaming state with TTL and LRU eviction."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Protocol

from scholar_rag.config import SessionConfig
from scholar_rag.session.citations import CitationManager
from scholar_rag.types import Citation, RetrievalResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamingState:
    """Retrieved chunks and citations accumulated over one session."""

    session_id: str
    chunks: list[RetrievalResult] = field(default_factory=list)
    citations: CitationManager = field(default_factory=CitationManager)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_access: float = 0.0
    active_turns: int = 0

    def chunk_ids(self) -> set[str]:
        return {chunk.chunk_id for chunk in self.chunks}

    @property
    def pinned(self) -> bool:
        return self.active_turns > 0 or self.lock.locked()


class SessionStateStore(Protocol):
    """Keyed session state; the orchestrator receives one explicitly."""

    def get_or_create(self, session_id: str) -> StreamingState:
        """Return the live state for ``session_id``, creating it if needed."""

    def begin_turn(self, session_id: str) -> StreamingState:
        """Pin ``session_id`` against eviction while a turn is running."""

    def end_turn(self, session_id: str) -> None:
        """Release the pin taken by ``begin_turn``."""

    async def add_chunks(self, session_id: str, chunks: list[RetrievalResult]) -> list[RetrievalResult]:
        """Merge chunks into the session and return them with citation numbers."""

    def citations(self, session_id: str) -> list[Citation]:
        """Citations of the session in assignment order."""

    def clear(self, session_id: str) -> None:
        """Drop all state for ``session_id``."""


class InMemorySessionStore:
    """Process-local session store.

    Entries idle longer than ``ttl_seconds`` are dropped on access, and the
    least recently used entry is evicted once ``max_sessions`` is reached.
    Sessions with a running turn or a held lock are never dropped, so the
    store may briefly exceed ``max_sessions`` when every entry is pinned.
    Mutation of one session is serialized by that session's own lock.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SessionConfig()
        self._clock = clock
        self._sessions: OrderedDict[str, StreamingState] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get_or_create(self, session_id: str) -> StreamingState:
        now = self._clock()
        self._expire(now)
        state = self._sessions.get(session_id)
        if state is None:
            self._evict_lru()
            state = StreamingState(session_id=session_id)
            self._sessions[session_id] = state
        else:
            self._sessions.move_to_end(session_id)
        state.last_access = now
        return state

    def begin_turn(self, session_id: str) -> StreamingState:
        state = self.get_or_create(session_id)
        state.active_turns += 1
        return state

    def end_turn(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is None:
            return
        state.active_turns = max(0, state.active_turns - 1)
        state.last_access = self._clock()

    async def add_chunks(self, session_id: str, chunks: list[RetrievalResult]) -> list[RetrievalResult]:
        state = self.get_or_create(session_id)
        async with state.lock:
            state.last_access = self._clock()
            known = state.chunk_ids()
            annotated: list[RetrievalResult] = []
            for chunk in chunks:
                number = state.citations.assign(chunk.chunk_id, chunk.document_title)
                cited = replace(chunk, citation_number=number)
                if chunk.chunk_id not in known:
                    state.chunks.append(cited)
                    known.add(chunk.chunk_id)
                annotated.append(cited)
            return annotated

    def citations(self, session_id: str) -> list[Citation]:
        state = self._sessions.get(session_id)
        return state.citations.list() if state else []

    def chunks(self, session_id: str) -> list[RetrievalResult]:
        state = self._sessions.get(session_id)
        return list(state.chunks) if state else []

    def clear(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.info("Cleared session %s", session_id)

    def _expire(self, now: float) -> None:
        expired = [
            sid
            for sid, state in self._sessions.items()
            if not state.pinned and now - state.last_access > self.config.ttl_seconds
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Expired %d idle sessions", len(expired))

    def _evict_lru(self) -> None:
        while len(self._sessions) >= self.config.max_sessions:
            victim = next((sid for sid, state in self._sessions.items() if not state.pinned), None)
            if victim is None:
                logger.warning(
                    "All %d sessions have running turns; exceeding max_sessions=%d",
                    len(self._sessions),
                    self.config.max_sessions,
                )
                return
            del self._sessions[victim]
            logger.info("Evicted least recently used session %s", victim)

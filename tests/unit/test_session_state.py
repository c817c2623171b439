import asyncio

from scholar_rag.config import SessionConfig
from scholar_rag.session.citations import CitationManager
from scholar_rag.session.state import InMemorySessionStore
from scholar_rag.types import RetrievalResult


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _result(chunk_id: str) -> RetrievalResult:
    return RetrievalResult(
        chunk_id=chunk_id,
        document_id=f"doc-{chunk_id}",
        document_title=f"Doc {chunk_id}",
        content=f"content of {chunk_id}",
        fused_score=0.5,
        retrieval_method="hybrid",
    )


def test_citation_numbers_are_stable_and_gap_free() -> None:
    manager = CitationManager()

    assert manager.assign("a", "A") == 1
    assert manager.assign("b", "B") == 2
    assert manager.assign("a", "A") == 1
    assert manager.assign("c", "C") == 3

    assert [c.citation_number for c in manager.list()] == [1, 2, 3]
    assert "b" in manager
    assert manager.get("missing") is None


async def test_add_chunks_annotates_and_deduplicates() -> None:
    store = InMemorySessionStore()

    first = await store.add_chunks("s1", [_result("a"), _result("b")])
    second = await store.add_chunks("s1", [_result("b"), _result("c")])

    assert [r.citation_number for r in first] == [1, 2]
    assert [r.citation_number for r in second] == [2, 3]
    assert [r.chunk_id for r in store.chunks("s1")] == ["a", "b", "c"]


async def test_concurrent_searches_share_one_numbering() -> None:
    store = InMemorySessionStore()

    await asyncio.gather(
        store.add_chunks("s1", [_result("a"), _result("b")]),
        store.add_chunks("s1", [_result("b"), _result("c")]),
        store.add_chunks("s1", [_result("c"), _result("d")]),
    )

    citations = store.citations("s1")
    assert sorted(c.citation_number for c in citations) == [1, 2, 3, 4]
    assert sorted(c.chunk_id for c in citations) == ["a", "b", "c", "d"]
    assert len(store.chunks("s1")) == 4


async def test_sessions_are_isolated() -> None:
    store = InMemorySessionStore()

    await store.add_chunks("s1", [_result("a")])
    cited = await store.add_chunks("s2", [_result("z")])

    assert cited[0].citation_number == 1
    assert [c.chunk_id for c in store.citations("s1")] == ["a"]


def test_idle_sessions_expire() -> None:
    clock = _Clock()
    store = InMemorySessionStore(SessionConfig(ttl_seconds=10), clock=clock)

    store.get_or_create("old")
    clock.now = 11.0
    store.get_or_create("new")

    assert "old" not in store
    assert "new" in store


def test_least_recently_used_session_is_evicted() -> None:
    clock = _Clock()
    store = InMemorySessionStore(SessionConfig(max_sessions=2), clock=clock)

    store.get_or_create("a")
    store.get_or_create("b")
    store.get_or_create("a")
    store.get_or_create("c")

    assert "b" not in store
    assert "a" in store and "c" in store
    assert len(store) == 2


async def test_clear_drops_session_state() -> None:
    store = InMemorySessionStore()
    await store.add_chunks("s1", [_result("a")])

    store.clear("s1")

    assert store.citations("s1") == []
    assert "s1" not in store
    cited = await store.add_chunks("s1", [_result("b")])
    assert cited[0].citation_number == 1


async def test_session_with_running_turn_survives_ttl_and_lru() -> None:
    clock = _Clock()
    store = InMemorySessionStore(SessionConfig(ttl_seconds=10, max_sessions=1), clock=clock)

    store.begin_turn("busy")
    await store.add_chunks("busy", [_result("a")])
    clock.now = 50.0
    store.get_or_create("other")

    assert "busy" in store
    cited = await store.add_chunks("busy", [_result("b")])
    assert cited[0].citation_number == 2

    store.end_turn("busy")
    clock.now = 51.0
    store.get_or_create("third")

    assert "busy" not in store
    assert "third" in store


async def test_session_with_held_lock_is_not_expired() -> None:
    clock = _Clock()
    store = InMemorySessionStore(SessionConfig(ttl_seconds=10), clock=clock)
    state = store.get_or_create("s1")

    async with state.lock:
        clock.now = 30.0
        store.get_or_create("s2")
        assert "s1" in store

    clock.now = 60.0
    store.get_or_create("s3")
    assert "s1" not in store

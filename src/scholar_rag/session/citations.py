"""Session-scoped citation numbering."""

from __future__ import annotations

from scholar_rag.types import Citation


class CitationManager:
    """Assigns gap-free citation numbers in first-seen order.

    A chunk keeps its number for the life of the session; numbers are never
    reused or reassigned.
    """

    def __init__(self) -> None:
        self._by_chunk: dict[str, Citation] = {}

    def __len__(self) -> int:
        return len(self._by_chunk)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._by_chunk

    def assign(self, chunk_id: str, document_title: str) -> int:
        existing = self._by_chunk.get(chunk_id)
        if existing is not None:
            return existing.citation_number
        citation = Citation(
            citation_number=len(self._by_chunk) + 1,
            chunk_id=chunk_id,
            document_title=document_title,
        )
        self._by_chunk[chunk_id] = citation
        return citation.citation_number

    def get(self, chunk_id: str) -> Citation | None:
        return self._by_chunk.get(chunk_id)

    def list(self) -> list[Citation]:
        return list(self._by_chunk.values())

    def clear(self) -> None:
        self._by_chunk.clear()

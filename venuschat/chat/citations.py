"""
Citations collected from search tool results during one turn.

A CitationAggregator is created per request and owned by the orchestrator.
It keeps citations unique by URL in first-seen order; ids are kept exactly
as the search formatting assigned them.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field


class Citation(BaseModel):
    """A numbered reference to an external source, shown inline as [citation:N]."""

    id: int = Field(ge=1, description="1-based number scoped to one assistant turn")
    url: str
    title: str
    snippet: str | None = None
    thumbnail: str | None = None

    model_config = ConfigDict(frozen=True)

    def to_payload(self) -> dict:
        """Wire shape: optional fields are omitted rather than sent as null."""
        return self.model_dump(exclude_none=True)


class CitationAggregator:
    """Insertion-ordered set of citations keyed by URL."""

    def __init__(self) -> None:
        self._by_url: dict[str, Citation] = {}

    def add(self, citation: Citation) -> None:
        if citation.url not in self._by_url:
            self._by_url[citation.url] = citation

    def extend(self, citations: Iterable[Citation]) -> None:
        for citation in citations:
            self.add(citation)

    def all(self) -> list[Citation]:
        return list(self._by_url.values())

    def __len__(self) -> int:
        return len(self._by_url)

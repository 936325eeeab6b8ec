"""Collaborator interfaces and record types for search.

Defines the abstract contracts the search engine depends on, independent of
the backing store (the PostgreSQL tab store implements all three).

All methods are asynchronous; implementations raise on failure and the
search engine decides how to degrade.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np


@dataclass
class TabRecord:
    """A saved tab as the read side sees it."""

    id: str
    user_id: str
    url: str
    title: str = ""
    summary: Optional[str] = None
    domain: Optional[str] = None
    content: Optional[str] = None
    status: str = "unprocessed"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "url": self.url,
            "title": self.title,
            "summary": self.summary,
            "domain": self.domain,
            "status": self.status,
        }


@dataclass
class LexicalCandidate:
    """Full-text match; ``bm25_score`` is lower-is-better (usually negative)."""

    record: TabRecord
    bm25_score: float


@dataclass
class VectorCandidate:
    """Nearest-neighbour match; ``distance`` is cosine distance in [0, 2]."""

    record: TabRecord
    distance: float


class LexicalIndex(ABC):
    """Full-text index scoped per user."""

    @abstractmethod
    async def search_text(self, query: str, user_id: str, limit: int) -> List[LexicalCandidate]:
        """Return up to ``limit`` matches, best first."""
        pass


class VectorIndex(ABC):
    """Vector similarity index scoped per user."""

    @abstractmethod
    async def search_by_vector(
        self,
        vector: np.ndarray,
        user_id: str,
        limit: int,
        max_distance: Optional[float] = None,
    ) -> List[VectorCandidate]:
        """Return up to ``limit`` nearest records ordered by ascending distance.

        Implementations may pre-filter by ``max_distance``; callers filter
        again, so it is a hint.
        """
        pass


class RecordSource(ABC):
    """Plain record listing used by the substring fallback."""

    @abstractmethod
    async def list_records(self, user_id: str, limit: Optional[int] = None) -> List[TabRecord]:
        """Return the user's records, newest first."""
        pass

"""Collaborator interfaces and record types for bulk ingestion.

The import queue only knows these contracts: an import collaborator that
durably creates raw records, and an enrichment collaborator that turns
imported ids into searchable records. The PostgreSQL tab store and
``TabEnricher`` are the shipped implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np

from ..search.base import TabRecord


@dataclass
class ImportRecord:
    """A normalized tab awaiting import."""

    url: str
    title: str = ""
    summary: Optional[str] = None
    domain: Optional[str] = None
    folder_id: Optional[str] = None

    @classmethod
    def from_value(cls, value: Union["ImportRecord", Mapping[str, Any]]) -> "ImportRecord":
        """Accept an ``ImportRecord`` or a plain mapping with at least ``url``."""
        if isinstance(value, ImportRecord):
            return value
        url = (value.get("url") or "").strip()
        if not url:
            raise ValueError("import record requires a url")
        return cls(
            url=url,
            title=(value.get("title") or url).strip(),
            summary=value.get("summary"),
            domain=value.get("domain"),
            folder_id=value.get("folder_id"),
        )


@dataclass
class ImportOutcome:
    """Per-record result of an import call."""

    url: str
    success: bool
    record_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EnrichmentOutcome:
    """Result of enriching one sub-batch of imported ids."""

    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class ImportCollaborator(ABC):
    """Durably creates raw records."""

    @abstractmethod
    async def import_records(self, user_id: str, records: List[ImportRecord]) -> List[ImportOutcome]:
        """Import ``records``, returning one outcome per record in order.

        Raise when the whole call fails (connection lost, timeout); report
        individual record failures through ``ImportOutcome`` instead.
        """
        pass


class EnrichmentCollaborator(ABC):
    """Turns imported ids into enriched, embedded records."""

    @abstractmethod
    async def enrich(self, user_id: str, record_ids: List[str], job_id: Optional[str] = None) -> EnrichmentOutcome:
        """Enrich ``record_ids`` and report how many failed."""
        pass


class EnrichmentStore(ABC):
    """Record access needed by the enrichment pipeline."""

    @abstractmethod
    async def get_records(self, record_ids: List[str]) -> List[TabRecord]:
        """Fetch records by id; unknown ids are simply absent."""
        pass

    @abstractmethod
    async def update_enrichment(
        self,
        record_id: str,
        content: Optional[str],
        summary: Optional[str],
        embedding: np.ndarray,
        embedding_fallback: bool = False,
    ) -> None:
        """Persist enrichment results and mark the record searchable.

        ``embedding_fallback`` marks a vector that came from the local
        fallback instead of the provider, so it can be regenerated later.
        """
        pass

    @abstractmethod
    async def list_records_needing_embedding(self, user_id: str, limit: int) -> List[TabRecord]:
        """Records with no embedding or a fallback one, oldest first."""
        pass

    @abstractmethod
    async def get_embedding_stats(self, user_id: str) -> "EmbeddingStats":
        pass


@dataclass
class EmbeddingStats:
    """Embedding coverage of one user's tabs."""

    total: int = 0
    with_embeddings: int = 0
    fallback_embeddings: int = 0

    @property
    def without_embeddings(self) -> int:
        return self.total - self.with_embeddings

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.with_embeddings / self.total * 100)

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "with_embeddings": self.with_embeddings,
            "fallback_embeddings": self.fallback_embeddings,
            "without_embeddings": self.without_embeddings,
            "percentage": self.percentage,
        }


def outcome_summary(outcomes: List[ImportOutcome]) -> Dict[str, int]:
    succeeded = sum(1 for o in outcomes if o.success)
    return {"succeeded": succeeded, "failed": len(outcomes) - succeeded}

"""Shared fixtures: a virtual clock and in-memory collaborators."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import numpy as np
import pytest
from prometheus_client import CollectorRegistry

from tabstash.common.clock import Clock
from tabstash.common.errors import StoreConnectionError
from tabstash.common.metrics import MetricsCollector
from tabstash.embedding.client import EmbeddingResult
from tabstash.gateway.circuit_breaker import CircuitBreaker
from tabstash.ingest.base import (
    EmbeddingStats,
    EnrichmentCollaborator,
    EnrichmentOutcome,
    EnrichmentStore,
    ImportCollaborator,
    ImportOutcome,
    ImportRecord,
)
from tabstash.search.base import (
    LexicalCandidate,
    LexicalIndex,
    RecordSource,
    TabRecord,
    VectorCandidate,
    VectorIndex,
)

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Virtual time: ``sleep`` advances the clock and yields once."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def wall_time(self) -> datetime:
        return EPOCH + timedelta(seconds=self._now)

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self._now += seconds
        await asyncio.sleep(0)


def make_record(record_id: str, title: str = "", url: Optional[str] = None, **kwargs) -> TabRecord:
    return TabRecord(
        id=record_id,
        user_id=kwargs.pop("user_id", "user-1"),
        url=url or f"https://example.com/{record_id}",
        title=title or record_id,
        **kwargs,
    )


class FakeImporter(ImportCollaborator):
    """Creates ids ``rec-<n>``; failures are scripted per batch or per URL.

    ``batch_failures`` maps the first URL of a batch to how many times that
    batch raises before succeeding (``-1`` for always).
    """

    def __init__(self, batch_failures: Optional[Dict[str, int]] = None, failing_urls=()):
        self.batch_failures = dict(batch_failures or {})
        self.failing_urls = set(failing_urls)
        self.calls: List[List[str]] = []
        self.active = 0
        self.max_active = 0
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 0
        self._batch_attempts: Dict[str, int] = {}

    async def import_records(self, user_id: str, records: List[ImportRecord]) -> List[ImportOutcome]:
        self.calls.append([r.url for r in records])
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()

            first_url = records[0].url
            attempts = self._batch_attempts.get(first_url, 0) + 1
            self._batch_attempts[first_url] = attempts
            failures = self.batch_failures.get(first_url, 0)
            if failures < 0 or attempts <= failures:
                raise StoreConnectionError("connection reset")

            outcomes = []
            for record in records:
                if record.url in self.failing_urls:
                    outcomes.append(ImportOutcome(url=record.url, success=False, error="duplicate url"))
                else:
                    self._next_id += 1
                    outcomes.append(ImportOutcome(url=record.url, success=True, record_id=f"rec-{self._next_id}"))
            return outcomes
        finally:
            self.active -= 1


class FakeEnricher(EnrichmentCollaborator):
    def __init__(self, failures_per_batch: int = 0, raise_error: bool = False):
        self.failures_per_batch = failures_per_batch
        self.raise_error = raise_error
        self.batches: List[List[str]] = []

    async def enrich(self, user_id: str, record_ids: List[str], job_id: Optional[str] = None) -> EnrichmentOutcome:
        self.batches.append(list(record_ids))
        if self.raise_error:
            raise RuntimeError("enrichment backend down")
        failed = min(self.failures_per_batch, len(record_ids))
        return EnrichmentOutcome(
            processed=len(record_ids) - failed,
            failed=failed,
            errors=[f"{rid}: embedding failed" for rid in record_ids[:failed]],
        )


class InMemoryTabStore(LexicalIndex, VectorIndex, RecordSource, EnrichmentStore):
    """Scripted search results plus a small record table."""

    def __init__(self, records: Optional[List[TabRecord]] = None):
        self.records: Dict[str, TabRecord] = {r.id: r for r in records or []}
        self.vector_results: List[VectorCandidate] = []
        self.lexical_results: List[LexicalCandidate] = []
        self.fail_vector = False
        self.fail_lexical = False
        self.fail_list = False
        self.fail_update = False
        self.vector_calls = 0
        self.lexical_calls = 0
        self.updates: Dict[str, dict] = {}

    async def search_text(self, query: str, user_id: str, limit: int) -> List[LexicalCandidate]:
        self.lexical_calls += 1
        if self.fail_lexical:
            raise RuntimeError("full-text index unavailable")
        return self.lexical_results[:limit]

    async def search_by_vector(self, vector, user_id: str, limit: int, max_distance=None) -> List[VectorCandidate]:
        self.vector_calls += 1
        if self.fail_vector:
            raise RuntimeError("vector index unavailable")
        return self.vector_results[:limit]

    async def list_records(self, user_id: str, limit: Optional[int] = None) -> List[TabRecord]:
        if self.fail_list:
            raise RuntimeError("database unavailable")
        return [r for r in self.records.values() if r.user_id == user_id]

    async def get_records(self, record_ids: List[str]) -> List[TabRecord]:
        return [self.records[rid] for rid in record_ids if rid in self.records]

    async def update_enrichment(self, record_id, content, summary, embedding, embedding_fallback=False) -> None:
        if self.fail_update:
            raise RuntimeError("write failed")
        self.updates[record_id] = {
            "content": content,
            "summary": summary,
            "embedding": embedding,
            "embedding_fallback": embedding_fallback,
        }
        record = self.records.get(record_id)
        if record is not None:
            record.content = content
            record.summary = summary
            record.status = "embedding_fallback" if embedding_fallback else "processed"

    async def list_records_needing_embedding(self, user_id: str, limit: int) -> List[TabRecord]:
        pending = [
            r for r in self.records.values()
            if r.user_id == user_id and r.status not in ("processed", "discarded")
        ]
        return pending[:limit]

    async def get_embedding_stats(self, user_id: str) -> EmbeddingStats:
        records = [r for r in self.records.values() if r.user_id == user_id and r.status != "discarded"]
        return EmbeddingStats(
            total=len(records),
            with_embeddings=sum(1 for r in records if r.status == "processed"),
            fallback_embeddings=sum(1 for r in records if r.status == "embedding_fallback"),
        )


class StubEmbeddingClient:
    """Returns a constant vector and exposes a breaker like the real client.

    ``fallback`` makes every vector report the local fallback as its source.
    """

    def __init__(self, dimensions: int = 8, fallback: bool = False):
        self.dimensions = dimensions
        self.fallback = fallback
        self.calls: List[tuple] = []
        self.circuit_breaker = CircuitBreaker(name="embedding_provider")
        self.closed = False

    async def embed(self, text: str, task: str = "retrieval.query", dimensions: Optional[int] = None) -> np.ndarray:
        return (await self.generate(text, task, dimensions)).vector

    async def generate(
        self, text: str, task: str = "retrieval.query", dimensions: Optional[int] = None
    ) -> EmbeddingResult:
        self.calls.append((text, task))
        vector = np.ones(dimensions or self.dimensions, dtype=np.float32)
        return EmbeddingResult(vector=vector, source="fallback" if self.fallback else "api")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector("test-service", registry=CollectorRegistry())

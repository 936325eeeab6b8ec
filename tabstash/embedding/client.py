"""Embedding client for queries and stored passages.

Produces a fixed-dimension vector for arbitrary text using the Jina
embeddings API. Every provider call goes through the rate-limited gateway and
a circuit breaker; query-type embeddings are served from and stored in the
``EmbeddingCache``.

Highlights
- ``embed`` never raises: any provider failure (network, non-2xx, malformed
  body, missing credentials, open breaker, cleared queue) yields a
  deterministic fallback vector seeded from a SHA-256 of the text, so the
  same text maps to the same vector across restarts
- Query tasks get a higher gateway priority than background passage work
- Fallback vectors for query tasks are cached like real ones

Usage
- ``client = EmbeddingClient(config, gateway, cache)``
- ``vector = await client.embed("rust async tutorials")``
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import numpy as np
import structlog

from ..common.clock import Clock, SystemClock
from ..common.config import EmbeddingConfig
from ..common.errors import ExternalAPIError, TabstashError
from ..common.metrics import MetricsCollector
from ..gateway.circuit_breaker import CircuitBreaker
from ..gateway.rate_limiter import RateLimitGateway
from .cache import EmbeddingCache

logger = structlog.get_logger("embedding.client")

QUERY_TASK = "retrieval.query"
PASSAGE_TASK = "retrieval.passage"
QUERY_TASKS = frozenset({QUERY_TASK, "text-matching"})


@dataclass
class EmbeddingResult:
    """A vector plus where it came from: ``api``, ``cache`` or ``fallback``."""

    vector: np.ndarray
    source: str

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


def fallback_embedding(text: str, dimensions: int) -> np.ndarray:
    """Deterministic unit vector derived from a hash of ``text``."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
    vector = rng.standard_normal(dimensions).astype(np.float32)
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else vector


def describe_url(url: str) -> str:
    """Readable description of a URL for records with no other content.

    ``https://www.github.com/rust-lang/async_book`` becomes
    ``"Github website rust lang async book page"``.
    """
    if not url:
        return ""

    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or "").replace("www.", "", 1)
    parts = []

    if host:
        name = host.split(".")[0]
        parts.append(f"{name[:1].upper()}{name[1:]} website")

    path_parts = [p for p in parsed.path.split("/") if p]
    if path_parts:
        readable = " ".join(p.replace("-", " ").replace("_", " ") for p in path_parts).lower()
        if len(readable) > 2:
            parts.append(f"{readable} page")

    return " ".join(parts)


def build_embedding_text(
    title: Optional[str],
    summary: Optional[str],
    content: Optional[str] = None,
    url: Optional[str] = None,
) -> str:
    """Compose passage text from whatever is known about a record."""
    parts = [p.strip() for p in (title, summary, content) if p and p.strip()]
    if not parts and url:
        described = describe_url(url)
        if described:
            parts.append(described)
    return " ".join(parts).strip()


class EmbeddingClient:
    """Gateway-routed, cache-aware embedding client."""

    def __init__(
        self,
        config: EmbeddingConfig,
        gateway: RateLimitGateway,
        cache: EmbeddingCache,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """Construct the client.

        Parameters
        - config: ``EmbeddingConfig`` with provider URL, key, model and limits
        - gateway: Gateway that must have ``config.tabstash_embedding_service``
          registered
        - cache: Query embedding cache
        - http_client: Optional shared ``httpx.AsyncClient``; one is created
          (and closed by ``close``) when omitted
        - clock, metrics: Injectable time source and metrics collector
        - circuit_breaker: Optional breaker; defaults from config
        """
        self.config = config
        self.gateway = gateway
        self.cache = cache
        self.clock = clock or SystemClock()
        self.metrics = metrics

        self.api_url = config.tabstash_embedding_api_url
        self.api_key = config.tabstash_embedding_api_key
        self.model = config.tabstash_embedding_model
        self.service_name = config.tabstash_embedding_service
        self.default_dimensions = config.tabstash_vector_dimension
        self.max_input_chars = config.tabstash_embedding_max_input_chars

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.tabstash_embedding_timeout_seconds)

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=config.tabstash_embedding_breaker_failure_threshold,
            recovery_timeout=config.tabstash_embedding_breaker_recovery_seconds,
            expected_exception=ExternalAPIError,
            name="embedding_provider",
            clock=self.clock,
        )

    async def embed(self, text: str, task: str = QUERY_TASK, dimensions: Optional[int] = None) -> np.ndarray:
        """Return an embedding for ``text``; never raises."""
        return (await self.generate(text, task, dimensions)).vector

    async def generate(
        self, text: str, task: str = QUERY_TASK, dimensions: Optional[int] = None
    ) -> EmbeddingResult:
        """Like ``embed``, but also report whether the fallback was used."""
        dimensions = dimensions or self.default_dimensions
        cacheable = task in QUERY_TASKS

        if cacheable:
            cached = self.cache.get(text, task)
            if cached is not None and cached.shape[0] == dimensions:
                self._record(task, "cache")
                return EmbeddingResult(vector=cached, source="cache")

        if not self.api_key:
            logger.debug("No embedding API key configured, using fallback", task=task)
            vector = fallback_embedding(text, dimensions)
            outcome = "fallback"
        else:
            try:
                vector = await self.circuit_breaker.call(
                    self._request_via_gateway, text[: self.max_input_chars], task, dimensions
                )
                outcome = "api"
            except TabstashError as e:
                logger.warning(
                    "Embedding provider unavailable, using fallback",
                    task=task,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                vector = fallback_embedding(text, dimensions)
                outcome = "fallback"
            except Exception as e:
                logger.error("Unexpected embedding failure, using fallback", task=task, error=str(e))
                vector = fallback_embedding(text, dimensions)
                outcome = "fallback"

        if cacheable:
            self.cache.set(text, task, vector)
        self._record(task, outcome)
        return EmbeddingResult(vector=vector, source=outcome)

    async def embed_query(self, query: str, dimensions: Optional[int] = None) -> np.ndarray:
        return await self.embed(query, QUERY_TASK, dimensions)

    async def embed_passage(self, text: str, dimensions: Optional[int] = None) -> np.ndarray:
        return await self.embed(text, PASSAGE_TASK, dimensions)

    async def _request_via_gateway(self, text: str, task: str, dimensions: int) -> np.ndarray:
        if task in QUERY_TASKS:
            priority = self.config.tabstash_embedding_query_priority
        else:
            priority = self.config.tabstash_embedding_background_priority

        return await self.gateway.enqueue(
            self.service_name,
            lambda: self._post_embedding(text, task, dimensions),
            priority=priority,
        )

    async def _post_embedding(self, text: str, task: str, dimensions: int) -> np.ndarray:
        payload: Dict[str, Any] = {
            "model": self.model,
            "task": task,
            "dimensions": dimensions,
            "input": [text],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        start = self.clock.now()
        try:
            response = await self.http_client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalAPIError(f"Embedding API request failed: {e}") from e

        if not response.is_success:
            raise ExternalAPIError(
                f"Embedding API returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalAPIError("Embedding API returned invalid JSON") from e

        data = body.get("data") if isinstance(body, dict) else None
        if not data or not isinstance(data[0], dict) or "embedding" not in data[0]:
            raise ExternalAPIError("Embedding API response missing data")

        vector = np.asarray(data[0]["embedding"], dtype=np.float32)
        if self.metrics:
            self.metrics.record_embedding_duration(task, self.clock.now() - start)
        logger.debug("Embedding generated", task=task, dimensions=int(vector.shape[0]))
        return vector

    def _record(self, task: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_embedding(task, outcome)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "api_configured": bool(self.api_key),
            "circuit_breaker": self.circuit_breaker.get_stats(),
            "cache": self.cache.get_stats().to_dict(),
        }

    async def close(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

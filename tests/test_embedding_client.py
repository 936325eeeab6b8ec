"""Tests for the embedding client."""

import httpx
import numpy as np
import pytest

from tabstash.common.config import EmbeddingConfig
from tabstash.embedding.cache import EmbeddingCache
from tabstash.embedding.client import (
    PASSAGE_TASK,
    QUERY_TASK,
    EmbeddingClient,
    build_embedding_text,
    describe_url,
    fallback_embedding,
)
from tabstash.gateway.circuit_breaker import CircuitBreakerState
from tabstash.gateway.rate_limiter import RateLimitGateway

DIMS = 8


class ProviderStub:
    """Programmable stand-in for the embeddings endpoint."""

    def __init__(self, status_code: int = 200, body=None):
        self.status_code = status_code
        self.body = body
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is None:
            body = {"data": [{"embedding": [0.5] * DIMS}]}
        else:
            body = self.body
        return httpx.Response(self.status_code, json=body)


def _make_client(clock, metrics, provider, api_key="test-key"):
    config = EmbeddingConfig(
        tabstash_embedding_api_key=api_key,
        tabstash_vector_dimension=DIMS,
        tabstash_embedding_breaker_failure_threshold=3,
    )
    gateway = RateLimitGateway({"jina-embeddings": 400}, clock=clock, metrics=metrics)
    cache = EmbeddingCache(max_size=10, clock=clock, metrics=metrics)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    return EmbeddingClient(config, gateway, cache, http_client=http_client, clock=clock, metrics=metrics)


class TestEmbeddingClient:

    @pytest.mark.asyncio
    async def test_successful_embedding(self, clock, metrics):
        provider = ProviderStub()
        client = _make_client(clock, metrics, provider)

        vector = await client.embed("rust async", PASSAGE_TASK)

        np.testing.assert_allclose(vector, np.full(DIMS, 0.5, dtype=np.float32))
        request = provider.requests[0]
        assert request.headers["Authorization"] == "Bearer test-key"
        assert b'"task":"retrieval.passage"' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_query_embeddings_are_cached(self, clock, metrics):
        provider = ProviderStub()
        client = _make_client(clock, metrics, provider)

        first = await client.embed_query("Rust Async")
        second = await client.embed_query("rust async ")

        assert len(provider.requests) == 1
        np.testing.assert_array_equal(first, second)
        assert client.cache.get_stats().total_hits == 1

    @pytest.mark.asyncio
    async def test_passages_are_not_cached(self, clock, metrics):
        provider = ProviderStub()
        client = _make_client(clock, metrics, provider)

        await client.embed_passage("same text")
        await client.embed_passage("same text")

        assert len(provider.requests) == 2
        assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_provider_failure_yields_deterministic_fallback(self, clock, metrics):
        """A 5xx response produces the same fallback vector every time."""
        provider = ProviderStub(status_code=503)
        client = _make_client(clock, metrics, provider)

        first = await client.embed("tab text", PASSAGE_TASK)
        second = await client.embed("tab text", PASSAGE_TASK)

        np.testing.assert_array_equal(first, second)
        np.testing.assert_array_equal(first, fallback_embedding("tab text", DIMS))
        assert first.shape == (DIMS,)
        assert np.isclose(np.linalg.norm(first), 1.0, atol=1e-5)

    @pytest.mark.asyncio
    async def test_generate_reports_the_vector_source(self, clock, metrics):
        provider = ProviderStub()
        client = _make_client(clock, metrics, provider)

        assert (await client.generate("tab text", PASSAGE_TASK)).source == "api"
        await client.generate("rust async", QUERY_TASK)
        assert (await client.generate("rust async", QUERY_TASK)).source == "cache"

        provider.status_code = 503
        result = await client.generate("other text", PASSAGE_TASK)
        assert result.is_fallback
        np.testing.assert_array_equal(result.vector, fallback_embedding("other text", DIMS))

    @pytest.mark.asyncio
    async def test_malformed_body_falls_back(self, clock, metrics):
        provider = ProviderStub(body={"unexpected": True})
        client = _make_client(clock, metrics, provider)

        vector = await client.embed("tab text", PASSAGE_TASK)
        np.testing.assert_array_equal(vector, fallback_embedding("tab text", DIMS))

    @pytest.mark.asyncio
    async def test_missing_api_key_skips_provider(self, clock, metrics):
        provider = ProviderStub()
        client = _make_client(clock, metrics, provider, api_key=None)

        vector = await client.embed_query("rust async")

        assert provider.requests == []
        np.testing.assert_array_equal(vector, fallback_embedding("rust async", DIMS))
        assert client.cache.has("rust async", QUERY_TASK)

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self, clock, metrics):
        """Once open, the provider is no longer called."""
        provider = ProviderStub(status_code=500)
        client = _make_client(clock, metrics, provider)

        for i in range(3):
            await client.embed(f"text {i}", PASSAGE_TASK)
        assert client.circuit_breaker.get_state() == CircuitBreakerState.OPEN

        await client.embed("text 4", PASSAGE_TASK)
        assert len(provider.requests) == 3
        assert client.get_stats()["circuit_breaker"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_explicit_dimensions(self, clock, metrics):
        client = _make_client(clock, metrics, ProviderStub(), api_key=None)
        vector = await client.embed("short", PASSAGE_TASK, dimensions=4)
        assert vector.shape == (4,)


def test_fallback_embedding_differs_by_text():
    a = fallback_embedding("alpha", DIMS)
    b = fallback_embedding("beta", DIMS)
    assert not np.array_equal(a, b)
    assert a.dtype == np.float32


def test_build_embedding_text_prefers_known_fields():
    assert build_embedding_text("Title", "Summary", "Body") == "Title Summary Body"
    assert build_embedding_text("", None, None, "https://www.github.com/rust-lang/async_book") == (
        "Github website rust lang async book page"
    )
    assert build_embedding_text(None, None) == ""


def test_describe_url_without_path():
    assert describe_url("docs.rs") == "Docs website"
    assert describe_url("") == ""

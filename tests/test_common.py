"""Tests for common utilities."""

import pytest
from prometheus_client import CollectorRegistry

from tabstash.common.config import (
    ApiConfig,
    BaseConfig,
    GatewayConfig,
    ImportQueueConfig,
    SearchConfig,
    get_config,
)
from tabstash.common.errors import RateLimitBackoff, RetriesExhausted, StoreQueryError, StoreError
from tabstash.common.logging import ServiceLogger, configure_logging, log_performance
from tabstash.common.metrics import MetricsCollector


def test_config_loading():
    """Test configuration loading."""
    config = BaseConfig()
    assert config.tabstash_env == "local"
    assert config.tabstash_log_level == "INFO"
    assert config.tabstash_vector_dimension == 1024


def test_gateway_config_defaults():
    """Default per-service limits match the provider quotas."""
    config = GatewayConfig()
    assert config.tabstash_rate_limits == {
        "gemini": 60,
        "jina-embeddings": 400,
        "screenshots": 30,
        "content-extraction": 100,
    }
    assert config.tabstash_rate_window_seconds == 60.0


def test_search_and_import_defaults():
    """Search and import knobs have the documented defaults."""
    search = SearchConfig()
    assert search.tabstash_search_rrf_k == 20.0
    assert search.tabstash_search_distance_threshold == 0.7
    assert search.tabstash_search_candidate_cap == 30

    queue = ImportQueueConfig()
    assert queue.tabstash_import_max_concurrent_jobs == 2
    assert queue.tabstash_import_batch_size == 50
    assert queue.tabstash_import_processing_batch_size == 25
    assert queue.tabstash_import_max_retries == 3


def test_config_reads_environment(monkeypatch):
    """Environment variables override defaults, case-insensitively."""
    monkeypatch.setenv("TABSTASH_SEARCH_RRF_K", "60")
    monkeypatch.setenv("TABSTASH_RATE_LIMITS", '{"gemini": 30}')

    assert SearchConfig().tabstash_search_rrf_k == 60.0
    assert GatewayConfig().tabstash_rate_limits == {"gemini": 30}


def test_get_config():
    """Component names map to their config classes."""
    assert isinstance(get_config("search"), SearchConfig)
    assert isinstance(get_config("import-queue"), ImportQueueConfig)
    assert isinstance(get_config("api"), ApiConfig)
    assert type(get_config("unknown")) is BaseConfig


def test_api_config_combines_components():
    config = ApiConfig()
    assert config.tabstash_api_port == 9010
    assert config.tabstash_search_default_limit == 20
    assert config.tabstash_embedding_cache_max_size == 1000


def test_env_file_is_read(tmp_path, monkeypatch):
    """Settings come from a .env file; values may contain '='."""
    monkeypatch.delenv("TABSTASH_ENV", raising=False)
    monkeypatch.delenv("TABSTASH_DB_DSN", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("# comment\n\nTABSTASH_ENV=test\nTABSTASH_DB_DSN=postgresql://u:p@h/db?x=1\n")

    config = BaseConfig(_env_file=str(env_file))
    assert config.tabstash_env == "test"
    assert config.tabstash_db_dsn == "postgresql://u:p@h/db?x=1"


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")
    configure_logging("test-service", "debug", "console")
    log_performance("unit-test", 1.5, results=3)


def test_service_logger_bind():
    log = ServiceLogger("tests", job_id="job-1")
    bound = log.bind(user_id="user-1")
    assert bound.context == {"job_id": "job-1", "user_id": "user-1"}
    assert log.context == {"job_id": "job-1"}
    bound.info("bound logger works", extra_field=1)


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service", registry=CollectorRegistry())
    assert collector.service_name == "test-service"

    collector.record_http_request("GET", "/test", 200, 0.1)
    collector.record_search("hybrid", 0.05)
    collector.record_embedding("retrieval.query", "fallback")
    collector.record_cache_hit("query_embedding")
    collector.record_gateway_dispatch("gemini", "ok")
    collector.record_import_job("completed")
    collector.record_import_records("imported", 3)
    collector.record_import_records("failed", 0)

    metrics = collector.get_metrics()
    assert isinstance(metrics, str)
    assert "http_requests_total" in metrics
    assert 'tabstash_search_requests_total{mode="hybrid"} 1.0' in metrics
    assert 'tabstash_import_records_total{outcome="imported"} 3.0' in metrics
    assert 'outcome="failed"' not in metrics


def test_collectors_do_not_share_registries():
    """Two collectors can coexist without duplicate registration errors."""
    first = MetricsCollector("a")
    second = MetricsCollector("b")
    first.record_search("lexical", 0.01)
    assert "tabstash_search_requests_total" in second.get_metrics()
    assert 'mode="lexical"' not in second.get_metrics()


def test_error_hierarchy():
    backoff = RateLimitBackoff("gemini", 1.25)
    assert backoff.wait_seconds == 1.25
    assert "gemini" in str(backoff)

    exhausted = RetriesExhausted("batch failed", attempts=4)
    assert exhausted.attempts == 4

    with pytest.raises(StoreError):
        raise StoreQueryError("boom")

"""Common utilities shared across components.

Includes:
- ``config``: pydantic-settings configuration from ``TABSTASH_*`` variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics collector.
- ``errors``: exception hierarchy.
- ``clock``: injectable time source.

Import pattern:
- from tabstash.common.config import SearchConfig
- from tabstash.common.logging import configure_logging
"""

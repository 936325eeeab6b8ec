"""tabstash: ingestion and retrieval core for saved browser tabs.

Subpackages:
- ``tabstash.common``: configuration, logging, metrics, errors and clock.
- ``tabstash.gateway``: per-service rate limiting and the circuit breaker.
- ``tabstash.embedding``: query embedding cache and the embedding client.
- ``tabstash.search``: hybrid lexical/semantic search and rank fusion.
- ``tabstash.ingest``: bulk import queue and the enrichment pipeline.
- ``tabstash.store``: PostgreSQL-backed tab store.
- ``tabstash.api``: FastAPI routes; ``tabstash.main`` builds the app.
"""

__version__ = "0.1.0"

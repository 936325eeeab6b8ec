"""Embedding generation and the query embedding cache.

Primary components:
- ``cache``: ``EmbeddingCache``, a bounded LRU keyed by normalized query and
  task.
- ``client``: ``EmbeddingClient`` plus ``build_embedding_text`` for passages.
"""

from .cache import CacheStats, EmbeddingCache
from .client import PASSAGE_TASK, QUERY_TASK, EmbeddingClient, EmbeddingResult, build_embedding_text

__all__ = [
    "CacheStats",
    "EmbeddingCache",
    "EmbeddingClient",
    "EmbeddingResult",
    "PASSAGE_TASK",
    "QUERY_TASK",
    "build_embedding_text",
]

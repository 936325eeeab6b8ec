"""Storage backends.

- ``postgres``: ``PostgresTabStore`` (asyncpg + pgvector + tsvector).
"""

from .postgres import PostgresTabStore

__all__ = ["PostgresTabStore"]

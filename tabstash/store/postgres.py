"""PostgreSQL tab store.

One asyncpg-backed class that plays every storage role the core needs:
import collaborator, lexical index, vector index, fallback record source and
enrichment store.

Expected table (managed outside this package)

    tabs(
        id text primary key, user_id text, url text, title text,
        summary text, domain text, folder_id text, content text,
        status text, embedding vector(<dimension>),
        search_vector tsvector,  -- generated from title/summary/content/url
        created_at timestamptz default now(), updated_at timestamptz
    )

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- The pgvector ``vector`` type is exchanged through a text codec
- Lexical scores are returned as ``-ts_rank_cd`` so lower is better, like BM25
"""

import uuid
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool

from ..common.config import BaseConfig
from ..common.errors import StoreConnectionError, StoreError, StoreQueryError
from ..ingest.base import EmbeddingStats, EnrichmentStore, ImportCollaborator, ImportOutcome, ImportRecord
from ..search.base import (
    LexicalCandidate,
    LexicalIndex,
    RecordSource,
    TabRecord,
    VectorCandidate,
    VectorIndex,
)

logger = structlog.get_logger("store.postgres")

_RECORD_COLUMNS = "id, user_id, url, title, summary, domain, content, status"

STATUS_PROCESSED = "processed"
STATUS_EMBEDDING_FALLBACK = "embedding_fallback"


def encode_vector(value: Iterable[float]) -> str:
    array = np.asarray(value, dtype=np.float32)
    return "[" + ",".join(str(float(v)) for v in array.tolist()) + "]"


def decode_vector(value: Optional[str]) -> Optional[np.ndarray]:
    if value is None:
        return None
    stripped = value.strip("[]")
    if not stripped:
        return np.array([], dtype=np.float32)
    return np.array(stripped.split(","), dtype=np.float32)


def domain_from_url(url: str) -> Optional[str]:
    host = urlparse(url if "://" in url else f"https://{url}").hostname
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def _row_to_record(row: Any) -> TabRecord:
    return TabRecord(
        id=row["id"],
        user_id=row["user_id"],
        url=row["url"],
        title=row["title"] or "",
        summary=row["summary"],
        domain=row["domain"],
        content=row["content"],
        status=row["status"],
    )


class PostgresTabStore(ImportCollaborator, LexicalIndex, VectorIndex, RecordSource, EnrichmentStore):
    """Tab storage on PostgreSQL with pgvector and full-text search."""

    def __init__(
        self,
        dsn: str,
        pool_min_size: int = 1,
        pool_max_size: int = 10,
        command_timeout: float = 60.0,
        text_search_config: str = "english",
    ):
        """Configure the store.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - pool_min_size, pool_max_size: asyncpg pool bounds
        - command_timeout: Seconds to allow per DB command
        - text_search_config: PostgreSQL text search configuration name
        """
        self.dsn = dsn
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.command_timeout = command_timeout
        self.text_search_config = text_search_config
        self._pool: Optional[Pool] = None

    @classmethod
    def from_config(cls, config: BaseConfig) -> "PostgresTabStore":
        return cls(
            dsn=config.tabstash_db_dsn,
            pool_min_size=config.tabstash_db_pool_min_size,
            pool_max_size=config.tabstash_db_pool_max_size,
            command_timeout=config.tabstash_db_command_timeout,
        )

    async def _init_connection(self, conn: Connection) -> None:
        """Register a text codec for the pgvector ``vector`` type."""
        await conn.set_type_codec(
            "vector",
            encoder=encode_vector,
            decoder=decode_vector,
            schema="public",
            format="text",
        )

    async def _get_pool(self) -> Pool:
        """Get or create the connection pool."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.pool_min_size,
                    max_size=self.pool_max_size,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created tab store connection pool", pool_size=self.pool_max_size)
            except Exception as e:
                logger.error("Failed to create tab store connection pool", error=str(e))
                raise StoreConnectionError(f"Failed to create connection pool: {e}") from e

        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False
    ) -> Any:
        """Execute a query, wrapping failures in ``StoreQueryError``."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                if fetch_one:
                    return await conn.fetchrow(query, *args)
                if fetch:
                    return await conn.fetch(query, *args)
                return await conn.execute(query, *args)
        except Exception as e:
            logger.error("Query execution failed", error=str(e))
            raise StoreQueryError(f"Query failed: {e}") from e

    # Import collaborator ------------------------------------------------

    async def import_records(self, user_id: str, records: List[ImportRecord]) -> List[ImportOutcome]:
        """Insert the batch in one transaction.

        Each record gets its own savepoint so a rejected row only fails that
        row. Losing the connection rolls the whole batch back, which keeps a
        retried batch from inserting the same tabs twice.
        """
        pool = await self._get_pool()
        outcomes: List[ImportOutcome] = []
        query = """
            INSERT INTO tabs (id, user_id, url, title, summary, domain, folder_id, status, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, 'unprocessed', now())
        """

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for record in records:
                        record_id = str(uuid.uuid4())
                        try:
                            async with conn.transaction():
                                await conn.execute(
                                    query,
                                    record_id,
                                    user_id,
                                    record.url,
                                    record.title or record.url,
                                    record.summary,
                                    record.domain or domain_from_url(record.url),
                                    record.folder_id,
                                )
                        except asyncpg.PostgresError as e:
                            outcomes.append(ImportOutcome(url=record.url, success=False, error=str(e)))
                        else:
                            outcomes.append(ImportOutcome(url=record.url, success=True, record_id=record_id))
        except (OSError, asyncpg.InterfaceError) as e:
            logger.error("Import batch lost its connection", user_id=user_id, error=str(e))
            raise StoreConnectionError(f"Import failed: {e}") from e

        logger.debug(
            "Imported records",
            user_id=user_id,
            succeeded=sum(1 for o in outcomes if o.success),
            total=len(records),
        )
        return outcomes

    # Lexical index ------------------------------------------------------

    async def search_text(self, query: str, user_id: str, limit: int) -> List[LexicalCandidate]:
        sql = f"""
            SELECT {_RECORD_COLUMNS}, -ts_rank_cd(search_vector, q) AS bm25_score
            FROM tabs, websearch_to_tsquery($1, $2) AS q
            WHERE user_id = $3
              AND status <> 'discarded'
              AND search_vector @@ q
            ORDER BY bm25_score ASC
            LIMIT $4
        """
        rows = await self._execute_query(sql, self.text_search_config, query, user_id, limit, fetch=True)
        return [LexicalCandidate(record=_row_to_record(r), bm25_score=float(r["bm25_score"])) for r in rows]

    # Vector index -------------------------------------------------------

    async def search_by_vector(
        self,
        vector: np.ndarray,
        user_id: str,
        limit: int,
        max_distance: Optional[float] = None,
    ) -> List[VectorCandidate]:
        sql = f"""
            SELECT {_RECORD_COLUMNS}, embedding <=> $1 AS distance
            FROM tabs
            WHERE user_id = $2
              AND embedding IS NOT NULL
              AND status <> 'discarded'
              AND ($3::float8 IS NULL OR embedding <=> $1 <= $3::float8)
            ORDER BY distance ASC
            LIMIT $4
        """
        rows = await self._execute_query(sql, vector, user_id, max_distance, limit, fetch=True)
        return [VectorCandidate(record=_row_to_record(r), distance=float(r["distance"])) for r in rows]

    # Record source / enrichment store ----------------------------------

    async def list_records(self, user_id: str, limit: Optional[int] = None) -> List[TabRecord]:
        sql = f"""
            SELECT {_RECORD_COLUMNS}
            FROM tabs
            WHERE user_id = $1 AND status <> 'discarded'
            ORDER BY created_at DESC
            LIMIT $2
        """
        rows = await self._execute_query(sql, user_id, limit, fetch=True)
        return [_row_to_record(r) for r in rows]

    async def get_records(self, record_ids: List[str]) -> List[TabRecord]:
        if not record_ids:
            return []
        sql = f"SELECT {_RECORD_COLUMNS} FROM tabs WHERE id = ANY($1::text[])"
        rows = await self._execute_query(sql, list(record_ids), fetch=True)
        return [_row_to_record(r) for r in rows]

    async def update_enrichment(
        self,
        record_id: str,
        content: Optional[str],
        summary: Optional[str],
        embedding: np.ndarray,
        embedding_fallback: bool = False,
    ) -> None:
        sql = """
            UPDATE tabs
            SET content = $2, summary = $3, embedding = $4, status = $5, updated_at = now()
            WHERE id = $1
        """
        status = STATUS_EMBEDDING_FALLBACK if embedding_fallback else STATUS_PROCESSED
        result = await self._execute_query(sql, record_id, content, summary, embedding, status)
        if result == "UPDATE 0":
            raise StoreError(f"Tab {record_id} not found")

    async def list_records_needing_embedding(self, user_id: str, limit: int) -> List[TabRecord]:
        sql = f"""
            SELECT {_RECORD_COLUMNS}
            FROM tabs
            WHERE user_id = $1
              AND status <> 'discarded'
              AND (embedding IS NULL OR status = $2)
            ORDER BY created_at ASC
            LIMIT $3
        """
        rows = await self._execute_query(sql, user_id, STATUS_EMBEDDING_FALLBACK, limit, fetch=True)
        return [_row_to_record(r) for r in rows]

    async def get_embedding_stats(self, user_id: str) -> EmbeddingStats:
        sql = """
            SELECT count(*) AS total,
                   count(*) FILTER (WHERE embedding IS NOT NULL AND status <> $2) AS with_embeddings,
                   count(*) FILTER (WHERE status = $2) AS fallback_embeddings
            FROM tabs
            WHERE user_id = $1 AND status <> 'discarded'
        """
        row = await self._execute_query(sql, user_id, STATUS_EMBEDDING_FALLBACK, fetch_one=True)
        return EmbeddingStats(
            total=int(row["total"]),
            with_embeddings=int(row["with_embeddings"]),
            fallback_embeddings=int(row["fallback_embeddings"]),
        )

    # Lifecycle ----------------------------------------------------------

    async def health_check(self) -> bool:
        try:
            await self._execute_query("SELECT 1", fetch_one=True)
            return True
        except StoreError as e:
            logger.warning("Tab store health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Closed tab store connection pool")

"""Bulk ingestion of saved tabs.

Primary components:
- ``base``: record types and the import/enrichment collaborator interfaces.
- ``import_queue``: ``ImportQueueManager`` running bounded-concurrency jobs.
- ``enrichment``: ``TabEnricher`` with content extraction and summaries.
- ``retry_handler``: capped linear/exponential retry.
"""

from .base import EmbeddingStats, EnrichmentOutcome, ImportOutcome, ImportRecord
from .import_queue import ImportProgress, ImportQueueManager, JobPhase

__all__ = [
    "EmbeddingStats",
    "EnrichmentOutcome",
    "ImportOutcome",
    "ImportProgress",
    "ImportQueueManager",
    "ImportRecord",
    "JobPhase",
]

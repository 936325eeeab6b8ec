"""Hybrid search over saved tabs.

Primary components:
- ``base``: record types and the lexical/vector/record-source interfaces.
- ``fusion``: RRF and the legacy weighted fusion.
- ``search_manager``: ``SearchManager`` orchestrating sub-searches and
  fallbacks.
"""

from .base import LexicalCandidate, LexicalIndex, RecordSource, TabRecord, VectorCandidate, VectorIndex
from .fusion import SearchHit, SearchWeights
from .search_manager import SearchManager, analyze_query

__all__ = [
    "LexicalCandidate",
    "LexicalIndex",
    "RecordSource",
    "SearchHit",
    "SearchManager",
    "SearchWeights",
    "TabRecord",
    "VectorCandidate",
    "VectorIndex",
    "analyze_query",
]

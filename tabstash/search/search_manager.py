"""Search manager for hybrid semantic and lexical search.

Combines vector similarity (semantic) with full-text ranking (lexical) and
merges results using Reciprocal Rank Fusion (RRF), falling back to a weighted
score combination when RRF cannot order the candidates.

Degradation
- A failing sub-search degrades to the other one
- If both fail (or neither applies to the query) a case-insensitive substring
  match over the user's records is used
- ``search`` only returns ``[]`` when even the record listing fails
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from ..common.clock import Clock, SystemClock
from ..common.config import SearchConfig
from ..common.logging import log_performance
from ..common.metrics import MetricsCollector
from ..embedding.client import QUERY_TASK, EmbeddingClient
from .base import LexicalCandidate, LexicalIndex, RecordSource, VectorCandidate, VectorIndex
from .fusion import (
    ReciprocalRankFusion,
    SearchHit,
    SearchWeights,
    WeightedScoreFusion,
    is_degenerate,
)

logger = structlog.get_logger("search.search_manager")

URL_PATTERN = re.compile(r"^(https?://|www\.)", re.IGNORECASE)


@dataclass
class QueryAnalysis:
    is_url: bool
    is_short: bool
    has_letters: bool
    has_digits: bool
    use_vector: bool
    use_text: bool


def analyze_query(query: str, min_vector_length: int = 3) -> QueryAnalysis:
    """Decide which search methods apply to ``query``.

    Short and URL-shaped queries are lexical-only; queries without letters
    skip the vector path, and queries with neither letters nor digits skip
    both.
    """
    text = query.strip()
    is_url = bool(URL_PATTERN.match(text))
    is_short = len(text) < min_vector_length
    has_letters = any(c.isalpha() for c in text)
    has_digits = any(c.isdigit() for c in text)

    return QueryAnalysis(
        is_url=is_url,
        is_short=is_short,
        has_letters=has_letters,
        has_digits=has_digits,
        use_vector=not is_short and not is_url and has_letters,
        use_text=has_letters or has_digits,
    )


class SearchManager:
    """Manages hybrid search operations.

    Responsibilities
    - Embed the query through the (cached, rate-limited) embedding client
    - Run vector and lexical sub-searches concurrently
    - Fuse, filter, and return ranked results
    """

    def __init__(
        self,
        config: SearchConfig,
        embedding_client: EmbeddingClient,
        lexical_index: LexicalIndex,
        vector_index: VectorIndex,
        record_source: RecordSource,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Clock] = None,
        rrf_k: Optional[float] = None,
        distance_threshold: Optional[float] = None,
    ):
        """Construct a search manager.

        Parameters
        - config: ``SearchConfig`` with limits, weights, RRF ``k`` and threshold
        - embedding_client: Client used for query embeddings
        - lexical_index, vector_index, record_source: Store collaborators
        - metrics, clock: Optional collector and time source
        - rrf_k, distance_threshold: Per-instance overrides of the config
        """
        self.config = config
        self.embedding_client = embedding_client
        self.lexical_index = lexical_index
        self.vector_index = vector_index
        self.record_source = record_source
        self.metrics = metrics
        self.clock = clock or SystemClock()

        self.default_limit = config.tabstash_search_default_limit
        self.candidate_cap = config.tabstash_search_candidate_cap
        self.candidate_multiplier = config.tabstash_search_candidate_multiplier
        self.min_vector_query_length = config.tabstash_search_min_vector_query_length
        self.default_weights = SearchWeights(
            vector=config.tabstash_search_vector_weight,
            text=config.tabstash_search_text_weight,
        )
        self.distance_threshold = (
            distance_threshold if distance_threshold is not None else config.tabstash_search_distance_threshold
        )
        self.rrf = ReciprocalRankFusion(k=rrf_k if rrf_k is not None else config.tabstash_search_rrf_k)
        self.legacy_fusion = WeightedScoreFusion()

    def candidate_limit(self, limit: int) -> int:
        """Per-method candidate count: ``floor(min(limit * 1.5, 30))``."""
        return max(1, int(min(limit * self.candidate_multiplier, self.candidate_cap)))

    async def search(
        self,
        query: str,
        user_id: str,
        limit: Optional[int] = None,
        weights: Optional[SearchWeights] = None,
    ) -> List[SearchHit]:
        """Return up to ``limit`` hits for ``query`` in ``user_id``'s records."""
        query = (query or "").strip()
        if not query:
            return []

        limit = limit or self.default_limit
        weights = weights or self.default_weights
        start = self.clock.now()

        analysis = analyze_query(query, self.min_vector_query_length)
        use_vector = analysis.use_vector and weights.vector > 0
        use_text = analysis.use_text and weights.text > 0
        candidate_limit = self.candidate_limit(limit)

        logger.debug(
            "Search started",
            user_id=user_id,
            query=query[:50],
            use_vector=use_vector,
            use_text=use_text,
            candidate_limit=candidate_limit,
        )

        searches = {}
        if use_vector:
            searches["vector"] = self._semantic_search(query, user_id, candidate_limit)
        if use_text:
            searches["lexical"] = self._lexical_search(query, user_id, candidate_limit)

        if not searches:
            mode = "fallback"
            hits = await self._fallback_search(query, user_id, limit)
        else:
            outcomes = await asyncio.gather(*searches.values(), return_exceptions=True)
            results: Dict[str, list] = {}
            for name, outcome in zip(searches, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning("Sub-search failed", method=name, error=str(outcome), user_id=user_id)
                else:
                    results[name] = outcome

            if not results:
                mode = "fallback"
                hits = await self._fallback_search(query, user_id, limit)
            else:
                mode = "hybrid" if len(results) == 2 else next(iter(results))
                hits = self._fuse(results.get("vector", []), results.get("lexical", []), weights)[:limit]

        duration = self.clock.now() - start
        if self.metrics:
            self.metrics.record_search(mode, duration)
        log_performance("search", duration * 1000, mode=mode, results=len(hits))
        return hits

    async def _semantic_search(self, query: str, user_id: str, limit: int) -> List[VectorCandidate]:
        """Embed the query and return candidates within the distance threshold."""
        vector = await self.embedding_client.embed(query, QUERY_TASK)
        candidates = await self.vector_index.search_by_vector(
            vector, user_id, limit, max_distance=self.distance_threshold
        )
        within = [c for c in candidates if c.distance <= self.distance_threshold]
        within.sort(key=lambda c: c.distance)

        if len(within) < len(candidates):
            logger.debug(
                "Dropped vector candidates beyond threshold",
                dropped=len(candidates) - len(within),
                threshold=self.distance_threshold,
            )
        return within[:limit]

    async def _lexical_search(self, query: str, user_id: str, limit: int) -> List[LexicalCandidate]:
        candidates = await self.lexical_index.search_text(query, user_id, limit)
        return candidates[:limit]

    def _fuse(
        self,
        vector_candidates: List[VectorCandidate],
        lexical_candidates: List[LexicalCandidate],
        weights: SearchWeights,
    ) -> List[SearchHit]:
        fused = self.rrf.fuse_results(vector_candidates, lexical_candidates)
        has_input = bool(vector_candidates or lexical_candidates)

        if (has_input and not fused) or is_degenerate(fused):
            logger.info(
                "RRF produced no usable ordering, using weighted fusion",
                candidates=len(fused),
            )
            fused = self.legacy_fusion.fuse_results(vector_candidates, lexical_candidates, weights)
        return fused

    async def _fallback_search(self, query: str, user_id: str, limit: int) -> List[SearchHit]:
        """Case-insensitive substring match over title, summary, URL and domain."""
        needle = query.lower()
        try:
            records = await self.record_source.list_records(user_id)
        except Exception as e:
            logger.error("Fallback search failed", user_id=user_id, error=str(e))
            return []

        hits = []
        for record in records:
            fields = (record.title, record.summary, record.url, record.domain)
            if any(f and needle in f.lower() for f in fields):
                hits.append(SearchHit(record_id=record.id, record=record, fusion_algorithm="substring"))
                if len(hits) >= limit:
                    break

        logger.info("Fallback substring search used", user_id=user_id, results=len(hits))
        return hits

    async def health_check(self) -> Dict[str, str]:
        """Report the embedding breaker state; store health is checked by the store."""
        return {
            "embedding_provider": self.embedding_client.circuit_breaker.get_state().value,
        }

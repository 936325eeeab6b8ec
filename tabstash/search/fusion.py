"""Result fusion algorithms for hybrid search.

Two strategies merge the vector and lexical candidate lists:

- ``ReciprocalRankFusion``: each list contributes ``1 / (k + rank)`` for the
  records it contains; scores are summed and sorted descending, ties broken
  by the best individual rank and then by first appearance.
- ``WeightedScoreFusion``: the legacy combination of raw scores, used when
  RRF cannot order the candidates (see ``is_degenerate``).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from .base import LexicalCandidate, TabRecord, VectorCandidate

logger = structlog.get_logger("search.fusion")

# Saturation constant of the legacy BM25 normalization raw / (raw + c).
BM25_SATURATION = 5.0


@dataclass
class SearchWeights:
    """Relative weight of each method; a zero weight disables it."""

    vector: float = 0.5
    text: float = 0.5

    def __post_init__(self):
        if self.vector < 0 or self.text < 0:
            raise ValueError("search weights must be non-negative")


@dataclass
class SearchHit:
    """One fused result, transient per query."""

    record_id: str
    record: TabRecord
    vector_distance: Optional[float] = None
    bm25_score: Optional[float] = None
    fused_score: float = 0.0
    vector_rank: Optional[int] = None
    lexical_rank: Optional[int] = None
    fusion_algorithm: str = "rrf"

    @property
    def best_rank(self) -> Optional[int]:
        ranks = [r for r in (self.vector_rank, self.lexical_rank) if r is not None]
        return min(ranks) if ranks else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.record.to_dict(),
            "score": self.fused_score,
            "vector_distance": self.vector_distance,
            "bm25_score": self.bm25_score,
            "vector_rank": self.vector_rank,
            "lexical_rank": self.lexical_rank,
            "fusion_algorithm": self.fusion_algorithm,
        }


def _merge_candidates(
    vector_candidates: List[VectorCandidate],
    lexical_candidates: List[LexicalCandidate],
    algorithm: str,
) -> Dict[str, SearchHit]:
    """Build one ``SearchHit`` per record id, in first-seen order."""
    hits: Dict[str, SearchHit] = {}

    for rank, candidate in enumerate(vector_candidates, start=1):
        record_id = candidate.record.id
        if record_id in hits:
            continue
        hits[record_id] = SearchHit(
            record_id=record_id,
            record=candidate.record,
            vector_distance=candidate.distance,
            vector_rank=rank,
            fusion_algorithm=algorithm,
        )

    for rank, candidate in enumerate(lexical_candidates, start=1):
        record_id = candidate.record.id
        hit = hits.get(record_id)
        if hit is None:
            hits[record_id] = SearchHit(
                record_id=record_id,
                record=candidate.record,
                bm25_score=candidate.bm25_score,
                lexical_rank=rank,
                fusion_algorithm=algorithm,
            )
        elif hit.lexical_rank is None:
            hit.bm25_score = candidate.bm25_score
            hit.lexical_rank = rank

    return hits


def _sort_hits(hits: List[SearchHit]) -> List[SearchHit]:
    # list.sort is stable, so equal keys keep first-seen order.
    hits.sort(key=lambda h: (-h.fused_score, h.best_rank if h.best_rank is not None else float("inf")))
    return hits


class RankFusionAlgorithm:
    """Base class for rank fusion algorithms."""

    name = "base"

    def fuse_results(
        self,
        vector_candidates: List[VectorCandidate],
        lexical_candidates: List[LexicalCandidate],
        weights: Optional[SearchWeights] = None,
    ) -> List[SearchHit]:
        """Fuse vector and lexical candidates into one ordered list."""
        raise NotImplementedError


class ReciprocalRankFusion(RankFusionAlgorithm):
    """Reciprocal Rank Fusion (RRF) algorithm."""

    name = "rrf"

    def __init__(self, k: float = 20.0):
        if k <= 0:
            raise ValueError("RRF k must be positive")
        self.k = k

    def fuse_results(
        self,
        vector_candidates: List[VectorCandidate],
        lexical_candidates: List[LexicalCandidate],
        weights: Optional[SearchWeights] = None,
    ) -> List[SearchHit]:
        """Fuse results using RRF; weights are not used."""
        hits = _merge_candidates(vector_candidates, lexical_candidates, self.name)

        for hit in hits.values():
            score = 0.0
            if hit.vector_rank is not None:
                score += 1.0 / (self.k + hit.vector_rank)
            if hit.lexical_rank is not None:
                score += 1.0 / (self.k + hit.lexical_rank)
            hit.fused_score = score

        fused = _sort_hits(list(hits.values()))

        logger.debug(
            "RRF fusion completed",
            vector_count=len(vector_candidates),
            lexical_count=len(lexical_candidates),
            fused_count=len(fused),
            k_parameter=self.k
        )
        return fused


def normalize_bm25(bm25_score: Optional[float]) -> float:
    """Map a lower-is-better BM25 score to [0, 1) by its magnitude."""
    if not bm25_score:
        return 0.0
    raw = abs(bm25_score)
    return min(1.0, raw / (raw + BM25_SATURATION))


class WeightedScoreFusion(RankFusionAlgorithm):
    """Legacy weighted combination of raw similarity and BM25 scores."""

    name = "weighted"

    def fuse_results(
        self,
        vector_candidates: List[VectorCandidate],
        lexical_candidates: List[LexicalCandidate],
        weights: Optional[SearchWeights] = None,
    ) -> List[SearchHit]:
        """Score = vector_weight * max(0, 1 - distance) + text_weight * normalized BM25."""
        weights = weights or SearchWeights()
        hits = _merge_candidates(vector_candidates, lexical_candidates, self.name)

        for hit in hits.values():
            score = 0.0
            if hit.vector_distance is not None:
                score += weights.vector * max(0.0, 1.0 - hit.vector_distance)
            if hit.bm25_score is not None:
                score += weights.text * normalize_bm25(hit.bm25_score)
            hit.fused_score = score

        fused = _sort_hits(list(hits.values()))

        logger.debug(
            "Weighted score fusion completed",
            vector_count=len(vector_candidates),
            lexical_count=len(lexical_candidates),
            fused_count=len(fused),
            vector_weight=weights.vector,
            text_weight=weights.text
        )
        return fused


def is_degenerate(hits: List[SearchHit]) -> bool:
    """True when RRF cannot tell any of two or more hits apart.

    That happens when every hit shares the same fused score and best rank,
    e.g. two disjoint single-result lists.
    """
    if len(hits) < 2:
        return False
    first = (hits[0].fused_score, hits[0].best_rank)
    return all((h.fused_score, h.best_rank) == first for h in hits[1:])

"""API routes for tab search, bulk import and diagnostics."""

import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
import structlog

from ..common.errors import JobNotFoundError
from ..embedding.cache import EmbeddingCache
from ..gateway.rate_limiter import RateLimitGateway
from ..ingest.enrichment import TabEnricher
from ..ingest.import_queue import ImportQueueManager
from ..search.fusion import SearchWeights
from ..search.search_manager import SearchManager

logger = structlog.get_logger("api.routes")

router = APIRouter()

DEBUG_ENTRY_LIMIT = 10


class SearchResult(BaseModel):
    """One ranked tab."""
    id: str = Field(..., description="Tab ID")
    url: str = Field(..., description="Tab URL")
    title: str = Field("", description="Tab title")
    summary: Optional[str] = Field(None, description="Tab summary")
    domain: Optional[str] = Field(None, description="Tab domain")
    score: float = Field(..., description="Fused relevance score")
    vector_distance: Optional[float] = Field(None, description="Cosine distance, if matched semantically")
    bm25_score: Optional[float] = Field(None, description="Lexical score (lower is better), if matched lexically")
    fusion_algorithm: str = Field(..., description="rrf, weighted or substring")


class SearchResponse(BaseModel):
    """Response model for search endpoint."""
    results: List[SearchResult] = Field(..., description="Search results")
    total: int = Field(..., description="Number of results returned")
    query: str = Field(..., description="Original query")
    latency_ms: float = Field(..., description="Search latency in milliseconds")


class TabInput(BaseModel):
    """A tab to import."""
    url: str = Field(..., min_length=1, description="Tab URL")
    title: Optional[str] = Field(None, description="Tab title (defaults to the URL)")
    summary: Optional[str] = Field(None, description="Existing summary")
    domain: Optional[str] = Field(None, description="Domain override")
    folder_id: Optional[str] = Field(None, description="Target folder")


class BulkImportRequest(BaseModel):
    """Request model for bulk import submission."""
    user_id: str = Field(..., min_length=1, description="Owning user")
    tabs: List[TabInput] = Field(..., description="Tabs to import")


class BulkImportResponse(BaseModel):
    """Response model for bulk import submission."""
    job_id: str = Field(..., description="Job ID to poll")
    status: str = Field(..., description="Initial job phase")
    total_count: int = Field(..., description="Number of tabs accepted")
    message: str = Field(..., description="Status message")


class RegenerateEmbeddingsRequest(BaseModel):
    """Request model for embedding regeneration."""
    user_id: str = Field(..., min_length=1, description="Owning user")
    limit: int = Field(10, ge=1, le=100, description="Maximum number of tabs to re-embed")


def get_search_manager(request: Request) -> SearchManager:
    """Get search manager from application state."""
    return request.app.state.search_manager


def get_import_queue(request: Request) -> ImportQueueManager:
    """Get import queue from application state."""
    return request.app.state.import_queue


def get_enricher(request: Request) -> Optional[TabEnricher]:
    """Get the enrichment pipeline from application state, if one was wired."""
    return getattr(request.app.state, "enricher", None)


def get_embedding_cache(request: Request) -> EmbeddingCache:
    """Get embedding cache from application state."""
    return request.app.state.embedding_cache


def get_gateway(request: Request) -> RateLimitGateway:
    """Get rate-limited gateway from application state."""
    return request.app.state.gateway


@router.get("/tabs/search", response_model=SearchResponse)
async def search_tabs(
    q: str = Query("", description="Search query"),
    user_id: str = Query(..., min_length=1, description="User whose tabs are searched"),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Maximum number of results"),
    vector_weight: Optional[float] = Query(None, ge=0.0, description="Semantic weight"),
    text_weight: Optional[float] = Query(None, ge=0.0, description="Lexical weight"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Hybrid search over a user's tabs."""
    start_time = time.time()

    weights = None
    if vector_weight is not None or text_weight is not None:
        defaults = search_manager.default_weights
        weights = SearchWeights(
            vector=vector_weight if vector_weight is not None else defaults.vector,
            text=text_weight if text_weight is not None else defaults.text,
        )

    try:
        hits = await search_manager.search(q, user_id, limit=limit, weights=weights)
    except Exception as e:
        logger.error("Search failed", error=str(e), user_id=user_id)
        raise HTTPException(status_code=500, detail=f"Search failed: {e}")

    results = [
        SearchResult(
            id=hit.record_id,
            url=hit.record.url,
            title=hit.record.title,
            summary=hit.record.summary,
            domain=hit.record.domain,
            score=hit.fused_score,
            vector_distance=hit.vector_distance,
            bm25_score=hit.bm25_score,
            fusion_algorithm=hit.fusion_algorithm,
        )
        for hit in hits
    ]

    latency_ms = (time.time() - start_time) * 1000
    logger.info("Search request served", user_id=user_id, results=len(results), latency_ms=round(latency_ms, 2))
    return SearchResponse(results=results, total=len(results), query=q, latency_ms=latency_ms)


@router.post("/tabs/bulk-import-queue", response_model=BulkImportResponse)
async def submit_bulk_import(
    request: BulkImportRequest,
    import_queue: ImportQueueManager = Depends(get_import_queue),
):
    """Queue a bulk import job."""
    try:
        job_id = import_queue.submit(
            request.user_id,
            [tab.model_dump() for tab in request.tabs],
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    status = import_queue.get_job_status(job_id)
    return BulkImportResponse(
        job_id=job_id,
        status=status.phase.value if status else "queued",
        total_count=len(request.tabs),
        message=f"Queued {len(request.tabs)} tabs for import",
    )


@router.get("/tabs/bulk-import-queue")
async def bulk_import_status(
    job_id: Optional[str] = Query(None, description="Job to report on"),
    user_id: Optional[str] = Query(None, description="List this user's jobs"),
    import_queue: ImportQueueManager = Depends(get_import_queue),
) -> Dict[str, Any]:
    """Job status, a user's jobs, or the overall queue status."""
    if job_id:
        progress = import_queue.get_job_status(job_id)
        if progress is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return progress.to_dict()

    if user_id:
        return {"jobs": [p.to_dict() for p in import_queue.get_user_jobs(user_id)]}

    return import_queue.get_queue_status()


@router.delete("/tabs/bulk-import-queue/{job_id}")
async def cancel_bulk_import(
    job_id: str,
    import_queue: ImportQueueManager = Depends(get_import_queue),
) -> Dict[str, Any]:
    """Cancel a queued or running job."""
    try:
        cancelled = import_queue.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Job {job_id} already finished")
    return {"job_id": job_id, "cancelled": True}


@router.post("/tabs/regenerate-embeddings")
async def regenerate_embeddings(
    request: RegenerateEmbeddingsRequest,
    enricher: Optional[TabEnricher] = Depends(get_enricher),
) -> Dict[str, Any]:
    """Re-embed tabs that have no embedding or a fallback one."""
    if enricher is None:
        raise HTTPException(status_code=503, detail="Enrichment pipeline not configured")

    try:
        before = await enricher.store.get_embedding_stats(request.user_id)
        outcome = await enricher.regenerate_embeddings(request.user_id, limit=request.limit)
        after = await enricher.store.get_embedding_stats(request.user_id)
    except Exception as e:
        logger.error("Embedding regeneration failed", user_id=request.user_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to regenerate embeddings: {e}")

    return {
        "message": f"Updated {outcome.processed} embeddings",
        "updated_count": outcome.processed,
        "failed_count": outcome.failed,
        "errors": outcome.errors,
        "before": before.to_dict(),
        "after": after.to_dict(),
    }


@router.get("/debug/search-cache")
async def search_cache_stats(cache: EmbeddingCache = Depends(get_embedding_cache)) -> Dict[str, Any]:
    """Cache statistics plus the first few redacted entries."""
    entries = cache.debug()
    return {
        "stats": cache.get_stats().to_dict(),
        "entries": entries[:DEBUG_ENTRY_LIMIT],
        "entry_count": len(entries),
    }


@router.delete("/debug/search-cache")
async def clear_search_cache(cache: EmbeddingCache = Depends(get_embedding_cache)) -> Dict[str, Any]:
    """Clear the query embedding cache."""
    before = cache.get_stats().to_dict()
    cache.clear()
    logger.info("Search cache cleared via API", entries=before["size"])
    return {"message": "Search cache cleared", "before": before, "after": cache.get_stats().to_dict()}


@router.get("/rate-limits")
async def rate_limit_status(gateway: RateLimitGateway = Depends(get_gateway)) -> Dict[str, Any]:
    """Per-service rate limiter status."""
    return {"services": {name: s.to_dict() for name, s in gateway.get_all_status().items()}}

"""
Sync control endpoints.

POST   /sync/trigger           run a push cycle now
POST   /sync/pull              apply the remote reading list locally
GET    /sync/stats             queue counts and scheduler state
DELETE /sync/failed            drop entries that used up their retries
GET    /sync/conflicts/report  conflict report of the last pull
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from feedsync.container import Container, get_container
from feedsync.exceptions import CredentialError, RemoteServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


# ============ Response Schemas ============

class SyncCycleResponse(BaseModel):
    status: str
    pending: int
    batches_sent: int
    batches_failed: int
    items_synced: int
    items_failed: int
    duration_ms: int
    message: str


class PullResponse(BaseModel):
    session_id: str
    fetched: int
    inserted: int
    updated: int
    conflicts: int
    local_kept: int
    conflict_summary: dict


class QueueStatsResponse(BaseModel):
    total: int
    pending: int
    never_attempted: int
    retry_pending: int
    failed: int
    action_types: int
    oldest_created_at: Optional[str]
    is_running: bool
    is_processing: bool
    last_processed_time: Optional[str]
    last_error: Optional[str]


class ClearFailedResponse(BaseModel):
    removed: int


class ConflictReportResponse(BaseModel):
    report: Optional[str]


# ============ Endpoints ============

@router.post("/trigger", response_model=SyncCycleResponse)
async def trigger_sync(container: Container = Depends(get_container)):
    """
    Run one push cycle immediately.

    Returns status "already_running" instead of waiting when a cycle is
    in progress.
    """
    try:
        result = await container.orchestrator.trigger_manual_sync()
    except CredentialError as e:
        logger.critical("Manual sync aborted: %s", e)
        raise HTTPException(status_code=503, detail=f"Credential error: {e}")

    return result.to_dict()


@router.post("/pull", response_model=PullResponse)
async def pull_remote(
    container: Container = Depends(get_container),
    max_articles: Optional[int] = Query(None, ge=1, le=1000),
):
    """Fetch the remote reading list and reconcile read/starred state."""
    limit = max_articles or container.settings.pull_max_articles
    try:
        result = await container.pull_service.pull(limit)
    except CredentialError as e:
        raise HTTPException(status_code=503, detail=f"Credential error: {e}")
    except RemoteServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return result.to_dict()


@router.get("/stats", response_model=QueueStatsResponse)
def sync_stats(container: Container = Depends(get_container)):
    stats = container.orchestrator.get_queue_stats()
    if stats is None:
        raise HTTPException(status_code=503, detail="Sync queue is unavailable")
    return stats


@router.delete("/failed", response_model=ClearFailedResponse)
def clear_failed(container: Container = Depends(get_container)):
    return {"removed": container.orchestrator.clear_failed_items()}


@router.get("/conflicts/report", response_model=ConflictReportResponse)
def conflict_report(container: Container = Depends(get_container)):
    return {"report": container.pull_service.last_report()}

"""API usage for the current day."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional

from feedsync.container import Container, get_container
from feedsync.services.sync_orchestrator import SERVICE_NAME


router = APIRouter(prefix="/usage", tags=["Usage"])


class ZoneUsage(BaseModel):
    used: int
    limit: int
    percentage: float


class UsageResponse(BaseModel):
    date: str
    count: int
    zone1: ZoneUsage
    zone2: ZoneUsage
    reset_after_seconds: int
    last_updated: Optional[str]


@router.get("", response_model=UsageResponse)
def current_usage(
    container: Container = Depends(get_container),
    service: str = Query(SERVICE_NAME),
):
    """Today's call count and rate-limit zones (zone 1 reads, zone 2 writes)."""
    return container.usage_tracker.get_current_usage(service)

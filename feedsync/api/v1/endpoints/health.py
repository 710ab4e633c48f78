from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from feedsync.container import Container, get_container
from feedsync.services.health import UNHEALTHY


router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
def health(container: Container = Depends(get_container)):
    """Database, token file and queue health; 503 when unhealthy."""
    report = container.health.check()
    status_code = 503 if report["status"] == UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=report)

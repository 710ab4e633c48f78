from fastapi import APIRouter
from feedsync.api.v1.endpoints import auth, health, sync, usage

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(sync.router)
api_router.include_router(auth.router)
api_router.include_router(usage.router)
api_router.include_router(health.router)

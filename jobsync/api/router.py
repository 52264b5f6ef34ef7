from fastapi import APIRouter, Depends

from jobsync.api.routes import cache, health, realtime, session, sync, triggers
from jobsync.core.security import require_control_key

control = [Depends(require_control_key)]

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(session.router, prefix="/session", tags=["session"], dependencies=control)
api_router.include_router(triggers.router, prefix="/triggers", tags=["triggers"], dependencies=control)
api_router.include_router(sync.router, prefix="/sync", tags=["sync"], dependencies=control)
api_router.include_router(cache.router, prefix="/cache", tags=["cache"], dependencies=control)
api_router.include_router(realtime.router, prefix="/realtime", tags=["realtime"], dependencies=control)

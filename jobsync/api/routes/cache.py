from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from jobsync.engine.models import EngineNotInitializedError
from jobsync.engine.service import SyncEngine, get_engine

router = APIRouter()


@router.get("/{name}")
async def read_cache_entry(name: str, engine: SyncEngine = Depends(get_engine)) -> dict[str, Any]:
    try:
        value = engine.cache_entry(name)
    except EngineNotInitializedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="cache entry not found")
    return {"name": name, "value": value}

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from jobsync.engine.models import EngineNotInitializedError, UnknownDomainError
from jobsync.engine.service import SyncEngine, get_engine
from jobsync.schemas.sync import PassReportOut, SyncResultOut

router = APIRouter()


@router.get("/status")
async def sync_status(request: Request, engine: SyncEngine = Depends(get_engine)) -> dict[str, Any]:
    report = engine.status()
    sync_stats = getattr(request.app.state, "sync_stats", None)
    report["spans"] = sync_stats.snapshot() if sync_stats is not None else {}
    return report


@router.post("/pass", response_model=PassReportOut)
async def run_full_pass(force: bool = True, engine: SyncEngine = Depends(get_engine)) -> PassReportOut:
    try:
        report = await engine.full_pass(force=force)
    except EngineNotInitializedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PassReportOut.from_report(report)


@router.post("/{domain}", response_model=SyncResultOut)
async def run_domain(domain: str, force: bool = False, engine: SyncEngine = Depends(get_engine)) -> SyncResultOut:
    try:
        result = await engine.run_domain(domain, force=force)
    except EngineNotInitializedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except UnknownDomainError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown domain: {domain}") from exc
    return SyncResultOut.from_result(result)

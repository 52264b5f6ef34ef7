from fastapi import APIRouter, Depends, HTTPException, status

from jobsync.engine.models import EngineNotInitializedError
from jobsync.engine.service import SyncEngine, get_engine
from jobsync.schemas.sync import InteractionRequest, PassReportOut, VisibilityRequest

router = APIRouter()


@router.post("/visibility", response_model=PassReportOut)
async def visibility_changed(payload: VisibilityRequest, engine: SyncEngine = Depends(get_engine)) -> PassReportOut:
    try:
        report = await engine.on_visibility_change(payload.visible)
    except EngineNotInitializedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PassReportOut.from_report(report)


@router.post("/interaction", response_model=PassReportOut)
async def user_interaction(payload: InteractionRequest, engine: SyncEngine = Depends(get_engine)) -> PassReportOut:
    try:
        report = await engine.on_user_interaction(payload.kind)
    except EngineNotInitializedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PassReportOut.from_report(report)

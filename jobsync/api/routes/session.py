from fastapi import APIRouter, Depends

from jobsync.engine.service import SyncEngine, get_engine
from jobsync.schemas.sync import LoginRequest, PassReportOut

router = APIRouter()


@router.post("/login", response_model=PassReportOut)
async def login_complete(payload: LoginRequest, engine: SyncEngine = Depends(get_engine)) -> PassReportOut:
    device = payload.device.to_profile() if payload.device else None
    report = await engine.on_login_complete(payload.to_session(), device=device)
    return PassReportOut.from_report(report)


@router.post("/sign-out")
async def sign_out(engine: SyncEngine = Depends(get_engine)) -> dict[str, str | int]:
    removed = await engine.on_sign_out()
    return {"status": "signed_out", "snapshots_removed": removed}

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from jobsync.engine.models import SyncError
from jobsync.engine.service import SyncEngine, get_engine
from jobsync.schemas.sync import WebhookAck, WebhookPayload

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookAck)
async def database_webhook(payload: WebhookPayload, engine: SyncEngine = Depends(get_engine)) -> WebhookAck:
    try:
        delivered = await engine.publish_change(payload.to_change())
    except SyncError as exc:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(exc)) from exc
    logger.debug("webhook change table=%s type=%s delivered=%s", payload.table, payload.type.value, delivered)
    return WebhookAck(delivered=delivered)

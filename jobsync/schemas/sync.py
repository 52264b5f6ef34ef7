from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobsync.engine.models import PassReport, Role, Session, SyncResult
from jobsync.engine.triggers import DeviceProfile, InteractionKind
from jobsync.services.realtime_channel import ChangeEvent, ChangeKind


class DeviceIn(BaseModel):
    coarse_pointer: bool = False
    save_data: bool = False
    effective_type: str | None = None
    downlink_mbps: float | None = None

    def to_profile(self) -> DeviceProfile:
        return DeviceProfile(
            coarse_pointer=self.coarse_pointer,
            save_data=self.save_data,
            effective_type=self.effective_type,
            downlink_mbps=self.downlink_mbps,
        )


class LoginRequest(BaseModel):
    user_id: str = Field(min_length=1)
    role: Role
    organization_id: str | None = None
    access_token: str | None = None
    avatar_path: str | None = None
    device: DeviceIn | None = None

    def to_session(self) -> Session:
        return Session(
            user_id=self.user_id,
            role=self.role,
            organization_id=self.organization_id,
            access_token=self.access_token,
            avatar_path=self.avatar_path,
        )


class VisibilityRequest(BaseModel):
    visible: bool


class InteractionRequest(BaseModel):
    kind: InteractionKind


class SyncResultOut(BaseModel):
    domain: str
    owner_key: str
    status: str
    error: str | None = None
    persisted: bool = False

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResultOut":
        return cls(
            domain=result.domain,
            owner_key=result.owner_key,
            status=result.status.value,
            error=result.error,
            persisted=result.persisted,
        )


class PassReportOut(BaseModel):
    skipped: bool
    kind: str | None = None
    forced: bool | None = None
    started_at: int | None = None
    finished_at: int | None = None
    results: list[SyncResultOut] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: PassReport | None) -> "PassReportOut":
        if report is None:
            return cls(skipped=True)
        return cls(
            skipped=False,
            kind=report.event.kind.value,
            forced=report.forced,
            started_at=report.started_at,
            finished_at=report.finished_at,
            results=[SyncResultOut.from_result(result) for result in report.results],
        )


class WebhookPayload(BaseModel):
    """Database webhook body as emitted by the backend on row changes."""

    model_config = ConfigDict(populate_by_name=True)

    type: ChangeKind
    table: str = Field(min_length=1)
    db_schema: str = Field(default="public", alias="schema")
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None

    def to_change(self) -> ChangeEvent:
        return ChangeEvent(entity=self.table, kind=self.type, record=self.record, old_record=self.old_record)


class WebhookAck(BaseModel):
    delivered: int

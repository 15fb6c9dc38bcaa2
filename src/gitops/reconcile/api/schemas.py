"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..domain.entities import (
    Application,
    Destination,
    SourceRef,
    SyncPolicy,
    SyncRecord,
)
from ..domain.normalize import IgnoreRule


class SourceDTO(BaseModel):
    repo_url: str = Field(..., min_length=1)
    target_revision: str = "HEAD"
    path: str = "."


class DestinationDTO(BaseModel):
    server: str = Field(..., min_length=1)
    namespace: str = "default"


class SyncPolicyDTO(BaseModel):
    automated: bool = False
    prune: bool = False
    self_heal: bool = False
    retry_limit: Optional[int] = Field(default=None, ge=0, le=100)


class RegisterApplicationRequest(BaseModel):
    """Request to register a new Application."""

    name: str = Field(..., min_length=1, max_length=253, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    source: SourceDTO
    destination: DestinationDTO
    sync_policy: SyncPolicyDTO = Field(default_factory=SyncPolicyDTO)
    ignore_rules: list[str] = Field(default_factory=list)

    def to_application(self, default_retry_limit: int = 5) -> Application:
        """Build the domain entity.

        Raises:
            ValueError: If an ignore rule is not a JSON pointer
        """
        policy = self.sync_policy
        return Application(
            name=self.name,
            source=SourceRef(**self.source.model_dump()),
            destination=Destination(**self.destination.model_dump()),
            sync_policy=SyncPolicy(
                automated=policy.automated,
                prune=policy.prune,
                self_heal=policy.self_heal,
                retry_limit=default_retry_limit if policy.retry_limit is None else policy.retry_limit,
            ),
            ignore_rules=[IgnoreRule.parse(r) for r in self.ignore_rules],
        )


class SyncRequest(BaseModel):
    """Manual sync options."""

    prune: Optional[bool] = Field(default=None, description="Override the policy's prune flag")
    revision: Optional[str] = Field(default=None, description="Sync this revision instead of the target")


class RefreshRequest(BaseModel):
    """Webhook-style refresh; ``revision`` is the pushed revision, if known."""

    revision: Optional[str] = None


class RollbackRequest(BaseModel):
    """Rollback to a revision or to the revision of a history entry."""

    revision: Optional[str] = None
    history_id: Optional[int] = Field(default=None, ge=1)


class TriggerResponse(BaseModel):
    application: str
    trigger: str
    revision: Optional[str] = None
    queued: bool = True


class ResourceStatusDTO(BaseModel):
    resource: str
    kind: str
    namespace: str
    name: str
    sync_status: str
    health: str
    message: str = ""


class ApplicationResponse(BaseModel):
    """Definition and status of an Application."""

    name: str
    source: SourceDTO
    destination: DestinationDTO
    sync_policy: SyncPolicyDTO
    ignore_rules: list[str] = Field(default_factory=list)

    sync_status: str
    health: str
    last_synced_revision: Optional[str] = None
    last_resolved_revision: Optional[str] = None
    reconciled_at: Optional[datetime] = None
    resources: list[ResourceStatusDTO] = Field(default_factory=list)
    pending_plan: Optional[dict[str, Any]] = None
    last_error: Optional[dict[str, Any]] = None
    history_length: int = 0
    in_flight: bool = False
    pending_trigger: Optional[str] = None

    @classmethod
    def from_application(
        cls,
        app: Application,
        in_flight: bool = False,
        pending_trigger: Optional[str] = None,
    ) -> "ApplicationResponse":
        return cls(
            name=app.name,
            source=SourceDTO(**app.source.to_dict()),
            destination=DestinationDTO(**app.destination.to_dict()),
            sync_policy=SyncPolicyDTO(**app.sync_policy.to_dict()),
            ignore_rules=[str(r) for r in app.ignore_rules],
            sync_status=app.sync_status.value,
            health=app.current_health.value,
            last_synced_revision=app.last_synced_revision,
            last_resolved_revision=app.last_resolved_revision,
            reconciled_at=app.reconciled_at,
            resources=[ResourceStatusDTO(**r.to_dict()) for r in app.resources],
            pending_plan=app.pending_plan,
            last_error=app.last_error,
            history_length=len(app.sync_history),
            in_flight=in_flight,
            pending_trigger=pending_trigger,
        )


class ApplicationListResponse(BaseModel):
    applications: list[ApplicationResponse]
    total: int


class HealthResponse(BaseModel):
    application: str
    health: str
    sync_status: str
    resources: list[ResourceStatusDTO] = Field(default_factory=list)


class RecordedErrorDTO(BaseModel):
    kind: str
    message: str
    resource: Optional[str] = None


class OperationResultDTO(BaseModel):
    type: str
    resource: str
    status: str
    attempts: int = 0
    error: Optional[RecordedErrorDTO] = None


class SyncRecordDTO(BaseModel):
    id: int
    revision: str
    initiator: str
    status: str
    reason: str = ""
    started_at: datetime
    finished_at: datetime
    results: list[OperationResultDTO] = Field(default_factory=list)
    errors: list[RecordedErrorDTO] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: SyncRecord) -> "SyncRecordDTO":
        data = record.to_dict()
        data.pop("application")
        return cls(**data)


class HistoryResponse(BaseModel):
    application: str
    records: list[SyncRecordDTO]
    total: int


class DeregisterResponse(BaseModel):
    application: str
    cascade: bool
    deleted_resources: list[str] = Field(default_factory=list)

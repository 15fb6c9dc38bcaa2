"""Domain entities for reconciliation.

These are pure data structures with no infrastructure dependencies.
They represent Applications, plans, outcomes and the append-only sync history.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from ...common.exceptions import ErrorKind
from .normalize import FieldChange, IgnoreRule
from .resources import ResourceKey, ResourceManifest


# ============================================
# Status Enums
# ============================================


class SyncStatus(str, Enum):
    """Per-resource comparison result. Derived, never stored on resources."""

    IN_SYNC = "InSync"
    OUT_OF_SYNC = "OutOfSync"
    MISSING = "Missing"
    EXTRA = "Extra"
    UNMANAGED = "Unmanaged"


class AppSyncStatus(str, Enum):
    """Aggregate comparison result for an Application."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthStatus(str, Enum):
    """Health of a resource or Application."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"
    MISSING = "Missing"
    UNKNOWN = "Unknown"

    @property
    def severity(self) -> int:
        return _HEALTH_SEVERITY[self]


# Worst wins when aggregating
_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.MISSING: 1,
    HealthStatus.UNKNOWN: 2,
    HealthStatus.SUSPENDED: 3,
    HealthStatus.PROGRESSING: 4,
    HealthStatus.DEGRADED: 5,
}


class OperationType(str, Enum):
    APPLY = "Apply"
    DELETE = "Delete"


class OperationStatus(str, Enum):
    APPLIED = "Applied"
    DELETED = "Deleted"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    NOT_ATTEMPTED = "NotAttempted"


class SyncPhase(str, Enum):
    """Overall result of one executor run."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class Initiator(str, Enum):
    AUTOMATED = "automated"
    MANUAL = "manual"
    ROLLBACK = "rollback"


class OutcomeType(str, Enum):
    SUCCESS = "Success"
    RETRYABLE_FAILURE = "RetryableFailure"
    PERMANENT_FAILURE = "PermanentFailure"


class TriggerKind(str, Enum):
    """Why a reconciliation was requested."""

    REFRESH = "refresh"  # poll tick or webhook
    DRIFT = "drift"
    MANUAL = "manual"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Trigger:
    """A request to reconcile one Application.

    ``revision`` is the rollback target for ROLLBACK, an optional revision
    override for MANUAL, and an optional "source moved to" hint for REFRESH.
    ``prune`` overrides the policy's prune flag for a MANUAL sync.
    """

    kind: TriggerKind
    revision: Optional[str] = None
    prune: Optional[bool] = None
    reason: str = ""

    @property
    def supersedes(self) -> bool:
        """Whether this trigger cancels a run already in flight."""
        if self.kind in (TriggerKind.MANUAL, TriggerKind.ROLLBACK):
            return True
        return self.kind == TriggerKind.REFRESH and self.revision is not None

    @property
    def is_tick(self) -> bool:
        """Periodic triggers: drift checks and refreshes without a revision hint."""
        return self.kind == TriggerKind.DRIFT or (self.kind == TriggerKind.REFRESH and self.revision is None)


# ============================================
# Application Definition
# ============================================


@dataclass
class SourceRef:
    """Where desired state comes from."""

    repo_url: str
    target_revision: str = "HEAD"
    path: str = "."

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_url": self.repo_url,
            "target_revision": self.target_revision,
            "path": self.path,
        }


@dataclass
class Destination:
    """Target endpoint and default namespace."""

    server: str
    namespace: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return {"server": self.server, "namespace": self.namespace}


@dataclass
class SyncPolicy:
    automated: bool = False
    prune: bool = False
    self_heal: bool = False
    retry_limit: int = 5

    def __post_init__(self):
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "automated": self.automated,
            "prune": self.prune,
            "self_heal": self.self_heal,
            "retry_limit": self.retry_limit,
        }


@dataclass(frozen=True)
class ResolvedSource:
    """Output of the Source Provider: a concrete revision and raw manifests."""

    revision: str
    manifests: list[dict[str, Any]]


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of one Executor backend call."""

    type: OutcomeType
    reason: str = ""
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls) -> "ApplyOutcome":
        return cls(OutcomeType.SUCCESS)

    @classmethod
    def retryable(cls, reason: str) -> "ApplyOutcome":
        return cls(OutcomeType.RETRYABLE_FAILURE, reason, ErrorKind.RETRYABLE_APPLY_FAILURE)

    @classmethod
    def permanent(cls, reason: str, error_kind: ErrorKind = ErrorKind.PERMANENT_APPLY_FAILURE) -> "ApplyOutcome":
        return cls(OutcomeType.PERMANENT_FAILURE, reason, error_kind)

    @property
    def ok(self) -> bool:
        return self.type == OutcomeType.SUCCESS


# ============================================
# Diff Results
# ============================================


@dataclass
class ResourceDiff:
    """Comparison result for one resource.

    ``conflict_owner`` is set when a desired resource collides with a live
    resource this Application does not own ("unmanaged" when untagged).
    """

    key: ResourceKey
    api_version: str
    status: SyncStatus
    manifest: Optional[ResourceManifest] = None
    changes: list[FieldChange] = field(default_factory=list)
    conflict_owner: Optional[str] = None
    wave: int = 0

    @property
    def has_conflict(self) -> bool:
        return self.conflict_owner is not None

    @property
    def has_drift(self) -> bool:
        return self.status != SyncStatus.IN_SYNC

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": str(self.key),
            "api_version": self.api_version,
            "status": self.status.value,
            "changes": [c.to_dict() for c in self.changes],
            "conflict_owner": self.conflict_owner,
        }


@dataclass
class DiffResult:
    """All resource diffs of one comparison, desired entries in input order."""

    application: str
    diffs: list[ResourceDiff] = field(default_factory=list)

    def by_status(self, *statuses: SyncStatus) -> list[ResourceDiff]:
        return [d for d in self.diffs if d.status in statuses]

    @property
    def extras(self) -> list[ResourceDiff]:
        return self.by_status(SyncStatus.EXTRA)

    @property
    def in_sync(self) -> bool:
        return all(d.status == SyncStatus.IN_SYNC for d in self.diffs)

    def has_drift(self, include_extras: bool = True) -> bool:
        statuses = [SyncStatus.OUT_OF_SYNC, SyncStatus.MISSING]
        if include_extras:
            statuses.append(SyncStatus.EXTRA)
        return bool(self.by_status(*statuses))

    @property
    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for d in self.diffs:
            counts[d.status.value] = counts.get(d.status.value, 0) + 1
        return counts


# ============================================
# Plans and Outcomes
# ============================================


@dataclass(frozen=True)
class RecordedError:
    """A failure as recorded in history: its kind and the resource it hit."""

    kind: ErrorKind
    message: str
    resource: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "resource": self.resource}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordedError":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            resource=data.get("resource"),
        )


@dataclass(frozen=True)
class PlannedOperation:
    """One step of a SyncPlan.

    ``priority`` is the position in execution order and is stable for a
    given desired set. ``preflight_error`` marks an operation that is known
    to fail before execution; the executor skips it.
    """

    type: OperationType
    key: ResourceKey
    api_version: str
    priority: int
    manifest: Optional[ResourceManifest] = None
    wave: int = 0
    preflight_error: Optional[RecordedError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "resource": str(self.key),
            "api_version": self.api_version,
            "priority": self.priority,
            "wave": self.wave,
            "preflight_error": self.preflight_error.to_dict() if self.preflight_error else None,
        }


@dataclass(frozen=True)
class SyncPlan:
    """Ordered operations for one sync of one revision."""

    application: str
    revision: str
    operations: tuple[PlannedOperation, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.operations

    @property
    def applies(self) -> list[PlannedOperation]:
        return [op for op in self.operations if op.type == OperationType.APPLY]

    @property
    def deletes(self) -> list[PlannedOperation]:
        return [op for op in self.operations if op.type == OperationType.DELETE]

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self) -> Iterator[PlannedOperation]:
        return iter(self.operations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "application": self.application,
            "revision": self.revision,
            "operations": [op.to_dict() for op in self.operations],
        }


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one planned operation."""

    type: OperationType
    resource: str
    status: OperationStatus
    attempts: int = 0
    error: Optional[RecordedError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "resource": self.resource,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationResult":
        error = data.get("error")
        return cls(
            type=OperationType(data["type"]),
            resource=data["resource"],
            status=OperationStatus(data["status"]),
            attempts=data.get("attempts", 0),
            error=RecordedError.from_dict(error) if error else None,
        )


@dataclass(frozen=True)
class ExecutionReport:
    """What the Sync Executor hands back before the run is recorded."""

    phase: SyncPhase
    results: tuple[OperationResult, ...]
    started_at: datetime
    finished_at: datetime

    @property
    def failed_resources(self) -> set[str]:
        return {
            r.resource
            for r in self.results
            if r.status in (OperationStatus.FAILED, OperationStatus.SKIPPED)
        }

    @property
    def errors(self) -> list[RecordedError]:
        return [r.error for r in self.results if r.error]


# ============================================
# History
# ============================================


@dataclass(frozen=True)
class SyncRecord:
    """Immutable history entry of one reconciliation outcome."""

    id: int
    application: str
    revision: str
    initiator: Initiator
    status: SyncPhase
    started_at: datetime
    finished_at: datetime
    results: tuple[OperationResult, ...] = ()
    errors: tuple[RecordedError, ...] = ()
    reason: str = ""

    def count(self, status: OperationStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def succeeded(self) -> bool:
        return self.status == SyncPhase.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "application": self.application,
            "revision": self.revision,
            "initiator": self.initiator.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncRecord":
        return cls(
            id=data["id"],
            application=data["application"],
            revision=data["revision"],
            initiator=Initiator(data["initiator"]),
            status=SyncPhase(data["status"]),
            started_at=_parse_datetime(data["started_at"]),
            finished_at=_parse_datetime(data["finished_at"]),
            results=tuple(OperationResult.from_dict(r) for r in data.get("results", [])),
            errors=tuple(RecordedError.from_dict(e) for e in data.get("errors", [])),
            reason=data.get("reason", ""),
        )


class SyncHistory:
    """Append-only sequence of SyncRecords.

    Record ids are 1-based and equal to the append position; there is no way
    to remove, replace or reorder an entry.
    """

    def __init__(self, records: Optional[list[SyncRecord]] = None):
        self._records: list[SyncRecord] = []
        for record in records or []:
            self.append(record)

    @property
    def next_id(self) -> int:
        return len(self._records) + 1

    def append(self, record: SyncRecord) -> SyncRecord:
        if record.id != self.next_id:
            raise ValueError(
                f"SyncRecord id {record.id} out of order (expected {self.next_id})"
            )
        self._records.append(record)
        return record

    @property
    def records(self) -> tuple[SyncRecord, ...]:
        return tuple(self._records)

    def latest(self) -> Optional[SyncRecord]:
        return self._records[-1] if self._records else None

    def get(self, record_id: int) -> Optional[SyncRecord]:
        if 1 <= record_id <= len(self._records):
            return self._records[record_id - 1]
        return None

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SyncRecord]:
        return iter(tuple(self._records))


# ============================================
# Health
# ============================================


@dataclass(frozen=True)
class ResourceHealth:
    key: ResourceKey
    status: HealthStatus
    message: str = ""


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    resources: tuple[ResourceHealth, ...] = ()

    def for_key(self, key: ResourceKey) -> Optional[ResourceHealth]:
        for r in self.resources:
            if r.key == key:
                return r
        return None


@dataclass
class ResourceStatus:
    """Per-resource snapshot kept on the Application for status queries."""

    resource: str
    kind: str
    namespace: str
    name: str
    sync_status: SyncStatus
    health: HealthStatus = HealthStatus.UNKNOWN
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "sync_status": self.sync_status.value,
            "health": self.health.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceStatus":
        return cls(
            resource=data["resource"],
            kind=data["kind"],
            namespace=data.get("namespace", ""),
            name=data["name"],
            sync_status=SyncStatus(data["sync_status"]),
            health=HealthStatus(data.get("health", HealthStatus.UNKNOWN.value)),
            message=data.get("message", ""),
        )


# ============================================
# Application
# ============================================


@dataclass
class Application:
    """Domain entity representing one GitOps Application.

    The definition (source, destination, policy, ignore rules) is set by the
    operator. Everything below ``last_synced_revision`` is status owned by
    the engine.
    """

    name: str
    source: SourceRef
    destination: Destination
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    ignore_rules: list[IgnoreRule] = field(default_factory=list)

    last_synced_revision: Optional[str] = None
    last_resolved_revision: Optional[str] = None
    last_synced_manifests: list[dict[str, Any]] = field(default_factory=list)
    current_health: HealthStatus = HealthStatus.UNKNOWN
    sync_status: AppSyncStatus = AppSyncStatus.UNKNOWN
    resources: list[ResourceStatus] = field(default_factory=list)
    pending_plan: Optional[dict[str, Any]] = None
    last_error: Optional[dict[str, Any]] = None
    reconciled_at: Optional[datetime] = None
    sync_history: SyncHistory = field(default_factory=SyncHistory)

    @property
    def tracking_selector(self) -> str:
        """Selector handed to the Live State Provider."""
        return self.name

    @property
    def ever_synced(self) -> bool:
        return self.last_synced_revision is not None

    def definition_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
            "sync_policy": self.sync_policy.to_dict(),
            "ignore_rules": [str(r) for r in self.ignore_rules],
        }

    def status_dict(self) -> dict[str, Any]:
        return {
            "last_synced_revision": self.last_synced_revision,
            "last_resolved_revision": self.last_resolved_revision,
            "last_synced_manifests": self.last_synced_manifests,
            "current_health": self.current_health.value,
            "sync_status": self.sync_status.value,
            "resources": [r.to_dict() for r in self.resources],
            "pending_plan": self.pending_plan,
            "last_error": self.last_error,
            "reconciled_at": self.reconciled_at.isoformat() if self.reconciled_at else None,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.definition_dict()
        data.update(self.status_dict())
        return data

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        history: Optional[list[SyncRecord]] = None,
    ) -> "Application":
        reconciled_at = data.get("reconciled_at")
        return cls(
            name=data["name"],
            source=SourceRef(**data["source"]),
            destination=Destination(**data["destination"]),
            sync_policy=SyncPolicy(**data.get("sync_policy", {})),
            ignore_rules=[IgnoreRule.parse(r) for r in data.get("ignore_rules", [])],
            last_synced_revision=data.get("last_synced_revision"),
            last_resolved_revision=data.get("last_resolved_revision"),
            last_synced_manifests=data.get("last_synced_manifests") or [],
            current_health=HealthStatus(data.get("current_health", HealthStatus.UNKNOWN.value)),
            sync_status=AppSyncStatus(data.get("sync_status", AppSyncStatus.UNKNOWN.value)),
            resources=[ResourceStatus.from_dict(r) for r in data.get("resources", [])],
            pending_plan=data.get("pending_plan"),
            last_error=data.get("last_error"),
            reconciled_at=_parse_datetime(reconciled_at) if reconciled_at else None,
            sync_history=SyncHistory(history),
        )


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)

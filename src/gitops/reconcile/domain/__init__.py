"""Domain layer - Pure domain entities and port interfaces.

This layer contains:
- Resources: identity tuples, manifests, live resources, ownership markers
- Normalize: comparison normalization and ignore rules
- Entities: Applications, plans, outcomes, history
- Ports: Abstract interfaces defining contracts for adapters

No infrastructure dependencies allowed in this layer.
"""

from .entities import (
    Application,
    AppSyncStatus,
    ApplyOutcome,
    Destination,
    DiffResult,
    ExecutionReport,
    HealthReport,
    HealthStatus,
    Initiator,
    OperationResult,
    OperationStatus,
    OperationType,
    OutcomeType,
    PlannedOperation,
    RecordedError,
    ResolvedSource,
    ResourceDiff,
    ResourceHealth,
    ResourceStatus,
    SourceRef,
    SyncHistory,
    SyncPhase,
    SyncPlan,
    SyncPolicy,
    SyncRecord,
    SyncStatus,
    Trigger,
    TriggerKind,
)
from .normalize import FieldChange, IgnoreRule
from .ports import (
    IApplicationRepository,
    IExecutorBackend,
    ILiveStateProvider,
    IManifestMapper,
    ISourceProvider,
)
from .resources import (
    TRACKING_ANNOTATION,
    LiveResource,
    OwnershipMarker,
    ResourceKey,
    ResourceManifest,
)

__all__ = [
    # Resource model
    "TRACKING_ANNOTATION",
    "LiveResource",
    "OwnershipMarker",
    "ResourceKey",
    "ResourceManifest",
    "FieldChange",
    "IgnoreRule",
    # Application
    "Application",
    "AppSyncStatus",
    "Destination",
    "SourceRef",
    "SyncPolicy",
    "ResolvedSource",
    # Diff / plan / execution
    "ApplyOutcome",
    "DiffResult",
    "ExecutionReport",
    "OperationResult",
    "OperationStatus",
    "OperationType",
    "OutcomeType",
    "PlannedOperation",
    "RecordedError",
    "ResourceDiff",
    "SyncPhase",
    "SyncPlan",
    "SyncStatus",
    "Trigger",
    "TriggerKind",
    # Health
    "HealthReport",
    "HealthStatus",
    "ResourceHealth",
    "ResourceStatus",
    # History
    "Initiator",
    "SyncHistory",
    "SyncRecord",
    # Ports
    "IApplicationRepository",
    "IExecutorBackend",
    "ILiveStateProvider",
    "IManifestMapper",
    "ISourceProvider",
]

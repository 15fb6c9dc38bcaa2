"""Reconcile Application use case.

One reconciliation of one Application, start to finish:

    1. Resolve desired state (Source Provider) unless this is a drift tick
    2. Fetch a fresh live snapshot (Live State Provider, behind a circuit breaker)
    3. Diff desired against live
    4. Evaluate the sync policy into a plan
    5. Execute the plan when allowed, otherwise surface it as pending
    6. Assess health from a post-sync live snapshot
    7. Append a SyncRecord and persist status atomically

Trigger handling:
- REFRESH runs the plan automatically when ``automated`` is set and the
  source moved to a new revision. Otherwise a non-empty plan is stored as
  pending.
- MANUAL and ROLLBACK always execute, even an empty plan, and always
  record. ROLLBACK does not advance ``last_resolved_revision``, so an
  automated Application stays on the rolled-back revision until the source
  moves again.
- DRIFT compares live state against the manifests of the last successful
  sync and self-heals when the policy allows.

Source and destination failures abort the attempt, leave the status
untouched apart from ``last_error``, and produce no SyncRecord. The next
scheduled tick retries.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from ...common.exceptions import (
    CircuitOpenError,
    DestinationUnreachable,
    ErrorKind,
    ManifestInvalid,
    ReconcilerError,
    SourceError,
)
from ...common.resilience import CircuitBreakerRegistry
from ..domain.entities import (
    Application,
    AppSyncStatus,
    DiffResult,
    HealthReport,
    HealthStatus,
    Initiator,
    OperationStatus,
    RecordedError,
    ResourceStatus,
    SyncPhase,
    SyncPlan,
    SyncRecord,
    SyncStatus,
    Trigger,
    TriggerKind,
)
from ..domain.ports import (
    IApplicationRepository,
    IExecutorBackend,
    ILiveStateProvider,
    IManifestMapper,
    ISourceProvider,
)
from ..domain.resources import LiveResource, ResourceKey, ResourceManifest
from .assess_health import HealthAssessor
from .detect_drift import DriftDetector, DriftReport, parse_manifests
from .diff_resources import DiffEngine
from .evaluate_policy import PolicyDecision, SyncPolicyEvaluator
from .execute_sync import SyncExecutor
from .manage_history import HistoryManager

logger = logging.getLogger(__name__)

SELF_HEAL_REASON = "self-heal"


@dataclass
class ReconcileResult:
    """What one reconciliation did."""

    application: str
    trigger: TriggerKind
    revision: Optional[str] = None
    plan: Optional[SyncPlan] = None
    record: Optional[SyncRecord] = None
    drift: Optional[DriftReport] = None
    executed: bool = False
    health: HealthStatus = HealthStatus.UNKNOWN
    sync_status: AppSyncStatus = AppSyncStatus.UNKNOWN
    error: Optional[dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.error is None and (self.record is None or self.record.succeeded)


def default_breakers(failure_threshold: int = 3, timeout: float = 120.0) -> CircuitBreakerRegistry:
    """Per-destination breakers that only count unreachable destinations."""
    return CircuitBreakerRegistry(
        failure_threshold=failure_threshold,
        timeout=timeout,
        tracked_exceptions=(DestinationUnreachable,),
    )


class ReconcileApplicationUseCase:
    """Runs the reconciliation pipeline for one Application at a time.

    The caller (the controller) guarantees at most one execution per
    Application is in flight.
    """

    def __init__(
        self,
        repository: IApplicationRepository,
        source_provider: ISourceProvider,
        live_provider: ILiveStateProvider,
        backend: IExecutorBackend,
        mapper: IManifestMapper,
        diff_engine: Optional[DiffEngine] = None,
        evaluator: Optional[SyncPolicyEvaluator] = None,
        executor: Optional[SyncExecutor] = None,
        assessor: Optional[HealthAssessor] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ):
        self.repository = repository
        self.source_provider = source_provider
        self.live_provider = live_provider
        self.mapper = mapper
        self.diff_engine = diff_engine or DiffEngine()
        self.evaluator = evaluator or SyncPolicyEvaluator()
        self.executor = executor or SyncExecutor(backend)
        self.assessor = assessor or HealthAssessor()
        self.breakers = breakers or default_breakers()
        self.history = HistoryManager(repository)
        self.drift_detector = DriftDetector(mapper, self.diff_engine)

    async def execute(
        self,
        name: str,
        trigger: Trigger,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconcileResult:
        """Reconcile one Application for one trigger.

        Raises:
            ApplicationNotFound: If the Application was deregistered
        """
        app = await self.repository.get(name)
        logger.info(f"Reconciling {name} ({trigger.kind.value})")

        if trigger.kind == TriggerKind.DRIFT:
            return await self._reconcile_drift(app, trigger, cancel_event)
        return await self._reconcile_source(app, trigger, cancel_event)

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    async def fetch_live(self, app: Application) -> list[LiveResource]:
        """Fetch a fresh live snapshot through the destination's breaker.

        Raises:
            DestinationUnreachable: Including when the breaker is open
        """
        server = app.destination.server
        breaker = self.breakers.get(server)
        try:
            return await breaker.call(
                self.live_provider.list_resources,
                app.destination,
                app.tracking_selector,
            )
        except CircuitOpenError as e:
            raise DestinationUnreachable(
                f"Destination {server} is failing; not contacting it until the breaker resets",
                server=server,
                cause=e,
            ) from e

    # ------------------------------------------------------------------
    # Source-driven reconciliation
    # ------------------------------------------------------------------

    async def _reconcile_source(
        self,
        app: Application,
        trigger: Trigger,
        cancel_event: Optional[asyncio.Event],
    ) -> ReconcileResult:
        started_at = datetime.now(timezone.utc)
        initiator, pointer, reason = self._describe(app, trigger)

        try:
            resolved = await self.source_provider.resolve(app.source, pointer)
            live = await self.fetch_live(app)
        except (SourceError, DestinationUnreachable) as e:
            return await self._abort(app, trigger, e)

        revision = resolved.revision
        tracks_source = trigger.kind != TriggerKind.ROLLBACK and pointer == app.source.target_revision
        is_new_revision = tracks_source and revision != app.last_resolved_revision
        if tracks_source:
            app.last_resolved_revision = revision

        try:
            manifests = parse_manifests(self.mapper, resolved.manifests, app.destination.namespace)
            diff = self.diff_engine.compare(app.name, manifests, live, app.ignore_rules)
            decision = self.evaluator.evaluate(
                diff,
                app.sync_policy,
                revision,
                previous_order=self.previous_order(app),
                prune_override=trigger.prune,
            )
        except ManifestInvalid as e:
            return await self._record_plan_failure(app, trigger, initiator, revision, e, reason, started_at)

        run, reason = self._should_run(trigger, decision, is_new_revision, revision, reason)
        if run:
            return await self._sync(
                app, trigger, initiator, reason, revision,
                resolved.manifests, manifests, decision, cancel_event, started_at,
            )

        app.pending_plan = None if decision.plan.is_empty else decision.plan.to_dict()
        app.last_error = None
        self._refresh_status(app, manifests, live, diff=diff)
        await self.repository.save_status(app)
        if app.pending_plan:
            logger.info(
                f"{app.name}: {len(decision.plan)} pending operation(s) at {revision}, not auto-syncing"
            )
        return self._result(app, trigger, revision, plan=decision.plan)

    def _describe(self, app: Application, trigger: Trigger) -> tuple[Initiator, str, str]:
        """Map a trigger to (initiator, revision pointer, reason)."""
        if trigger.kind == TriggerKind.ROLLBACK:
            if not trigger.revision:
                raise ValueError("Rollback trigger without a revision")
            return Initiator.ROLLBACK, trigger.revision, trigger.reason or f"rollback to {trigger.revision}"
        if trigger.kind == TriggerKind.MANUAL:
            return Initiator.MANUAL, trigger.revision or app.source.target_revision, trigger.reason
        return Initiator.AUTOMATED, app.source.target_revision, trigger.reason

    @staticmethod
    def _should_run(
        trigger: Trigger,
        decision: PolicyDecision,
        is_new_revision: bool,
        revision: str,
        reason: str,
    ) -> tuple[bool, str]:
        if trigger.kind in (TriggerKind.MANUAL, TriggerKind.ROLLBACK):
            return True, reason
        if not decision.auto_execute:
            return False, reason
        if is_new_revision:
            return True, reason or f"new revision {revision}"
        # Drift against the synced revision is the drift tick's business
        return False, reason

    # ------------------------------------------------------------------
    # Drift-driven reconciliation
    # ------------------------------------------------------------------

    async def _reconcile_drift(
        self,
        app: Application,
        trigger: Trigger,
        cancel_event: Optional[asyncio.Event],
    ) -> ReconcileResult:
        started_at = datetime.now(timezone.utc)
        if not app.ever_synced:
            logger.debug(f"{app.name}: never synced, nothing to check for drift")
            return self._result(app, trigger, None)

        try:
            live = await self.fetch_live(app)
        except DestinationUnreachable as e:
            return await self._abort(app, trigger, e)

        revision = app.last_synced_revision
        try:
            report = self.drift_detector.detect(app, live)
            manifests = self.drift_detector.last_synced(app)
            decision = self.evaluator.evaluate(
                report.diff,
                app.sync_policy,
                revision,
                previous_order=self.previous_order(app),
            )
        except ManifestInvalid as e:
            return await self._record_plan_failure(
                app, trigger, Initiator.AUTOMATED, revision, e, SELF_HEAL_REASON, started_at
            )

        unsettled = self.history.unsettled_attempt(app)
        if unsettled is not None and report.drifted:
            logger.info(
                f"{app.name}: not self-healing to {revision}; sync #{unsettled.id} at "
                f"{unsettled.revision} {unsettled.status.value.lower()} and needs an operator sync"
            )
        if (
            report.correctable
            and unsettled is None
            and not self.history.last_failed_automated(app, revision)
        ):
            result = await self._sync(
                app, trigger, Initiator.AUTOMATED, SELF_HEAL_REASON, revision,
                app.last_synced_manifests, manifests, decision, cancel_event, started_at,
            )
            result.drift = report
            return result

        if report.drifted:
            app.pending_plan = decision.plan.to_dict()
        self._refresh_status(app, manifests, live, diff=report.diff)
        if app.pending_plan:
            app.sync_status = AppSyncStatus.OUT_OF_SYNC
        await self.repository.save_status(app)

        result = self._result(app, trigger, revision, plan=decision.plan)
        result.drift = report
        return result

    # ------------------------------------------------------------------
    # Execution and recording
    # ------------------------------------------------------------------

    async def _sync(
        self,
        app: Application,
        trigger: Trigger,
        initiator: Initiator,
        reason: str,
        revision: str,
        raw_manifests: list[Any],
        manifests: list[ResourceManifest],
        decision: PolicyDecision,
        cancel_event: Optional[asyncio.Event],
        started_at: datetime,
    ) -> ReconcileResult:
        report = await self.executor.execute(
            app.name,
            app.destination,
            decision.plan,
            app.sync_policy.retry_limit,
            cancel_event,
        )

        if report.phase == SyncPhase.SUCCEEDED:
            app.last_synced_revision = revision
            app.last_synced_manifests = copy.deepcopy(list(raw_manifests))
            app.last_error = None
        else:
            first = report.errors[0] if report.errors else None
            app.last_error = {
                "kind": first.kind.value if first else None,
                "message": first.message if first else f"Sync {report.phase.value.lower()}",
                "resource": first.resource if first else None,
                "revision": revision,
            }
        app.pending_plan = None

        try:
            live = await self.fetch_live(app)
        except DestinationUnreachable as e:
            logger.warning(f"{app.name}: could not refresh live state after sync: {e}")
            app.current_health = HealthStatus.UNKNOWN
            app.sync_status = AppSyncStatus.UNKNOWN
            app.reconciled_at = datetime.now(timezone.utc)
        else:
            self._refresh_status(app, manifests, live, failed=report.failed_resources)

        record = self.history.build_record(
            app, revision, initiator, report, reason=reason, started_at=started_at
        )
        await self.history.append(app, record)
        return self._result(app, trigger, revision, plan=decision.plan, record=record, executed=True)

    async def _record_plan_failure(
        self,
        app: Application,
        trigger: Trigger,
        initiator: Initiator,
        revision: str,
        error: ManifestInvalid,
        reason: str,
        started_at: datetime,
    ) -> ReconcileResult:
        """Record a desired set that cannot be planned at all."""
        logger.error(f"{app.name}: desired state at {revision} is invalid: {error.message}")
        recorded = RecordedError(
            kind=ErrorKind.MANIFEST_INVALID,
            message=error.message,
            resource=error.identity,
        )
        app.last_error = error.to_dict()
        app.sync_status = AppSyncStatus.UNKNOWN
        app.pending_plan = None
        app.reconciled_at = datetime.now(timezone.utc)

        latest = app.sync_history.latest()
        repeated = (
            trigger.kind in (TriggerKind.REFRESH, TriggerKind.DRIFT)
            and latest is not None
            and latest.revision == revision
            and not latest.results
            and recorded in latest.errors
        )
        if repeated:
            await self.repository.save_status(app)
            return self._result(app, trigger, revision, error=app.last_error)

        record = self.history.build_record(
            app, revision, initiator, errors=[recorded], reason=reason, started_at=started_at
        )
        await self.history.append(app, record)
        return self._result(app, trigger, revision, record=record, error=app.last_error)

    async def _abort(self, app: Application, trigger: Trigger, error: ReconcilerError) -> ReconcileResult:
        """Give up on this attempt; the next tick retries."""
        logger.warning(f"{app.name}: reconciliation aborted: {error}")
        app.last_error = error.to_dict()
        app.reconciled_at = datetime.now(timezone.utc)
        await self.repository.save_status(app)
        return self._result(app, trigger, None, error=app.last_error)

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def previous_order(self, app: Application) -> list[ResourceKey]:
        """Keys of the last successful sync in the order they were applied."""
        try:
            manifests = self.drift_detector.last_synced(app)
        except ManifestInvalid:
            logger.warning(f"{app.name}: stored manifests are unreadable; delete order falls back to identity")
            return []
        return [m.key for m in sorted(manifests, key=lambda m: (m.sync_wave, m.index))]

    def _failed_in_last_sync(self, app: Application) -> set[str]:
        latest = app.sync_history.latest()
        if latest is None:
            return set()
        return {
            r.resource
            for r in latest.results
            if r.status in (OperationStatus.FAILED, OperationStatus.SKIPPED)
        }

    def _refresh_status(
        self,
        app: Application,
        manifests: list[ResourceManifest],
        live: list[LiveResource],
        diff: Optional[DiffResult] = None,
        failed: Optional[set[str]] = None,
    ) -> HealthReport:
        """Recompute sync status, health and per-resource status."""
        if diff is None:
            diff = self.diff_engine.compare(app.name, manifests, live, app.ignore_rules)
        if failed is None:
            failed = self._failed_in_last_sync(app)

        owned = {r.key: r for r in live if r.is_owned_by(app.name)}
        health = self.assessor.assess([m.key for m in manifests], owned.values(), failed)

        statuses = []
        for d in diff.diffs:
            resource_health = health.for_key(d.key)
            if resource_health is None and d.key in owned:
                resource_health = self.assessor.assess_resource(owned[d.key])
            statuses.append(
                ResourceStatus(
                    resource=str(d.key),
                    kind=d.key.kind,
                    namespace=d.key.namespace,
                    name=d.key.name,
                    sync_status=d.status,
                    health=resource_health.status if resource_health else HealthStatus.UNKNOWN,
                    message=self._status_message(d, resource_health.message if resource_health else ""),
                )
            )

        app.resources = statuses
        app.current_health = health.status
        app.sync_status = AppSyncStatus.SYNCED if diff.in_sync else AppSyncStatus.OUT_OF_SYNC
        app.reconciled_at = datetime.now(timezone.utc)
        return health

    @staticmethod
    def _status_message(diff, health_message: str) -> str:
        if diff.has_conflict:
            return f"Owned by {diff.conflict_owner}"
        if diff.manifest is not None and not diff.manifest.is_valid:
            return diff.manifest.invalid_reason
        if diff.status == SyncStatus.OUT_OF_SYNC:
            return f"{len(diff.changes)} field(s) differ"
        if diff.status == SyncStatus.EXTRA:
            return "Not in desired state"
        return health_message

    @staticmethod
    def _result(
        app: Application,
        trigger: Trigger,
        revision: Optional[str],
        plan: Optional[SyncPlan] = None,
        record: Optional[SyncRecord] = None,
        executed: bool = False,
        error: Optional[dict[str, Any]] = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            application=app.name,
            trigger=trigger.kind,
            revision=revision,
            plan=plan,
            record=record,
            executed=executed,
            health=app.current_health,
            sync_status=app.sync_status,
            error=error,
        )

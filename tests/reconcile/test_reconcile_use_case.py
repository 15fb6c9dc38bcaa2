"""End-to-end tests for ReconcileApplicationUseCase over the in-memory ports."""

import asyncio

import pytest

from conftest import (
    REPO_URL,
    SERVER,
    config_map,
    deployment,
    healthy_deployment_status,
    make_app,
    service,
)
from src.gitops.reconcile.domain.entities import (
    AppSyncStatus,
    ApplyOutcome,
    HealthStatus,
    Initiator,
    OperationStatus,
    OperationType,
    SyncPhase,
    SyncStatus,
    Trigger,
    TriggerKind,
)
from src.gitops.reconcile.domain.normalize import IgnoreRule
from src.gitops.reconcile.domain.resources import TRACKING_ANNOTATION, ResourceKey

WEB = ResourceKey("shop", "Deployment", "web")
SETTINGS = ResourceKey("shop", "ConfigMap", "settings")
SVC = ResourceKey("shop", "Service", "web")

REFRESH = Trigger(TriggerKind.REFRESH)
DRIFT = Trigger(TriggerKind.DRIFT)
MANUAL = Trigger(TriggerKind.MANUAL)


async def setup_app(repository, source, manifests, revision="r1", **policy):
    source.publish(REPO_URL, revision, manifests)
    return await repository.create(make_app(**policy))


def replicas(cluster) -> int:
    return cluster.get(SERVER, WEB)["spec"]["replicas"]


class TestAutomatedSync:
    @pytest.mark.asyncio
    async def test_new_revision_is_synced(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map(), deployment()], automated=True)

        result = await reconciler.execute("shop", REFRESH)

        assert result.executed
        assert result.record.status == SyncPhase.SUCCEEDED
        assert result.record.initiator == Initiator.AUTOMATED
        assert result.record.reason == "new revision r1"
        assert [r.status for r in result.record.results] == [OperationStatus.APPLIED] * 2

        app = await repository.get("shop")
        assert app.last_synced_revision == "r1"
        assert app.last_resolved_revision == "r1"
        assert app.sync_status == AppSyncStatus.SYNCED
        assert app.current_health == HealthStatus.PROGRESSING
        assert cluster.get(SERVER, WEB)["metadata"]["annotations"][TRACKING_ANNOTATION] == "shop:apps/Deployment:shop/web"

    @pytest.mark.asyncio
    async def test_health_follows_live_status(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment()], automated=True)
        await reconciler.execute("shop", REFRESH)

        cluster.set_status(SERVER, WEB, healthy_deployment_status())
        result = await reconciler.execute("shop", REFRESH)

        assert result.health == HealthStatus.HEALTHY
        app = await repository.get("shop")
        assert [(r.resource, r.health) for r in app.resources] == [("Deployment/shop/web", HealthStatus.HEALTHY)]

    @pytest.mark.asyncio
    async def test_unchanged_revision_is_idempotent(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map(), service()], automated=True)
        await reconciler.execute("shop", REFRESH)
        operations = len(cluster.operations)

        result = await reconciler.execute("shop", REFRESH)

        assert not result.executed
        assert result.plan.is_empty
        assert len(cluster.operations) == operations
        app = await repository.get("shop")
        assert len(app.sync_history) == 1
        assert app.pending_plan is None
        assert app.sync_status == AppSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_not_automated_keeps_plan_pending(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map()])

        result = await reconciler.execute("shop", REFRESH)

        assert not result.executed
        assert cluster.operations == []
        app = await repository.get("shop")
        assert app.sync_status == AppSyncStatus.OUT_OF_SYNC
        assert app.pending_plan["operations"][0]["resource"] == "ConfigMap/shop/settings"
        assert len(app.sync_history) == 0


class TestManualSync:
    @pytest.mark.asyncio
    async def test_manual_sync_runs_and_records(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map()])

        result = await reconciler.execute("shop", Trigger(TriggerKind.MANUAL, reason="operator"))

        assert result.record.initiator == Initiator.MANUAL
        assert result.record.reason == "operator"
        assert cluster.get(SERVER, SETTINGS) is not None
        app = await repository.get("shop")
        assert app.pending_plan is None
        assert app.sync_status == AppSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_manual_sync_of_in_sync_app_still_records(self, reconciler, repository, source):
        await setup_app(repository, source, [config_map()])
        await reconciler.execute("shop", MANUAL)

        result = await reconciler.execute("shop", MANUAL)

        assert result.record.id == 2
        assert result.record.results == ()
        assert result.record.status == SyncPhase.SUCCEEDED

    @pytest.mark.asyncio
    async def test_second_of_three_applies_fails(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(), config_map(), service()])
        cluster.script("apply", str(SETTINGS), ApplyOutcome.permanent("admission webhook denied"))

        result = await reconciler.execute("shop", MANUAL)

        record = result.record
        assert record.status == SyncPhase.FAILED
        assert [(r.resource, r.status) for r in record.results] == [
            ("Deployment/shop/web", OperationStatus.APPLIED),
            ("ConfigMap/shop/settings", OperationStatus.FAILED),
            ("Service/shop/web", OperationStatus.NOT_ATTEMPTED),
        ]
        assert cluster.get(SERVER, SVC) is None

        app = await repository.get("shop")
        assert app.last_synced_revision is None
        assert app.last_error["kind"] == "PermanentApplyFailure"
        assert app.last_error["resource"] == "ConfigMap/shop/settings"
        assert app.current_health == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_retryable_failure_recovers(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map()], retry_limit=2)
        cluster.script("apply", str(SETTINGS), ApplyOutcome.retryable("etcd timeout"))

        result = await reconciler.execute("shop", MANUAL)

        assert result.record.status == SyncPhase.SUCCEEDED
        assert result.record.results[0].attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_sync_is_recorded(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map(), service()])
        cancel = asyncio.Event()
        cancel.set()

        result = await reconciler.execute("shop", MANUAL, cancel)

        assert result.record.status == SyncPhase.CANCELLED
        assert result.record.count(OperationStatus.NOT_ATTEMPTED) == 2
        assert cluster.operations == []

    @pytest.mark.asyncio
    async def test_ownership_conflict_is_skipped(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map(), service()])
        cluster.put(SERVER, config_map(data={"mode": "theirs"}), "shop")

        result = await reconciler.execute("shop", MANUAL)

        assert result.record.status == SyncPhase.FAILED
        assert [r.status for r in result.record.results] == [OperationStatus.SKIPPED, OperationStatus.APPLIED]
        assert result.record.results[0].error.kind.value == "OwnershipConflict"
        assert cluster.get(SERVER, SETTINGS)["data"] == {"mode": "theirs"}
        assert TRACKING_ANNOTATION not in cluster.get(SERVER, SETTINGS)["metadata"].get("annotations", {})

        app = await repository.get("shop")
        statuses = {r.resource: r for r in app.resources}
        assert statuses["ConfigMap/shop/settings"].sync_status == SyncStatus.MISSING
        assert statuses["ConfigMap/shop/settings"].message == "Owned by unmanaged"


class TestPruning:
    @pytest.mark.asyncio
    async def test_dropped_resource_left_without_prune(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(), config_map()], automated=True)
        await reconciler.execute("shop", REFRESH)
        source.publish(REPO_URL, "r2", [deployment()])

        result = await reconciler.execute("shop", REFRESH)

        assert result.record.revision == "r2"
        assert result.record.results == ()
        assert cluster.get(SERVER, SETTINGS) is not None
        app = await repository.get("shop")
        assert app.last_synced_revision == "r2"
        assert app.sync_status == AppSyncStatus.OUT_OF_SYNC
        extra = {r.resource: r for r in app.resources}["ConfigMap/shop/settings"]
        assert extra.sync_status == SyncStatus.EXTRA

    @pytest.mark.asyncio
    async def test_dropped_resource_deleted_with_prune(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(), config_map()], automated=True, prune=True)
        await reconciler.execute("shop", REFRESH)
        source.publish(REPO_URL, "r2", [deployment()])

        result = await reconciler.execute("shop", REFRESH)

        assert [(r.type, r.resource, r.status) for r in result.record.results] == [
            (OperationType.DELETE, "ConfigMap/shop/settings", OperationStatus.DELETED),
        ]
        assert cluster.get(SERVER, SETTINGS) is None
        app = await repository.get("shop")
        assert app.sync_status == AppSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_manual_prune_override(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(), config_map()])
        await reconciler.execute("shop", MANUAL)
        source.publish(REPO_URL, "r2", [deployment()])

        await reconciler.execute("shop", Trigger(TriggerKind.MANUAL, prune=True))

        assert cluster.get(SERVER, SETTINGS) is None

    @pytest.mark.asyncio
    async def test_unowned_resources_never_pruned(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment()], automated=True, prune=True)
        cluster.put(SERVER, config_map("manual"), "shop")

        await reconciler.execute("shop", REFRESH)

        assert cluster.get(SERVER, ResourceKey("shop", "ConfigMap", "manual")) is not None


class TestDrift:
    @pytest.mark.asyncio
    async def test_self_heal_restores_replicas(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(replicas=3)], automated=True, self_heal=True)
        await reconciler.execute("shop", REFRESH)
        cluster.mutate(SERVER, WEB, ["spec", "replicas"], 5)

        result = await reconciler.execute("shop", DRIFT)

        assert result.drift.drifted_resources == ["Deployment/shop/web"]
        assert result.record.reason == "self-heal"
        assert result.record.revision == "r1"
        assert result.record.initiator == Initiator.AUTOMATED
        assert replicas(cluster) == 3
        assert source.resolve_calls == 1

    @pytest.mark.asyncio
    async def test_drift_reported_without_self_heal(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(replicas=3)], automated=True)
        await reconciler.execute("shop", REFRESH)
        cluster.mutate(SERVER, WEB, ["spec", "replicas"], 5)

        result = await reconciler.execute("shop", DRIFT)

        assert result.drift.drifted
        assert not result.executed
        assert replicas(cluster) == 5
        app = await repository.get("shop")
        assert app.sync_status == AppSyncStatus.OUT_OF_SYNC
        assert app.pending_plan is not None
        assert len(app.sync_history) == 1

    @pytest.mark.asyncio
    async def test_ignored_field_is_not_drift(self, reconciler, repository, source, cluster):
        source.publish(REPO_URL, "r1", [deployment(replicas=3)])
        app = make_app(automated=True, self_heal=True)
        app.ignore_rules = [IgnoreRule.parse("Deployment:/spec/replicas")]
        await repository.create(app)
        await reconciler.execute("shop", REFRESH)
        cluster.mutate(SERVER, WEB, ["spec", "replicas"], 7)

        result = await reconciler.execute("shop", DRIFT)

        assert not result.drift.drifted
        assert replicas(cluster) == 7

    @pytest.mark.asyncio
    async def test_never_synced_app_has_nothing_to_check(self, reconciler, repository, source):
        await setup_app(repository, source, [config_map()], automated=True, self_heal=True)

        result = await reconciler.execute("shop", DRIFT)

        assert result.drift is None
        assert result.record is None

    @pytest.mark.asyncio
    async def test_partial_newer_revision_is_not_reverted(self, reconciler, repository, source, cluster):
        await setup_app(
            repository, source, [deployment(image="nginx:1.25"), config_map()], automated=True, self_heal=True
        )
        await reconciler.execute("shop", REFRESH)
        source.publish(REPO_URL, "r2", [deployment(image="nginx:1.27"), config_map(data={"mode": "staging"})])
        cluster.script("apply", str(SETTINGS), ApplyOutcome.permanent("admission denied"))

        failed = await reconciler.execute("shop", REFRESH)
        assert failed.record.status == SyncPhase.FAILED
        assert [r.status for r in failed.record.results] == [OperationStatus.APPLIED, OperationStatus.FAILED]

        result = await reconciler.execute("shop", DRIFT)

        assert result.drift.drifted
        assert not result.executed
        assert cluster.get(SERVER, WEB)["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:1.27"
        app = await repository.get("shop")
        assert app.last_synced_revision == "r1"
        assert app.sync_status == AppSyncStatus.OUT_OF_SYNC
        assert len(app.sync_history) == 2

        synced = await reconciler.execute("shop", MANUAL)
        assert synced.record.revision == "r2"
        assert synced.record.status == SyncPhase.SUCCEEDED
        assert cluster.get(SERVER, SETTINGS)["data"] == {"mode": "staging"}

    @pytest.mark.asyncio
    async def test_failed_plan_does_not_block_self_heal(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(replicas=3)], automated=True, self_heal=True)
        await reconciler.execute("shop", REFRESH)
        source.publish(REPO_URL, "r2", [deployment(replicas=3), config_map(), config_map()])
        invalid = await reconciler.execute("shop", REFRESH)
        assert invalid.record.status == SyncPhase.FAILED
        assert not invalid.record.results
        cluster.mutate(SERVER, WEB, ["spec", "replicas"], 5)

        result = await reconciler.execute("shop", DRIFT)

        assert result.record.reason == "self-heal"
        assert replicas(cluster) == 3


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_sticks_until_source_moves(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [deployment(replicas=3)], automated=True)
        await reconciler.execute("shop", REFRESH)
        source.publish(REPO_URL, "r2", [deployment(replicas=5)])
        await reconciler.execute("shop", REFRESH)
        assert replicas(cluster) == 5

        result = await reconciler.execute("shop", Trigger(TriggerKind.ROLLBACK, revision="r1"))

        assert result.record.initiator == Initiator.ROLLBACK
        assert result.record.revision == "r1"
        assert result.record.reason == "rollback to r1"
        assert replicas(cluster) == 3

        # Automated refresh does not undo the rollback while HEAD is unchanged
        await reconciler.execute("shop", REFRESH)
        assert replicas(cluster) == 3
        app = await repository.get("shop")
        assert app.last_synced_revision == "r1"
        assert app.last_resolved_revision == "r2"
        assert len(app.sync_history) == 3

        source.publish(REPO_URL, "r3", [deployment(replicas=4)])
        await reconciler.execute("shop", REFRESH)
        assert replicas(cluster) == 4

    @pytest.mark.asyncio
    async def test_rollback_without_revision_rejected(self, reconciler, repository, source):
        await setup_app(repository, source, [config_map()])
        with pytest.raises(ValueError):
            await reconciler.execute("shop", Trigger(TriggerKind.ROLLBACK))


class TestFailures:
    @pytest.mark.asyncio
    async def test_source_unavailable_aborts_without_record(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map()], automated=True)
        source.available = False

        result = await reconciler.execute("shop", REFRESH)

        assert result.record is None
        assert result.error["kind"] == "SourceUnavailable"
        assert cluster.operations == []
        app = await repository.get("shop")
        assert app.last_error["kind"] == "SourceUnavailable"
        assert len(app.sync_history) == 0

        source.available = True
        await reconciler.execute("shop", REFRESH)
        app = await repository.get("shop")
        assert app.last_error is None
        assert app.last_synced_revision == "r1"

    @pytest.mark.asyncio
    async def test_unknown_revision(self, reconciler, repository, source):
        await setup_app(repository, source, [config_map()])

        result = await reconciler.execute("shop", Trigger(TriggerKind.MANUAL, revision="deadbeef"))

        assert result.error["kind"] == "RevisionNotFound"
        assert result.record is None

    @pytest.mark.asyncio
    async def test_destination_unreachable_aborts_without_record(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map()])
        cluster.unreachable.add(SERVER)

        result = await reconciler.execute("shop", MANUAL)

        assert result.error["kind"] == "DestinationUnreachable"
        assert result.record is None
        app = await repository.get("shop")
        assert len(app.sync_history) == 0

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map()])
        cluster.unreachable.add(SERVER)
        for _ in range(3):
            await reconciler.execute("shop", REFRESH)

        cluster.unreachable.discard(SERVER)
        result = await reconciler.execute("shop", REFRESH)

        assert result.error["kind"] == "DestinationUnreachable"
        assert "breaker" in result.error["message"]
        assert reconciler.breakers.get(SERVER).is_open

    @pytest.mark.asyncio
    async def test_invalid_desired_state_recorded_once(self, reconciler, repository, source, cluster):
        await setup_app(repository, source, [config_map(), config_map()])

        first = await reconciler.execute("shop", REFRESH)
        second = await reconciler.execute("shop", REFRESH)

        assert first.record.status == SyncPhase.FAILED
        assert first.record.results == ()
        assert first.record.errors[0].kind.value == "ManifestInvalid"
        assert second.record is None
        assert second.error["kind"] == "ManifestInvalid"
        assert cluster.operations == []

        app = await repository.get("shop")
        assert len(app.sync_history) == 1
        assert app.sync_status == AppSyncStatus.UNKNOWN

        manual = await reconciler.execute("shop", MANUAL)
        assert manual.record.id == 2

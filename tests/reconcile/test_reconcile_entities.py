"""Tests for reconciliation domain entities."""

from datetime import datetime, timezone

import pytest

from src.gitops.common.exceptions import ErrorKind
from src.gitops.reconcile.domain.entities import (
    Application,
    AppSyncStatus,
    ApplyOutcome,
    Destination,
    HealthStatus,
    Initiator,
    OperationResult,
    OperationStatus,
    OperationType,
    OutcomeType,
    RecordedError,
    SourceRef,
    SyncHistory,
    SyncPhase,
    SyncPolicy,
    SyncRecord,
    Trigger,
    TriggerKind,
)
from src.gitops.reconcile.domain.normalize import IgnoreRule

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def record(record_id: int, revision: str = "abc123", status: SyncPhase = SyncPhase.SUCCEEDED) -> SyncRecord:
    return SyncRecord(
        id=record_id,
        application="shop",
        revision=revision,
        initiator=Initiator.AUTOMATED,
        status=status,
        started_at=NOW,
        finished_at=NOW,
    )


class TestSyncPolicy:
    def test_defaults(self):
        policy = SyncPolicy()
        assert not policy.automated
        assert not policy.prune
        assert not policy.self_heal
        assert policy.retry_limit == 5

    def test_negative_retry_limit_rejected(self):
        with pytest.raises(ValueError):
            SyncPolicy(retry_limit=-1)


class TestApplyOutcome:
    def test_constructors(self):
        assert ApplyOutcome.success().ok
        retryable = ApplyOutcome.retryable("timeout")
        assert retryable.type == OutcomeType.RETRYABLE_FAILURE
        assert retryable.error_kind == ErrorKind.RETRYABLE_APPLY_FAILURE
        permanent = ApplyOutcome.permanent("rejected")
        assert permanent.type == OutcomeType.PERMANENT_FAILURE
        assert permanent.error_kind == ErrorKind.PERMANENT_APPLY_FAILURE


class TestTrigger:
    @pytest.mark.parametrize(
        "trigger,expected",
        [
            (Trigger(TriggerKind.MANUAL), True),
            (Trigger(TriggerKind.ROLLBACK, revision="r1"), True),
            (Trigger(TriggerKind.REFRESH, revision="r2"), True),
            (Trigger(TriggerKind.REFRESH), False),
            (Trigger(TriggerKind.DRIFT), False),
        ],
    )
    def test_supersedes(self, trigger, expected):
        assert trigger.supersedes is expected

    def test_is_tick(self):
        assert Trigger(TriggerKind.DRIFT).is_tick
        assert Trigger(TriggerKind.REFRESH).is_tick
        assert not Trigger(TriggerKind.REFRESH, revision="abc").is_tick
        assert not Trigger(TriggerKind.MANUAL).is_tick


class TestHealthSeverity:
    def test_order(self):
        ordered = [
            HealthStatus.HEALTHY,
            HealthStatus.MISSING,
            HealthStatus.UNKNOWN,
            HealthStatus.SUSPENDED,
            HealthStatus.PROGRESSING,
            HealthStatus.DEGRADED,
        ]
        assert [s.severity for s in ordered] == sorted(s.severity for s in ordered)


class TestSyncHistory:
    """SyncHistory is append-only with positional ids."""

    def test_append_in_order(self):
        history = SyncHistory()
        history.append(record(1))
        history.append(record(2, "def456"))

        assert len(history) == 2
        assert history.latest().revision == "def456"
        assert history.get(1).revision == "abc123"
        assert history.next_id == 3

    def test_out_of_order_id_rejected(self):
        history = SyncHistory([record(1)])
        with pytest.raises(ValueError):
            history.append(record(3))

    def test_get_out_of_range(self):
        history = SyncHistory([record(1)])
        assert history.get(0) is None
        assert history.get(2) is None

    def test_records_are_a_snapshot(self):
        history = SyncHistory([record(1)])
        snapshot = history.records
        history.append(record(2))
        assert len(snapshot) == 1


class TestSyncRecord:
    def test_serialization_keeps_results_and_errors(self):
        error = RecordedError(ErrorKind.PERMANENT_APPLY_FAILURE, "rejected", "ConfigMap/shop/settings")
        original = SyncRecord(
            id=1,
            application="shop",
            revision="abc123",
            initiator=Initiator.MANUAL,
            status=SyncPhase.FAILED,
            started_at=NOW,
            finished_at=NOW,
            results=(
                OperationResult(OperationType.APPLY, "ConfigMap/shop/settings", OperationStatus.FAILED, 1, error),
                OperationResult(OperationType.APPLY, "Service/shop/web", OperationStatus.NOT_ATTEMPTED),
            ),
            errors=(error,),
            reason="manual sync",
        )

        restored = SyncRecord.from_dict(original.to_dict())

        assert restored == original
        assert restored.count(OperationStatus.NOT_ATTEMPTED) == 1
        assert not restored.succeeded


class TestApplication:
    def test_from_dict_restores_definition_status_and_history(self):
        app = Application(
            name="shop",
            source=SourceRef("https://git.example.com/shop.git", "main", "deploy"),
            destination=Destination("https://cluster", "shop"),
            sync_policy=SyncPolicy(automated=True, prune=True, retry_limit=3),
            ignore_rules=[IgnoreRule.parse("Deployment:/spec/replicas")],
            last_synced_revision="abc123",
            current_health=HealthStatus.PROGRESSING,
            sync_status=AppSyncStatus.SYNCED,
            reconciled_at=NOW,
        )

        restored = Application.from_dict(app.to_dict(), [record(1)])

        assert restored.source.path == "deploy"
        assert restored.sync_policy.retry_limit == 3
        assert restored.ignore_rules == app.ignore_rules
        assert restored.current_health == HealthStatus.PROGRESSING
        assert restored.sync_status == AppSyncStatus.SYNCED
        assert restored.reconciled_at == NOW
        assert len(restored.sync_history) == 1
        assert restored.ever_synced

    def test_new_application_is_unknown(self):
        app = Application("shop", SourceRef("repo"), Destination("server"))
        assert app.sync_status == AppSyncStatus.UNKNOWN
        assert app.current_health == HealthStatus.UNKNOWN
        assert not app.ever_synced
        assert app.tracking_selector == "shop"

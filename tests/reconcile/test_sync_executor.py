"""Tests for the Sync Executor: retries, fail-fast abort, skips and cancellation."""

import asyncio
from typing import Any

import pytest

from src.gitops.common.exceptions import ErrorKind, OwnershipConflict
from src.gitops.reconcile.domain.entities import (
    ApplyOutcome,
    Destination,
    OperationStatus,
    OperationType,
    PlannedOperation,
    RecordedError,
    SyncPhase,
    SyncPlan,
)
from src.gitops.reconcile.domain.ports import IExecutorBackend
from src.gitops.reconcile.domain.resources import TRACKING_ANNOTATION, ResourceKey, ResourceManifest
from src.gitops.reconcile.use_cases.execute_sync import SyncExecutor

DEST = Destination("https://cluster", "shop")


class MockBackend(IExecutorBackend):
    """Backend returning scripted outcomes per resource name."""

    def __init__(
        self,
        outcomes: dict[str, list[ApplyOutcome]] | None = None,
        raise_on: str | None = None,
        error: Exception | None = None,
    ):
        self.outcomes = outcomes or {}
        self.raise_on = raise_on
        self.error = error or RuntimeError("connection reset by peer")
        self.calls: list[tuple[str, str]] = []
        self.applied: list[dict[str, Any]] = []
        self.on_call = None

    def _next(self, name: str) -> ApplyOutcome:
        if self.on_call:
            self.on_call(name)
        if name == self.raise_on:
            raise self.error
        queue = self.outcomes.get(name)
        if queue:
            return queue.pop(0)
        return ApplyOutcome.success()

    async def apply(self, destination, manifest):
        name = manifest["metadata"]["name"]
        self.calls.append(("apply", name))
        self.applied.append(manifest)
        return self._next(name)

    async def delete(self, destination, api_version, key):
        self.calls.append(("delete", key.name))
        return self._next(key.name)


def apply_op(name: str, priority: int, preflight: RecordedError | None = None) -> PlannedOperation:
    key = ResourceKey("shop", "ConfigMap", name)
    manifest = ResourceManifest(
        api_version="v1",
        key=key,
        content={"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name}},
        index=priority,
    )
    return PlannedOperation(OperationType.APPLY, key, "v1", priority, manifest=manifest, preflight_error=preflight)


def delete_op(name: str, priority: int) -> PlannedOperation:
    return PlannedOperation(OperationType.DELETE, ResourceKey("shop", "ConfigMap", name), "v1", priority)


def plan(*ops: PlannedOperation) -> SyncPlan:
    return SyncPlan("shop", "r1", tuple(ops))


def executor(backend) -> SyncExecutor:
    return SyncExecutor(backend, initial_delay=0, jitter=False)


class TestSuccess:
    @pytest.mark.asyncio
    async def test_all_operations_succeed_in_order(self):
        backend = MockBackend()
        report = await executor(backend).execute(
            "shop", DEST, plan(apply_op("a", 0), apply_op("b", 1), delete_op("old", 2)), retry_limit=0
        )

        assert report.phase == SyncPhase.SUCCEEDED
        assert backend.calls == [("apply", "a"), ("apply", "b"), ("delete", "old")]
        assert [r.status for r in report.results] == [
            OperationStatus.APPLIED,
            OperationStatus.APPLIED,
            OperationStatus.DELETED,
        ]
        assert all(r.attempts == 1 for r in report.results)
        assert report.finished_at >= report.started_at

    @pytest.mark.asyncio
    async def test_applied_manifest_carries_ownership_marker(self):
        backend = MockBackend()
        await executor(backend).execute("shop", DEST, plan(apply_op("a", 0)), retry_limit=0)
        assert backend.applied[0]["metadata"]["annotations"][TRACKING_ANNOTATION] == "shop:/ConfigMap:shop/a"

    @pytest.mark.asyncio
    async def test_empty_plan_succeeds(self):
        report = await executor(MockBackend()).execute("shop", DEST, plan(), retry_limit=3)
        assert report.phase == SyncPhase.SUCCEEDED
        assert report.results == ()


class TestRetries:
    @pytest.mark.asyncio
    async def test_retryable_then_success(self):
        backend = MockBackend({"a": [ApplyOutcome.retryable("timeout"), ApplyOutcome.retryable("timeout")]})

        report = await executor(backend).execute("shop", DEST, plan(apply_op("a", 0)), retry_limit=2)

        assert report.phase == SyncPhase.SUCCEEDED
        assert report.results[0].status == OperationStatus.APPLIED
        assert report.results[0].attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_permanent(self):
        backend = MockBackend({"a": [ApplyOutcome.retryable("timeout")] * 5})

        report = await executor(backend).execute(
            "shop", DEST, plan(apply_op("a", 0), apply_op("b", 1)), retry_limit=2
        )

        first = report.results[0]
        assert report.phase == SyncPhase.FAILED
        assert first.status == OperationStatus.FAILED
        assert first.attempts == 3
        assert first.error.kind == ErrorKind.PERMANENT_APPLY_FAILURE
        assert "Retries exhausted after 3 attempt(s)" in first.error.message
        assert report.results[1].status == OperationStatus.NOT_ATTEMPTED
        assert backend.calls == [("apply", "a")] * 3

    @pytest.mark.asyncio
    async def test_retry_limit_zero_means_single_attempt(self):
        backend = MockBackend({"a": [ApplyOutcome.retryable("timeout")]})
        report = await executor(backend).execute("shop", DEST, plan(apply_op("a", 0)), retry_limit=0)
        assert report.results[0].attempts == 1
        assert report.phase == SyncPhase.FAILED

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self):
        backend = MockBackend({"a": [ApplyOutcome.permanent("admission webhook denied")]})
        report = await executor(backend).execute("shop", DEST, plan(apply_op("a", 0)), retry_limit=5)

        assert report.results[0].attempts == 1
        assert report.results[0].error.message == "admission webhook denied"
        assert backend.calls == [("apply", "a")]


class TestAbort:
    @pytest.mark.asyncio
    async def test_second_of_three_fails(self):
        backend = MockBackend({"b": [ApplyOutcome.permanent("invalid field")]})

        report = await executor(backend).execute(
            "shop", DEST, plan(apply_op("a", 0), apply_op("b", 1), apply_op("c", 2)), retry_limit=1
        )

        assert report.phase == SyncPhase.FAILED
        assert [r.status for r in report.results] == [
            OperationStatus.APPLIED,
            OperationStatus.FAILED,
            OperationStatus.NOT_ATTEMPTED,
        ]
        assert ("apply", "c") not in backend.calls
        assert report.failed_resources == {"ConfigMap/shop/b"}
        assert [e.resource for e in report.errors] == ["ConfigMap/shop/b"]

    @pytest.mark.asyncio
    async def test_backend_exception_becomes_permanent_failure(self):
        backend = MockBackend(raise_on="a")
        report = await executor(backend).execute(
            "shop", DEST, plan(apply_op("a", 0), apply_op("b", 1)), retry_limit=3
        )

        assert report.results[0].status == OperationStatus.FAILED
        assert "RuntimeError" in report.results[0].error.message
        assert report.results[0].error.kind == ErrorKind.PERMANENT_APPLY_FAILURE
        assert report.results[0].attempts == 1
        assert report.results[1].status == OperationStatus.NOT_ATTEMPTED

    @pytest.mark.asyncio
    async def test_backend_exception_keeps_its_kind(self):
        backend = MockBackend(raise_on="a", error=OwnershipConflict("ConfigMap/shop/a", "billing"))
        report = await executor(backend).execute("shop", DEST, plan(apply_op("a", 0)), retry_limit=3)

        error = report.results[0].error
        assert error.kind == ErrorKind.OWNERSHIP_CONFLICT
        assert error.message.startswith("OwnershipConflict")


class TestSkip:
    @pytest.mark.asyncio
    async def test_preflight_error_skips_and_continues(self):
        conflict = RecordedError(ErrorKind.OWNERSHIP_CONFLICT, "Resource is owned by billing", "ConfigMap/shop/a")
        backend = MockBackend()

        report = await executor(backend).execute(
            "shop", DEST, plan(apply_op("a", 0, conflict), apply_op("b", 1)), retry_limit=0
        )

        assert report.phase == SyncPhase.FAILED
        assert report.results[0].status == OperationStatus.SKIPPED
        assert report.results[0].attempts == 0
        assert report.results[0].error == conflict
        assert report.results[1].status == OperationStatus.APPLIED
        assert backend.calls == [("apply", "b")]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        cancel = asyncio.Event()
        cancel.set()
        backend = MockBackend()

        report = await executor(backend).execute("shop", DEST, plan(apply_op("a", 0)), 0, cancel)

        assert report.phase == SyncPhase.CANCELLED
        assert report.results[0].status == OperationStatus.NOT_ATTEMPTED
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_cancel_between_operations(self):
        cancel = asyncio.Event()
        backend = MockBackend()
        backend.on_call = lambda name: cancel.set() if name == "a" else None

        report = await executor(backend).execute(
            "shop", DEST, plan(apply_op("a", 0), apply_op("b", 1), apply_op("c", 2)), 0, cancel
        )

        assert report.phase == SyncPhase.CANCELLED
        assert [r.status for r in report.results] == [
            OperationStatus.APPLIED,
            OperationStatus.NOT_ATTEMPTED,
            OperationStatus.NOT_ATTEMPTED,
        ]
        assert len(report.results) == 3

"""Reconcile controller: worker pool, periodic ticks and operator commands.

Architecture:
    - A fixed pool of asyncio worker tasks pulls Applications from a
      coalescing TriggerQueue; the queue's lease keeps reconciliation of one
      Application strictly sequential while different Applications run in
      parallel
    - A refresh ticker polls every Application's source on an interval
    - A drift ticker compares every Application against its last synced
      state on an interval
    - Operator commands (register, sync, refresh, rollback, deregister)
      are turned into triggers on the same queue

A failure while reconciling one Application is logged and recorded on that
Application; it never stops a worker.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..common.exceptions import ApplicationNotFound
from ..reconcile.domain.entities import Application, Trigger, TriggerKind
from ..reconcile.use_cases.manage_applications import ApplicationRegistry
from ..reconcile.use_cases.manage_history import HistoryManager
from ..reconcile.use_cases.reconcile_application import ReconcileApplicationUseCase, ReconcileResult
from .work_queue import TriggerQueue

logger = logging.getLogger(__name__)


class ControllerStats:
    """Counters exposed by the health endpoints."""

    def __init__(self):
        self.started_at: datetime = datetime.now(timezone.utc)
        self.total_runs: int = 0
        self.failed_runs: int = 0
        self.crashed_runs: int = 0
        self.last_run_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": round((datetime.now(timezone.utc) - self.started_at).total_seconds()),
            "total_runs": self.total_runs,
            "failed_runs": self.failed_runs,
            "crashed_runs": self.crashed_runs,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }


class ReconcileController:
    """Schedules reconciliations for every registered Application.

    Args:
        reconciler: Per-Application pipeline
        registry: Application registration use case
        workers: Number of worker tasks
        refresh_interval: Seconds between source polls. 0 disables the
            ticker; ReconcilerConfig only accepts 1 or more
        drift_interval: Seconds between drift checks, with the same rule
    """

    def __init__(
        self,
        reconciler: ReconcileApplicationUseCase,
        registry: ApplicationRegistry,
        workers: int = 4,
        refresh_interval: float = 180.0,
        drift_interval: float = 60.0,
    ):
        self.reconciler = reconciler
        self.registry = registry
        self.workers = workers
        self.refresh_interval = refresh_interval
        self.drift_interval = drift_interval

        self.queue = TriggerQueue()
        self.stats = ControllerStats()
        self.last_results: dict[str, ReconcileResult] = {}
        self._tasks: list[asyncio.Task] = []
        self._shutdown = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    # ============================================
    # Lifecycle
    # ============================================

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self, initial_refresh: bool = True) -> None:
        """Start workers and tickers; optionally queue every Application."""
        if self._tasks:
            return
        self._shutdown.clear()
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}"))
        if self.refresh_interval > 0:
            self._tasks.append(
                asyncio.create_task(self._ticker(TriggerKind.REFRESH, self.refresh_interval), name="refresh-ticker")
            )
        if self.drift_interval > 0:
            self._tasks.append(
                asyncio.create_task(self._ticker(TriggerKind.DRIFT, self.drift_interval), name="drift-ticker")
            )
        logger.info(
            f"Controller started: {self.workers} workers, refresh every {self.refresh_interval}s, "
            f"drift every {self.drift_interval}s"
        )
        if initial_refresh:
            await self.enqueue_all(TriggerKind.REFRESH)

    async def stop(self) -> None:
        """Stop accepting work and cancel all tasks.

        A worker in the middle of an operation is cancelled with it; the
        interrupted run leaves no SyncRecord and is retried after restart.
        """
        self._shutdown.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Controller stopped")

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no trigger is pending or in flight."""
        async def _wait():
            while not self.queue.is_idle:
                self._idle.clear()
                await self._idle.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)

    # ============================================
    # Triggers
    # ============================================

    def enqueue(self, name: str, trigger: Trigger) -> bool:
        accepted = self.queue.put(name, trigger)
        if accepted:
            self._idle.clear()
        return accepted

    async def enqueue_all(self, kind: TriggerKind) -> int:
        apps = await self.registry.list()
        count = sum(1 for app in apps if self.enqueue(app.name, Trigger(kind)))
        logger.debug(f"Queued {kind.value} for {count} of {len(apps)} applications")
        return count

    async def _ticker(self, kind: TriggerKind, interval: float) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.enqueue_all(kind)
            except Exception as e:
                logger.error(f"{kind.value} tick failed to list applications: {e}", exc_info=True)

    async def _worker(self, index: int) -> None:
        while not self._shutdown.is_set():
            name, trigger, cancel_event = await self.queue.get()
            try:
                await self._process(name, trigger, cancel_event)
            finally:
                self.queue.done(name)
                if self.queue.is_idle:
                    self._idle.set()

    async def _process(self, name: str, trigger: Trigger, cancel_event: asyncio.Event) -> Optional[ReconcileResult]:
        self.stats.total_runs += 1
        self.stats.last_run_at = datetime.now(timezone.utc)
        try:
            result = await self.reconciler.execute(name, trigger, cancel_event)
        except ApplicationNotFound:
            logger.info(f"Skipping {trigger.kind.value} for {name}: no longer registered")
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.crashed_runs += 1
            logger.error(
                f"Reconciliation of {name} ({trigger.kind.value}) crashed: {type(e).__name__}: {e}",
                exc_info=True,
            )
            return None

        if not result.success:
            self.stats.failed_runs += 1
        self.last_results[name] = result
        return result

    # ============================================
    # Operator commands
    # ============================================

    async def register(self, app: Application) -> Application:
        created = await self.registry.register(app)
        self.queue.unblock(app.name)
        self.enqueue(app.name, Trigger(TriggerKind.REFRESH, reason="registered"))
        return created

    async def sync(self, name: str, prune: Optional[bool] = None, revision: Optional[str] = None) -> Trigger:
        await self.registry.get(name)
        trigger = Trigger(TriggerKind.MANUAL, revision=revision, prune=prune, reason="manual sync")
        self.enqueue(name, trigger)
        return trigger

    async def refresh(self, name: str, revision: Optional[str] = None) -> Trigger:
        await self.registry.get(name)
        trigger = Trigger(TriggerKind.REFRESH, revision=revision, reason="webhook" if revision else "refresh")
        self.enqueue(name, trigger)
        return trigger

    async def rollback(
        self,
        name: str,
        revision: Optional[str] = None,
        history_id: Optional[int] = None,
    ) -> Trigger:
        """Queue a rollback to a revision or to the revision of a history entry.

        Raises:
            ApplicationNotFound: If the name is not registered
            ValueError: If neither or both targets are given
            RevisionNotFound: If ``history_id`` names no record
        """
        app = await self.registry.get(name)
        target = HistoryManager.rollback_target(app, revision, history_id)
        reason = f"rollback to #{history_id} ({target})" if history_id is not None else f"rollback to {target}"
        trigger = Trigger(TriggerKind.ROLLBACK, revision=target, reason=reason)
        self.enqueue(name, trigger)
        return trigger

    async def deregister(self, name: str, cascade: bool = False):
        """Remove an Application once nothing runs for it.

        Pending triggers are dropped and an in-flight run is asked to stop
        between operations before the Application is removed.
        """
        await self.registry.get(name)
        self.queue.block(name)
        try:
            if self.queue.cancel(name):
                logger.info(f"Waiting for the in-flight run of {name} to stop")
            await self.queue.wait_finished(name)
            report = await self.registry.deregister(name, cascade=cascade)
        finally:
            self.queue.unblock(name)
        self.last_results.pop(name, None)
        return report

    async def reconcile_now(self, name: str, trigger: Trigger) -> Optional[ReconcileResult]:
        """Queue a trigger and wait for the queue to drain.

        Intended for one-shot runs and tests; requires a started controller.
        """
        self.enqueue(name, trigger)
        await self.wait_until_idle()
        return self.last_results.get(name)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "workers": self.workers,
            "refresh_interval_seconds": self.refresh_interval,
            "drift_interval_seconds": self.drift_interval,
            "queue": self.queue.get_status(),
            "stats": self.stats.to_dict(),
            "destinations": self.reconciler.breakers.get_status(),
        }

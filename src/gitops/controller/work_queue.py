"""Coalescing per-Application work queue.

The queue holds at most one pending Trigger per Application and guarantees
an Application is handed to at most one worker at a time:

- A trigger for an idle Application makes it ready.
- A trigger for an Application that is already queued or in flight
  replaces the pending one (latest wins), with two exceptions: a DRIFT
  trigger never displaces a pending trigger of another kind, and a
  periodic REFRESH never displaces a pending MANUAL or ROLLBACK trigger.
- A superseding trigger (manual, rollback, refresh with a new revision)
  arriving while a run is in flight sets that run's cancel event. The
  executor stops between operations and the pending trigger runs next.
- When a run finishes, a trigger that arrived meanwhile makes the
  Application ready again.
"""

import asyncio
import logging
from typing import Optional

from ..reconcile.domain.entities import Trigger, TriggerKind

logger = logging.getLogger(__name__)


class TriggerQueue:
    def __init__(self):
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._pending: dict[str, Trigger] = {}
        self._in_flight: dict[str, asyncio.Event] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._blocked: set[str] = set()

    def put(self, name: str, trigger: Trigger) -> bool:
        """Queue a trigger. Returns False when it was dropped."""
        if name in self._blocked:
            logger.debug(f"Dropping {trigger.kind.value} trigger for {name}: being removed")
            return False

        current = self._pending.get(name)
        if current is not None and self._keeps_slot(current, trigger):
            logger.debug(f"{trigger.kind.value} tick for {name} absorbed by pending {current.kind.value} trigger")
            return False
        if current is not None:
            logger.info(
                f"Coalescing triggers for {name}: {current.kind.value} replaced by {trigger.kind.value}"
            )
        self._pending[name] = trigger

        cancel_event = self._in_flight.get(name)
        if cancel_event is not None:
            if trigger.supersedes and not cancel_event.is_set():
                logger.info(f"{trigger.kind.value} trigger supersedes the in-flight run of {name}")
                cancel_event.set()
        elif current is None:
            self._ready.put_nowait(name)
        return True

    @staticmethod
    def _keeps_slot(current: Trigger, trigger: Trigger) -> bool:
        """Whether the pending trigger stays queued instead of ``trigger``."""
        if trigger.kind == TriggerKind.DRIFT:
            return current.kind != TriggerKind.DRIFT
        return trigger.is_tick and current.kind in (TriggerKind.MANUAL, TriggerKind.ROLLBACK)

    async def get(self) -> tuple[str, Trigger, asyncio.Event]:
        """Wait for the next ready Application and lease it.

        Returns the name, its trigger and the cancel event of the run.
        """
        while True:
            name = await self._ready.get()
            trigger = self._pending.pop(name, None)
            if trigger is None or name in self._in_flight:
                # Discarded while queued, or a stale duplicate entry
                if trigger is not None:
                    self._pending[name] = trigger
                continue
            cancel_event = asyncio.Event()
            self._in_flight[name] = cancel_event
            self._finished[name] = asyncio.Event()
            return name, trigger, cancel_event

    def done(self, name: str) -> None:
        """Release the lease taken by get()."""
        self._in_flight.pop(name, None)
        finished = self._finished.pop(name, None)
        if finished is not None:
            finished.set()
        if name in self._pending:
            self._ready.put_nowait(name)

    def discard(self, name: str) -> Optional[Trigger]:
        """Drop the pending trigger of an Application."""
        return self._pending.pop(name, None)

    def cancel(self, name: str) -> bool:
        """Ask the in-flight run of an Application to stop between operations."""
        cancel_event = self._in_flight.get(name)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    async def wait_finished(self, name: str) -> None:
        finished = self._finished.get(name)
        if finished is not None:
            await finished.wait()

    def block(self, name: str) -> None:
        """Stop accepting triggers for an Application."""
        self._blocked.add(name)
        self.discard(name)

    def unblock(self, name: str) -> None:
        self._blocked.discard(name)

    def pending(self, name: str) -> Optional[Trigger]:
        return self._pending.get(name)

    def is_in_flight(self, name: str) -> bool:
        return name in self._in_flight

    @property
    def is_idle(self) -> bool:
        return not self._pending and not self._in_flight

    def get_status(self) -> dict:
        return {
            "pending": {name: t.kind.value for name, t in self._pending.items()},
            "in_flight": sorted(self._in_flight),
        }

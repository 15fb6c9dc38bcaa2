"""In-memory adapter for the Application repository.

Used when no DATABASE_URL is configured and in tests. Applications are
stored in serialized form so callers never share mutable state with the
store, the same as with the PostgreSQL adapter.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Optional

from ...common.exceptions import ApplicationExists, ApplicationNotFound
from ..domain.entities import Application, SyncRecord
from ..domain.ports import IApplicationRepository

logger = logging.getLogger(__name__)


class InMemoryApplicationRepository(IApplicationRepository):
    """Dict-backed implementation of IApplicationRepository."""

    def __init__(self):
        self._definitions: dict[str, dict[str, Any]] = {}
        self._statuses: dict[str, dict[str, Any]] = {}
        self._history: dict[str, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def create(self, app: Application) -> Application:
        async with self._lock:
            if app.name in self._definitions:
                raise ApplicationExists(app.name)
            self._definitions[app.name] = app.definition_dict()
            self._statuses[app.name] = copy.deepcopy(app.status_dict())
            self._history[app.name] = [r.to_dict() for r in app.sync_history]
        return app

    async def get(self, name: str) -> Application:
        async with self._lock:
            return self._load(name)

    async def list(self) -> list[Application]:
        async with self._lock:
            return [self._load(name) for name in sorted(self._definitions)]

    async def save_status(self, app: Application) -> None:
        async with self._lock:
            self._require(app.name)
            self._statuses[app.name] = copy.deepcopy(app.status_dict())

    async def record_sync(self, app: Application, record: SyncRecord) -> None:
        async with self._lock:
            self._require(app.name)
            history = self._history[app.name]
            if record.id != len(history) + 1:
                raise ValueError(
                    f"SyncRecord id {record.id} out of order for {app.name} "
                    f"(expected {len(history) + 1})"
                )
            history.append(record.to_dict())
            self._statuses[app.name] = copy.deepcopy(app.status_dict())

    async def get_history(self, name: str, limit: Optional[int] = None) -> list[SyncRecord]:
        async with self._lock:
            self._require(name)
            records = self._history[name]
            if limit is not None:
                records = records[-limit:] if limit > 0 else []
            return [SyncRecord.from_dict(r) for r in records]

    async def delete(self, name: str) -> None:
        async with self._lock:
            self._require(name)
            del self._definitions[name]
            del self._statuses[name]
            del self._history[name]
        logger.debug(f"Removed {name} from in-memory store")

    def _require(self, name: str) -> None:
        if name not in self._definitions:
            raise ApplicationNotFound(name)

    def _load(self, name: str) -> Application:
        self._require(name)
        data = dict(self._definitions[name])
        data.update(copy.deepcopy(self._statuses[name]))
        history = [SyncRecord.from_dict(r) for r in self._history[name]]
        return Application.from_dict(data, history)

"""PostgreSQL adapter for the Application repository.

This adapter implements IApplicationRepository using asyncpg. Definitions
and status are stored as JSONB on ``applications``; history lives in the
insert-only ``sync_records`` table, ordered by a per-Application ``seq``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import asyncpg

from ...common.database import database_connection, database_transaction
from ...common.exceptions import ApplicationExists, ApplicationNotFound, IntegrityError
from ..domain.entities import Application, SyncRecord
from ..domain.ports import IApplicationRepository

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS applications (
    name TEXT PRIMARY KEY,
    tracking_selector TEXT NOT NULL,
    definition JSONB NOT NULL,
    status JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sync_records (
    application_name TEXT NOT NULL REFERENCES applications(name) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    revision TEXT NOT NULL,
    initiator TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ NOT NULL,
    record JSONB NOT NULL,
    PRIMARY KEY (application_name, seq)
);

CREATE INDEX IF NOT EXISTS idx_sync_records_revision
    ON sync_records (application_name, revision);
"""


def _load_json(value: Any) -> Any:
    """JSONB arrives as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresApplicationRepository(IApplicationRepository):
    """PostgreSQL implementation of IApplicationRepository."""

    def __init__(self, pool: asyncpg.Pool):
        """Initialize with database connection pool.

        Args:
            pool: asyncpg connection pool
        """
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create tables if they do not exist."""
        async with database_transaction(self.pool) as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Application schema ready")

    async def create(self, app: Application) -> Application:
        try:
            async with database_transaction(self.pool) as conn:
                await conn.execute(
                    """
                    INSERT INTO applications (name, tracking_selector, definition, status)
                    VALUES ($1, $2, $3::jsonb, $4::jsonb)
                    """,
                    app.name,
                    app.tracking_selector,
                    json.dumps(app.definition_dict()),
                    json.dumps(app.status_dict()),
                )
        except IntegrityError as e:
            raise ApplicationExists(app.name, cause=e) from e
        return app

    async def get(self, name: str) -> Application:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT definition, status FROM applications WHERE name = $1",
                name,
            )
            if row is None:
                raise ApplicationNotFound(name)
            records = await conn.fetch(
                "SELECT record FROM sync_records WHERE application_name = $1 ORDER BY seq",
                name,
            )
        return self._row_to_application(row, records)

    async def list(self) -> list[Application]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                "SELECT name, definition, status FROM applications ORDER BY name"
            )
            records = await conn.fetch(
                "SELECT application_name, record FROM sync_records ORDER BY application_name, seq"
            )

        by_app: dict[str, list[asyncpg.Record]] = {}
        for record in records:
            by_app.setdefault(record["application_name"], []).append(record)
        return [self._row_to_application(row, by_app.get(row["name"], [])) for row in rows]

    async def save_status(self, app: Application) -> None:
        async with database_transaction(self.pool) as conn:
            await self._update_status(conn, app)

    async def record_sync(self, app: Application, record: SyncRecord) -> None:
        async with database_transaction(self.pool) as conn:
            await conn.execute(
                """
                INSERT INTO sync_records (
                    application_name, seq, revision, initiator, status,
                    started_at, finished_at, record
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                """,
                app.name,
                record.id,
                record.revision,
                record.initiator.value,
                record.status.value,
                record.started_at,
                record.finished_at,
                json.dumps(record.to_dict()),
            )
            await self._update_status(conn, app)

    async def get_history(self, name: str, limit: Optional[int] = None) -> list[SyncRecord]:
        async with database_connection(self.pool) as conn:
            exists = await conn.fetchval("SELECT 1 FROM applications WHERE name = $1", name)
            if not exists:
                raise ApplicationNotFound(name)
            if limit is None:
                rows = await conn.fetch(
                    "SELECT record FROM sync_records WHERE application_name = $1 ORDER BY seq",
                    name,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT record FROM (
                        SELECT seq, record FROM sync_records
                        WHERE application_name = $1
                        ORDER BY seq DESC
                        LIMIT $2
                    ) latest ORDER BY seq
                    """,
                    name,
                    limit,
                )
        return [SyncRecord.from_dict(_load_json(row["record"])) for row in rows]

    async def delete(self, name: str) -> None:
        async with database_transaction(self.pool) as conn:
            result = await conn.execute("DELETE FROM applications WHERE name = $1", name)
        # asyncpg returns the command tag, e.g. "DELETE 1"
        if result.split()[-1] == "0":
            raise ApplicationNotFound(name)

    async def _update_status(self, conn, app: Application) -> None:
        result = await conn.execute(
            """
            UPDATE applications
            SET status = $2::jsonb, updated_at = NOW()
            WHERE name = $1
            """,
            app.name,
            json.dumps(app.status_dict()),
        )
        if result.split()[-1] == "0":
            raise ApplicationNotFound(app.name)

    def _row_to_application(self, row: asyncpg.Record, records: list[asyncpg.Record]) -> Application:
        """Convert database rows to an Application with history."""
        data = dict(_load_json(row["definition"]))
        data.update(_load_json(row["status"]) or {})
        history = [SyncRecord.from_dict(_load_json(r["record"])) for r in records]
        return Application.from_dict(data, history)

"""History & Rollback Manager use case.

Owns the append-only SyncRecord history of every Application: building
records from executor reports, appending them atomically with the
Application's status, answering history queries and resolving rollback
targets. Rolling back is itself a normal sync tagged ``initiator=rollback``;
nothing here edits or removes an existing record.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from ...common.exceptions import RevisionNotFound
from ..domain.entities import (
    Application,
    ExecutionReport,
    Initiator,
    OperationStatus,
    RecordedError,
    SyncPhase,
    SyncRecord,
)
from ..domain.ports import IApplicationRepository

logger = logging.getLogger(__name__)


class HistoryManager:
    def __init__(self, repository: IApplicationRepository):
        self.repository = repository

    def build_record(
        self,
        app: Application,
        revision: str,
        initiator: Initiator,
        report: Optional[ExecutionReport] = None,
        errors: Iterable[RecordedError] = (),
        reason: str = "",
        started_at: Optional[datetime] = None,
    ) -> SyncRecord:
        """Build the next record for an Application.

        Without a report the record describes a plan-level failure: no
        operation ran and the status is Failed.
        """
        now = datetime.now(timezone.utc)
        if report is None:
            return SyncRecord(
                id=app.sync_history.next_id,
                application=app.name,
                revision=revision,
                initiator=initiator,
                status=SyncPhase.FAILED,
                started_at=started_at or now,
                finished_at=now,
                errors=tuple(errors),
                reason=reason,
            )
        return SyncRecord(
            id=app.sync_history.next_id,
            application=app.name,
            revision=revision,
            initiator=initiator,
            status=report.phase,
            started_at=started_at or report.started_at,
            finished_at=report.finished_at,
            results=report.results,
            errors=tuple(report.errors) + tuple(errors),
            reason=reason,
        )

    async def append(self, app: Application, record: SyncRecord) -> SyncRecord:
        """Append to the in-memory history and persist with the status."""
        app.sync_history.append(record)
        await self.repository.record_sync(app, record)
        logger.info(
            f"Recorded sync #{record.id} for {app.name}: {record.status.value} "
            f"at {record.revision} ({record.initiator.value}"
            f"{', ' + record.reason if record.reason else ''})"
        )
        return record

    async def history(self, name: str, limit: Optional[int] = None) -> list[SyncRecord]:
        return await self.repository.get_history(name, limit)

    @staticmethod
    def rollback_target(
        app: Application,
        revision: Optional[str] = None,
        history_id: Optional[int] = None,
    ) -> str:
        """Resolve what a rollback should sync to.

        Exactly one of ``revision`` and ``history_id`` must be given.

        Raises:
            ValueError: If neither or both are given
            RevisionNotFound: If ``history_id`` names no record
        """
        if (revision is None) == (history_id is None):
            raise ValueError("Rollback needs exactly one of revision or history_id")
        if revision is not None:
            return revision
        record = app.sync_history.get(history_id)
        if record is None:
            raise RevisionNotFound(f"history #{history_id}")
        return record.revision

    @staticmethod
    def last_failed_automated(app: Application, revision: str) -> bool:
        """True when the latest record is a failed automated run of ``revision``.

        Automated syncs do not retry such a revision on their own; a new
        revision or an operator request is needed.
        """
        latest = app.sync_history.latest()
        return (
            latest is not None
            and latest.initiator == Initiator.AUTOMATED
            and latest.revision == revision
            and latest.status == SyncPhase.FAILED
        )

    @staticmethod
    def unsettled_attempt(app: Application) -> Optional[SyncRecord]:
        """The latest record if it changed the cluster without completing.

        A failed or cancelled run at a revision other than the last synced
        one that applied or deleted something leaves live state partly at
        that revision, so a difference from the last synced revision is not
        drift.
        """
        latest = app.sync_history.latest()
        if (
            latest is not None
            and latest.status != SyncPhase.SUCCEEDED
            and latest.revision != app.last_synced_revision
            and any(r.status in (OperationStatus.APPLIED, OperationStatus.DELETED) for r in latest.results)
        ):
            return latest
        return None

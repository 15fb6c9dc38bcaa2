"""Application registration use cases.

Registering stores a new Application definition with empty status.
Deregistering removes it together with its history; with ``cascade`` the
live resources the Application owns are pruned first, in the same order a
pruning sync would delete them.
"""

from __future__ import annotations

import logging
from typing import Optional

from ...common.exceptions import PermanentApplyFailure
from ..domain.entities import Application, DiffResult, ExecutionReport, SyncPhase, SyncPolicy
from ..domain.ports import IApplicationRepository
from .reconcile_application import ReconcileApplicationUseCase

logger = logging.getLogger(__name__)


class ApplicationRegistry:
    """Register, look up and deregister Applications."""

    def __init__(
        self,
        repository: IApplicationRepository,
        reconciler: Optional[ReconcileApplicationUseCase] = None,
    ):
        self.repository = repository
        self.reconciler = reconciler

    async def register(self, app: Application) -> Application:
        """Store a new Application.

        Raises:
            ApplicationExists: If the name is taken
        """
        created = await self.repository.create(app)
        logger.info(
            f"Registered application {app.name} -> {app.destination.server}/"
            f"{app.destination.namespace} (automated={app.sync_policy.automated}, "
            f"prune={app.sync_policy.prune}, self_heal={app.sync_policy.self_heal})"
        )
        return created

    async def get(self, name: str) -> Application:
        return await self.repository.get(name)

    async def list(self) -> list[Application]:
        return await self.repository.list()

    async def deregister(self, name: str, cascade: bool = False) -> Optional[ExecutionReport]:
        """Remove an Application and its history.

        Args:
            name: Application name
            cascade: Delete every live resource the Application owns first

        Returns:
            The pruning report when ``cascade`` is set

        Raises:
            ApplicationNotFound: If the name is not registered
            DestinationUnreachable: If cascade cannot list live resources
            PermanentApplyFailure: If cascade could not delete everything;
                the Application is kept so the operator can retry
        """
        app = await self.repository.get(name)
        report = None
        if cascade:
            report = await self._prune_all(app)
            if report.phase != SyncPhase.SUCCEEDED:
                errors = "; ".join(f"{e.resource}: {e.message}" for e in report.errors)
                raise PermanentApplyFailure(
                    f"Cascade delete of {name} incomplete: {errors or report.phase.value}",
                    identity=name,
                )

        await self.repository.delete(name)
        logger.info(f"Deregistered application {name} (cascade={cascade})")
        return report

    async def _prune_all(self, app: Application) -> ExecutionReport:
        if self.reconciler is None:
            raise RuntimeError("Cascade deregistration needs a reconciler")
        reconciler = self.reconciler

        live = await reconciler.fetch_live(app)
        diff: DiffResult = reconciler.diff_engine.compare(app.name, [], live)
        policy = SyncPolicy(automated=True, prune=True, retry_limit=app.sync_policy.retry_limit)
        decision = reconciler.evaluator.evaluate(
            diff,
            policy,
            app.last_synced_revision or "",
            previous_order=reconciler.previous_order(app),
        )
        logger.info(f"Cascade delete of {app.name}: {len(decision.plan)} owned resource(s)")
        return await reconciler.executor.execute(
            app.name,
            app.destination,
            decision.plan,
            app.sync_policy.retry_limit,
        )

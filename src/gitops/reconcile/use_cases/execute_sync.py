"""Sync Executor use case.

Runs the operations of a SyncPlan one at a time, strictly in plan order:

- Operations carrying a preflight error are Skipped and execution continues.
- Retryable backend failures are retried with exponential backoff, up to the
  policy's retry limit. Exhausting retries is a permanent failure.
- The first permanent failure aborts the run; every later operation is
  reported NotAttempted.
- A cancel event is checked between operations. Once set, the remaining
  operations are NotAttempted and the run ends Cancelled. An operation
  already in progress is allowed to finish.

Every planned operation gets exactly one OperationResult.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from ...common.exceptions import ErrorKind, RetryableApplyFailure, error_kind_of
from ...common.resilience import retry_async
from ..domain.entities import (
    ApplyOutcome,
    Destination,
    ExecutionReport,
    OperationResult,
    OperationStatus,
    OperationType,
    OutcomeType,
    PlannedOperation,
    RecordedError,
    SyncPhase,
    SyncPlan,
)
from ..domain.ports import IExecutorBackend

logger = logging.getLogger(__name__)


class SyncExecutor:
    """Applies SyncPlans through an executor backend.

    Args:
        backend: Port that mutates the destination
        initial_delay: First retry delay in seconds
        backoff_factor: Delay multiplier between retries
        max_delay: Upper bound for a single retry delay
        jitter: Randomize retry delays
    """

    def __init__(
        self,
        backend: IExecutorBackend,
        initial_delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = True,
    ):
        self.backend = backend
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter = jitter

    async def execute(
        self,
        application: str,
        destination: Destination,
        plan: SyncPlan,
        retry_limit: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionReport:
        """Execute a plan and report one result per operation."""
        started_at = datetime.now(timezone.utc)
        results: list[OperationResult] = []
        phase = SyncPhase.SUCCEEDED
        operations = list(plan.operations)

        logger.info(
            f"Executing plan for {application}@{plan.revision} "
            f"({len(operations)} operations, retry_limit={retry_limit})"
        )

        for index, op in enumerate(operations):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"Sync of {application} cancelled before {op.type.value} {op.key}"
                )
                results.extend(self._not_attempted(operations[index:]))
                phase = SyncPhase.CANCELLED
                break

            if op.preflight_error is not None:
                logger.warning(
                    f"Skipping {op.type.value} {op.key}: {op.preflight_error.message}"
                )
                results.append(
                    OperationResult(
                        type=op.type,
                        resource=str(op.key),
                        status=OperationStatus.SKIPPED,
                        attempts=0,
                        error=op.preflight_error,
                    )
                )
                phase = SyncPhase.FAILED
                continue

            result = await self._run(application, destination, op, retry_limit)
            results.append(result)

            if result.status == OperationStatus.FAILED:
                logger.error(
                    f"Aborting sync of {application}: {op.type.value} {op.key} failed "
                    f"after {result.attempts} attempt(s)"
                )
                results.extend(self._not_attempted(operations[index + 1:]))
                phase = SyncPhase.FAILED
                break

        finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Sync of {application}@{plan.revision} {phase.value} in "
            f"{(finished_at - started_at).total_seconds():.2f}s"
        )
        return ExecutionReport(
            phase=phase,
            results=tuple(results),
            started_at=started_at,
            finished_at=finished_at,
        )

    async def _run(
        self,
        application: str,
        destination: Destination,
        op: PlannedOperation,
        retry_limit: int,
    ) -> OperationResult:
        attempts = 0

        async def attempt() -> ApplyOutcome:
            nonlocal attempts
            attempts += 1
            outcome = await self._call_backend(application, destination, op)
            if outcome.type == OutcomeType.RETRYABLE_FAILURE:
                raise RetryableApplyFailure(outcome.reason, identity=str(op.key), attempts=attempts)
            return outcome

        try:
            outcome = await retry_async(
                attempt,
                max_attempts=retry_limit + 1,
                backoff_factor=self.backoff_factor,
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                jitter=self.jitter,
                retryable_exceptions=(RetryableApplyFailure,),
            )
        except RetryableApplyFailure as e:
            return OperationResult(
                type=op.type,
                resource=str(op.key),
                status=OperationStatus.FAILED,
                attempts=attempts,
                error=RecordedError(
                    kind=ErrorKind.PERMANENT_APPLY_FAILURE,
                    message=f"Retries exhausted after {attempts} attempt(s): {e.message}",
                    resource=str(op.key),
                ),
            )

        if outcome.ok:
            status = OperationStatus.APPLIED if op.type == OperationType.APPLY else OperationStatus.DELETED
            logger.debug(f"{op.type.value} {op.key} succeeded (attempts={attempts})")
            return OperationResult(type=op.type, resource=str(op.key), status=status, attempts=attempts)

        return OperationResult(
            type=op.type,
            resource=str(op.key),
            status=OperationStatus.FAILED,
            attempts=attempts,
            error=RecordedError(
                kind=outcome.error_kind or ErrorKind.PERMANENT_APPLY_FAILURE,
                message=outcome.reason or "Backend rejected the operation",
                resource=str(op.key),
            ),
        )

    async def _call_backend(
        self,
        application: str,
        destination: Destination,
        op: PlannedOperation,
    ) -> ApplyOutcome:
        try:
            if op.type == OperationType.APPLY:
                return await self.backend.apply(destination, op.manifest.owned_by(application))
            return await self.backend.delete(destination, op.api_version, op.key)
        except Exception as e:
            # Backends report failures as outcomes; anything raised is a bug
            # or an unexpected transport error and is not retried.
            logger.exception(f"Backend raised during {op.type.value} {op.key}: {e}")
            return ApplyOutcome.permanent(f"{type(e).__name__}: {e}", error_kind_of(e))

    @staticmethod
    def _not_attempted(operations: list[PlannedOperation]) -> list[OperationResult]:
        return [
            OperationResult(
                type=op.type,
                resource=str(op.key),
                status=OperationStatus.NOT_ATTEMPTED,
            )
            for op in operations
        ]

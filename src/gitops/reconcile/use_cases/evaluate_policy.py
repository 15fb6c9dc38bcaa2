"""Sync Policy Evaluator use case.

Turns a DiffResult and an Application's SyncPolicy into an ordered SyncPlan
and decides whether the plan may run without an operator.

Ordering:
- Apply operations come first, grouped by ascending sync wave and, within a
  wave, in the Source Provider's order.
- Delete operations follow, grouped by descending sync wave. Within a wave,
  resources the last successful sync did not know about are deleted first
  (sorted by identity), then known resources in reverse of the order they
  were last synced in.

A dependency declared through the depends-on annotation must be ordered
before its dependent. A dependency that cannot be honored (including any
cycle) invalidates the whole desired set.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ...common.exceptions import ErrorKind, ManifestInvalid, OwnershipConflict
from ..domain.entities import (
    DiffResult,
    OperationType,
    PlannedOperation,
    RecordedError,
    ResourceDiff,
    SyncPlan,
    SyncPolicy,
    SyncStatus,
)
from ..domain.resources import ResourceKey, ResourceManifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of evaluating a diff against a policy.

    Attributes:
        plan: The ordered operations
        auto_execute: True when the policy allows running without an operator
        prune: Whether Extra resources were planned for deletion
        pruning_skipped: Extra resources left in place because prune is off
    """

    plan: SyncPlan
    auto_execute: bool
    prune: bool
    pruning_skipped: tuple[str, ...] = field(default=())


def validate_dependencies(manifests: Sequence[ResourceManifest]) -> None:
    """Check every declared dependency is ordered before its dependent.

    Dependencies outside the desired set are assumed to already exist.

    Raises:
        ManifestInvalid: Whole-set failure naming the first offending pair
    """
    ordered = sorted(manifests, key=lambda m: (m.sync_wave, m.index))
    position = {m.key: i for i, m in enumerate(ordered)}

    for manifest in ordered:
        for dependency in manifest.depends_on:
            if dependency not in position:
                continue
            if dependency == manifest.key:
                raise ManifestInvalid(
                    f"{manifest.key} depends on itself",
                    identity=str(manifest.key),
                )
            if position[dependency] > position[manifest.key]:
                dependent_of_dependency = ordered[position[dependency]]
                if manifest.key in dependent_of_dependency.depends_on:
                    message = f"Dependency cycle between {manifest.key} and {dependency}"
                else:
                    message = f"{manifest.key} depends on {dependency}, which is ordered after it"
                raise ManifestInvalid(message, identity=str(manifest.key))


def preflight_error(diff: ResourceDiff) -> Optional[RecordedError]:
    """Return the error that makes an apply impossible, if any."""
    if diff.has_conflict:
        conflict = OwnershipConflict(str(diff.key), diff.conflict_owner)
        return RecordedError(kind=conflict.kind, message=conflict.message, resource=conflict.identity)
    if diff.manifest is not None and not diff.manifest.is_valid:
        return RecordedError(
            kind=ErrorKind.MANIFEST_INVALID,
            message=diff.manifest.invalid_reason or "Invalid manifest",
            resource=str(diff.key),
        )
    return None


class SyncPolicyEvaluator:
    """Builds SyncPlans. Holds no state between calls."""

    def evaluate(
        self,
        diff: DiffResult,
        policy: SyncPolicy,
        revision: str,
        previous_order: Sequence[ResourceKey] = (),
        prune_override: Optional[bool] = None,
    ) -> PolicyDecision:
        """Build the plan for one diff.

        Args:
            diff: Output of the Diff Engine
            policy: The Application's sync policy
            revision: Concrete revision the plan applies
            previous_order: Resource keys of the last successful sync, in
                apply order; drives delete ordering
            prune_override: Replaces ``policy.prune`` when not None

        Raises:
            ManifestInvalid: When declared dependencies cannot be honored
        """
        manifests = [d.manifest for d in diff.diffs if d.manifest is not None]
        validate_dependencies(manifests)

        prune = policy.prune if prune_override is None else prune_override

        pending_applies = sorted(
            diff.by_status(SyncStatus.MISSING, SyncStatus.OUT_OF_SYNC),
            key=lambda d: (d.wave, d.manifest.index if d.manifest else 0),
        )
        extras = diff.extras
        pending_deletes = self._order_deletes(extras, previous_order) if prune else []

        operations: list[PlannedOperation] = []
        for d in pending_applies:
            operations.append(
                PlannedOperation(
                    type=OperationType.APPLY,
                    key=d.key,
                    api_version=d.api_version,
                    priority=len(operations),
                    manifest=d.manifest,
                    wave=d.wave,
                    preflight_error=preflight_error(d),
                )
            )
        for d in pending_deletes:
            operations.append(
                PlannedOperation(
                    type=OperationType.DELETE,
                    key=d.key,
                    api_version=d.api_version,
                    priority=len(operations),
                    wave=d.wave,
                )
            )

        skipped = () if prune else tuple(str(d.key) for d in extras)
        if skipped:
            logger.info(
                f"{diff.application}: {len(skipped)} extra resource(s) left in place, pruning disabled"
            )

        plan = SyncPlan(application=diff.application, revision=revision, operations=tuple(operations))
        logger.debug(
            f"Plan for {diff.application}@{revision}: "
            f"{len(plan.applies)} apply, {len(plan.deletes)} delete"
        )
        return PolicyDecision(
            plan=plan,
            auto_execute=policy.automated,
            prune=prune,
            pruning_skipped=skipped,
        )

    def _order_deletes(
        self,
        extras: list[ResourceDiff],
        previous_order: Sequence[ResourceKey],
    ) -> list[ResourceDiff]:
        position = {key: i for i, key in enumerate(previous_order)}

        def sort_key(d: ResourceDiff):
            pos = position.get(d.key)
            if pos is None:
                return (-d.wave, 0, 0, d.key)
            return (-d.wave, 1, -pos, d.key)

        return sorted(extras, key=sort_key)

"""Diff Engine use case.

Compares the desired manifests of one Application against the live
resources reported for its destination and classifies every resource:

    InSync      desired and owned live content match after normalization
    OutOfSync   desired and owned live content differ
    Missing     desired, but no live resource owned by this Application
    Extra       owned live resource absent from the desired set

Live resources that are not owned by the Application are never reported.
When such a resource has the same identity as a desired manifest, the
desired entry is reported Missing with ``conflict_owner`` set so the policy
evaluator can refuse to apply over it.

Comparison is by hash of normalized content. Live content is projected onto
the desired field set first, so defaults filled in by the destination do not
count as drift.
"""

import logging
from typing import Iterable, Optional, Sequence

from ..domain.entities import DiffResult, ResourceDiff, SyncStatus
from ..domain.normalize import (
    IgnoreRule,
    desired_hash,
    field_changes,
    live_hash,
    normalize,
    project,
)
from ..domain.resources import LiveResource, ResourceKey, ResourceManifest

logger = logging.getLogger(__name__)


def classify_live(resource: LiveResource, application: str) -> SyncStatus:
    """Classify a live resource with respect to an Application.

    Returns EXTRA for resources the Application owns (callers downgrade to
    InSync/OutOfSync when a desired manifest matches) and UNMANAGED for
    everything else.
    """
    if resource.is_owned_by(application):
        return SyncStatus.EXTRA
    return SyncStatus.UNMANAGED


def conflict_owner_of(resource: LiveResource) -> str:
    """Name the owner of a foreign resource for reporting."""
    if resource.owner is None:
        return "unmanaged"
    return resource.owner.application


class DiffEngine:
    """Pure comparison of desired vs live state.

    Args:
        ignore_rules: Rules applied to every Application in addition to the
            Application's own rules
    """

    def __init__(self, ignore_rules: Sequence[IgnoreRule] = ()):
        self.ignore_rules = list(ignore_rules)

    def compare(
        self,
        application: str,
        desired: Iterable[ResourceManifest],
        live: Iterable[LiveResource],
        ignore_rules: Sequence[IgnoreRule] = (),
    ) -> DiffResult:
        """Compute one DiffResult.

        Desired entries come first in input order, followed by Extra entries
        sorted by identity.
        """
        rules = self.ignore_rules + list(ignore_rules)

        owned: dict[ResourceKey, LiveResource] = {}
        foreign: dict[ResourceKey, LiveResource] = {}
        for resource in live:
            if classify_live(resource, application) == SyncStatus.EXTRA:
                owned[resource.key] = resource
            else:
                foreign.setdefault(resource.key, resource)

        result = DiffResult(application=application)
        desired_keys: set[ResourceKey] = set()

        for manifest in desired:
            desired_keys.add(manifest.key)
            result.diffs.append(
                self._compare_one(manifest, owned.get(manifest.key), foreign.get(manifest.key), rules)
            )

        for key in sorted(k for k in owned if k not in desired_keys):
            resource = owned[key]
            result.diffs.append(
                ResourceDiff(
                    key=key,
                    api_version=resource.api_version,
                    status=SyncStatus.EXTRA,
                    wave=resource.sync_wave,
                )
            )

        logger.debug(f"Diff for {application}: {result.summary}")
        return result

    def _compare_one(
        self,
        manifest: ResourceManifest,
        live: Optional[LiveResource],
        foreign: Optional[LiveResource],
        rules: list[IgnoreRule],
    ) -> ResourceDiff:
        if live is None:
            return ResourceDiff(
                key=manifest.key,
                api_version=manifest.api_version,
                status=SyncStatus.MISSING,
                manifest=manifest,
                conflict_owner=conflict_owner_of(foreign) if foreign is not None else None,
                wave=manifest.sync_wave,
            )

        kind = manifest.kind
        if desired_hash(manifest.content, kind, rules) == live_hash(live.content, manifest.content, kind, rules):
            status = SyncStatus.IN_SYNC
            changes = []
        else:
            status = SyncStatus.OUT_OF_SYNC
            normalized_desired = normalize(manifest.content, kind, rules)
            normalized_live = project(normalize(live.content, kind, rules), normalized_desired)
            changes = field_changes(normalized_desired, normalized_live)

        return ResourceDiff(
            key=manifest.key,
            api_version=manifest.api_version,
            status=status,
            manifest=manifest,
            changes=changes,
            wave=manifest.sync_wave,
        )

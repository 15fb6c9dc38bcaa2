"""Drift Detector use case.

Compares an Application's live resources against the manifest set of its
last successful sync, without consulting the Source Provider. The result
says whether anything drifted and whether the policy allows self-healing it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ...common.exceptions import ManifestInvalid
from ..domain.entities import Application, DiffResult
from ..domain.ports import IManifestMapper
from ..domain.resources import LiveResource, ResourceManifest
from .diff_resources import DiffEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftReport:
    """What one drift check found.

    Attributes:
        diff: Comparison of live state against the last synced manifests
        drifted: True when anything is OutOfSync, Missing, or prunable Extra
        correctable: True when the policy allows an automatic correction
    """

    application: str
    revision: Optional[str]
    diff: DiffResult
    drifted: bool
    correctable: bool

    @property
    def drifted_resources(self) -> list[str]:
        return [str(d.key) for d in self.diff.diffs if d.has_drift]


def parse_manifests(
    mapper: IManifestMapper,
    raw_manifests: list[Any],
    default_namespace: str,
) -> list[ResourceManifest]:
    """Map raw manifests and reject duplicate identities.

    Raises:
        ManifestInvalid: For a manifest without identity or a duplicate
    """
    manifests: list[ResourceManifest] = []
    seen = set()
    for index, raw in enumerate(raw_manifests):
        manifest = mapper.map_to_manifest(raw, index, default_namespace)
        if manifest.key in seen:
            raise ManifestInvalid(
                f"Resource {manifest.key} appears more than once",
                identity=str(manifest.key),
            )
        seen.add(manifest.key)
        manifests.append(manifest)
    return manifests


class DriftDetector:
    def __init__(self, mapper: IManifestMapper, diff_engine: DiffEngine):
        self.mapper = mapper
        self.diff_engine = diff_engine

    def last_synced(self, app: Application) -> list[ResourceManifest]:
        return parse_manifests(self.mapper, app.last_synced_manifests, app.destination.namespace)

    def detect(self, app: Application, live: list[LiveResource]) -> DriftReport:
        """Diff live state against the last synced manifests.

        Extra resources only count as drift when the policy prunes; without
        pruning nothing would be done about them.
        """
        policy = app.sync_policy
        diff = self.diff_engine.compare(app.name, self.last_synced(app), live, app.ignore_rules)
        drifted = app.ever_synced and diff.has_drift(include_extras=policy.prune)
        correctable = drifted and policy.automated and policy.self_heal

        if drifted:
            logger.info(
                f"Drift detected for {app.name}: {diff.summary} "
                f"({'self-heal' if correctable else 'report only'})"
            )
        return DriftReport(
            application=app.name,
            revision=app.last_synced_revision,
            diff=diff,
            drifted=drifted,
            correctable=correctable,
        )

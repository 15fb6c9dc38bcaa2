"""In-memory Source Provider, Live State Provider and Executor backend.

These adapters stand in for a real repository and runtime during local
development (no PROVIDER_FACTORY configured) and in tests. The cluster keeps
objects per destination server, fills in the runtime fields a real runtime
injects, keeps status across applies and bumps ``metadata.generation`` when
the spec changes. Failures can be scripted per resource.
"""

import copy
import itertools
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from ...common.exceptions import DestinationUnreachable, RevisionNotFound, SourceUnavailable
from ..domain.entities import ApplyOutcome, Destination, ResolvedSource, SourceRef
from ..domain.ports import IExecutorBackend, ILiveStateProvider, ISourceProvider
from ..domain.resources import LiveResource, ResourceKey, scoped_namespace

logger = logging.getLogger(__name__)


class InMemorySourceProvider(ISourceProvider):
    """Serves manifest sets from a dict of revisions per repository.

    Revision pointers (branches) map to concrete revisions via ``refs``;
    anything else must be a concrete revision itself.
    """

    def __init__(self):
        self.revisions: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self.refs: dict[str, dict[str, str]] = {}
        self.available = True
        self.resolve_calls = 0

    def publish(
        self,
        repo_url: str,
        revision: str,
        manifests: list[dict[str, Any]],
        ref: Optional[str] = "HEAD",
    ) -> None:
        """Add a revision and (by default) point HEAD at it."""
        self.revisions.setdefault(repo_url, {})[revision] = copy.deepcopy(manifests)
        if ref:
            self.refs.setdefault(repo_url, {})[ref] = revision

    async def resolve(self, source: SourceRef, revision: str) -> ResolvedSource:
        self.resolve_calls += 1
        if not self.available:
            raise SourceUnavailable(f"Repository {source.repo_url} unavailable", repo_url=source.repo_url)

        revisions = self.revisions.get(source.repo_url)
        if revisions is None:
            raise SourceUnavailable(f"Unknown repository {source.repo_url}", repo_url=source.repo_url)

        concrete = self.refs.get(source.repo_url, {}).get(revision, revision)
        if concrete not in revisions:
            raise RevisionNotFound(revision, repo_url=source.repo_url)
        return ResolvedSource(revision=concrete, manifests=copy.deepcopy(revisions[concrete]))


class InMemoryCluster(ILiveStateProvider, IExecutorBackend):
    """A fake runtime holding objects per destination server."""

    def __init__(self):
        self.objects: dict[str, dict[ResourceKey, dict[str, Any]]] = {}
        self.unreachable: set[str] = set()
        self.operations: list[tuple[str, str]] = []
        self._scripted: dict[tuple[str, str], deque] = {}
        self._uids = itertools.count(1)
        self._versions = itertools.count(1)

    # ------------------------------------------------------------------
    # Test and development helpers
    # ------------------------------------------------------------------

    def script(self, operation: str, resource: str, *outcomes: ApplyOutcome) -> None:
        """Queue outcomes returned instead of performing ``operation`` on ``resource``.

        ``operation`` is "apply" or "delete"; ``resource`` is the string form
        of a ResourceKey.
        """
        self._scripted.setdefault((operation, resource), deque()).extend(outcomes)

    def put(self, server: str, obj: dict[str, Any], default_namespace: str = "default") -> ResourceKey:
        """Create or replace an object out of band, as another actor would."""
        key = self._key(obj, default_namespace)
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        if key.namespace:
            metadata["namespace"] = key.namespace
        self.objects.setdefault(server, {})[key] = stored
        return key

    def get(self, server: str, key: ResourceKey) -> Optional[dict[str, Any]]:
        return self.objects.get(server, {}).get(key)

    def set_status(self, server: str, key: ResourceKey, status: dict[str, Any]) -> None:
        self.objects[server][key]["status"] = copy.deepcopy(status)

    def mutate(self, server: str, key: ResourceKey, path: list[str], value: Any) -> None:
        """Change one field in place, as an out-of-band edit would."""
        target = self.objects[server][key]
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value

    # ------------------------------------------------------------------
    # ILiveStateProvider
    # ------------------------------------------------------------------

    async def list_resources(self, destination: Destination, tracking_selector: str) -> list[LiveResource]:
        if destination.server in self.unreachable:
            raise DestinationUnreachable(
                f"Cannot reach {destination.server}",
                server=destination.server,
            )
        objects = self.objects.get(destination.server, {})
        return [
            LiveResource.from_object(copy.deepcopy(obj), destination.namespace)
            for obj in objects.values()
        ]

    # ------------------------------------------------------------------
    # IExecutorBackend
    # ------------------------------------------------------------------

    async def apply(self, destination: Destination, manifest: dict[str, Any]) -> ApplyOutcome:
        key = self._key(manifest, destination.namespace)
        self.operations.append(("apply", str(key)))
        scripted = self._next_scripted("apply", str(key))
        if scripted is not None:
            return scripted
        if destination.server in self.unreachable:
            return ApplyOutcome.retryable(f"Cannot reach {destination.server}")

        objects = self.objects.setdefault(destination.server, {})
        existing = objects.get(key)
        stored = copy.deepcopy(manifest)
        metadata = stored.setdefault("metadata", {})

        if existing is None:
            metadata["uid"] = f"uid-{next(self._uids)}"
            metadata["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
            metadata["generation"] = 1
        else:
            old_meta = existing.get("metadata", {})
            metadata["uid"] = old_meta.get("uid")
            metadata["creationTimestamp"] = old_meta.get("creationTimestamp")
            generation = old_meta.get("generation", 1)
            if existing.get("spec") != stored.get("spec"):
                generation += 1
            metadata["generation"] = generation
            if "status" in existing:
                stored["status"] = existing["status"]
        metadata["resourceVersion"] = str(next(self._versions))

        objects[key] = stored
        logger.debug(f"Applied {key} on {destination.server}")
        return ApplyOutcome.success()

    async def delete(self, destination: Destination, api_version: str, key: ResourceKey) -> ApplyOutcome:
        self.operations.append(("delete", str(key)))
        scripted = self._next_scripted("delete", str(key))
        if scripted is not None:
            return scripted
        if destination.server in self.unreachable:
            return ApplyOutcome.retryable(f"Cannot reach {destination.server}")

        # Deleting something already gone counts as done
        self.objects.get(destination.server, {}).pop(key, None)
        logger.debug(f"Deleted {key} on {destination.server}")
        return ApplyOutcome.success()

    def _next_scripted(self, operation: str, resource: str) -> Optional[ApplyOutcome]:
        queue = self._scripted.get((operation, resource))
        if queue:
            return queue.popleft()
        return None

    @staticmethod
    def _key(obj: dict[str, Any], default_namespace: str) -> ResourceKey:
        metadata = obj.get("metadata") or {}
        kind = obj.get("kind", "")
        return ResourceKey(
            namespace=scoped_namespace(kind, metadata.get("namespace"), default_namespace),
            kind=kind,
            name=metadata.get("name", ""),
        )

"""Port interfaces for reconciliation.

Ports define the contracts between the use cases and the infrastructure.
These are abstract base classes that adapters must implement.

Following the Hexagonal Architecture (Ports and Adapters) pattern:
- Ports are interfaces defined in the domain layer
- Adapters implement these ports in the adapters layer
- Use cases depend only on ports, not concrete implementations
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from .entities import Application, ApplyOutcome, Destination, ResolvedSource, SourceRef, SyncRecord
from .resources import LiveResource, ResourceKey, ResourceManifest


class ISourceProvider(ABC):
    """Port for resolving desired state.

    Authentication, cloning and templating are the provider's business.
    """

    @abstractmethod
    async def resolve(self, source: SourceRef, revision: str) -> ResolvedSource:
        """Resolve a revision pointer to a concrete revision and manifests.

        Args:
            source: Repository reference and path
            revision: Revision pointer (branch, tag, commit)

        Returns:
            ResolvedSource with the concrete revision id and the ordered
            raw manifests

        Raises:
            SourceUnavailable: If the repository cannot be read
            RevisionNotFound: If the pointer does not resolve
        """
        ...


class ILiveStateProvider(ABC):
    """Port for reading live state from a destination."""

    @abstractmethod
    async def list_resources(
        self,
        destination: Destination,
        tracking_selector: str,
    ) -> list[LiveResource]:
        """List live resources relevant to an Application.

        Implementations return every resource tagged with the selector and
        any resource whose identity may collide with desired state; the
        Diff Engine filters by ownership.

        Raises:
            DestinationUnreachable: If the destination cannot be reached
        """
        ...


class IExecutorBackend(ABC):
    """Port for mutating the destination.

    Failures are reported as outcomes, not exceptions.
    """

    @abstractmethod
    async def apply(self, destination: Destination, manifest: dict[str, Any]) -> ApplyOutcome:
        """Create or update one resource from a stamped manifest."""
        ...

    @abstractmethod
    async def delete(
        self,
        destination: Destination,
        api_version: str,
        key: ResourceKey,
    ) -> ApplyOutcome:
        """Delete one resource by identity."""
        ...


class IManifestMapper(ABC):
    """Port for turning raw Source Provider output into ResourceManifests."""

    @abstractmethod
    def map_to_manifest(
        self,
        raw: Any,
        index: int,
        default_namespace: str,
    ) -> ResourceManifest:
        """Parse one raw manifest.

        A manifest whose identity is usable but whose content is not is
        returned with ``invalid_reason`` set.

        Raises:
            ManifestInvalid: When no identity can be determined
        """
        ...


class IApplicationRepository(ABC):
    """Port for Application and SyncRecord persistence.

    History is append-only: implementations never update or delete a
    SyncRecord except when the whole Application is deregistered.
    """

    @abstractmethod
    async def create(self, app: Application) -> Application:
        """Persist a new Application.

        Raises:
            ApplicationExists: If the name is taken
        """
        ...

    @abstractmethod
    async def get(self, name: str) -> Application:
        """Load an Application with its full history.

        Raises:
            ApplicationNotFound: If the name is not registered
        """
        ...

    @abstractmethod
    async def list(self) -> list[Application]:
        """Load every registered Application."""
        ...

    @abstractmethod
    async def save_status(self, app: Application) -> None:
        """Persist the engine-owned status fields of an Application."""
        ...

    @abstractmethod
    async def record_sync(self, app: Application, record: SyncRecord) -> None:
        """Append a SyncRecord and save status atomically."""
        ...

    @abstractmethod
    async def get_history(self, name: str, limit: Optional[int] = None) -> list[SyncRecord]:
        """Return history in append order (the newest ``limit`` when given)."""
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Remove an Application and its history.

        Raises:
            ApplicationNotFound: If the name is not registered
        """
        ...

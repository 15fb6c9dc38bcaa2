"""Adapters layer - Infrastructure implementations for reconciliation.

This layer contains concrete implementations of the ports defined in the domain layer:
- ManifestMapper: Raw manifest parsing implementation of IManifestMapper
- PostgresApplicationRepository: PostgreSQL implementation of IApplicationRepository
- InMemoryApplicationRepository: Dict-backed implementation of IApplicationRepository
- InMemorySourceProvider: Development implementation of ISourceProvider
- InMemoryCluster: Development implementation of ILiveStateProvider and IExecutorBackend
"""

from .in_memory_cluster import InMemoryCluster, InMemorySourceProvider
from .manifest_mapper import ManifestMapper
from .memory_application_repo import InMemoryApplicationRepository
from .postgres_application_repo import PostgresApplicationRepository

__all__ = [
    # Repositories
    "InMemoryApplicationRepository",
    "PostgresApplicationRepository",
    # Providers
    "InMemoryCluster",
    "InMemorySourceProvider",
    "ManifestMapper",
]

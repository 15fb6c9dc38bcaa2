"""Shared fixtures for reconciler tests.

Builders return plain dicts in the shape a Source Provider emits; the
in-memory cluster and source provider stand in for the real ports.
"""

import sys
from typing import Any, Optional

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from src.gitops.reconcile.adapters import (
    InMemoryApplicationRepository,
    InMemoryCluster,
    InMemorySourceProvider,
    ManifestMapper,
)
from src.gitops.reconcile.domain.entities import (
    Application,
    Destination,
    SourceRef,
    SyncPolicy,
)
from src.gitops.reconcile.use_cases import (
    ApplicationRegistry,
    ReconcileApplicationUseCase,
    SyncExecutor,
)

REPO_URL = "https://git.example.com/platform/shop.git"
SERVER = "https://cluster-a.example.com"


def deployment(
    name: str = "web",
    replicas: int = 3,
    image: str = "nginx:1.25",
    annotations: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }


def config_map(name: str = "settings", data: Optional[dict[str, str]] = None, annotations=None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": metadata,
        "data": data if data is not None else {"mode": "production"},
    }


def service(name: str = "web", annotations=None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {"selector": {"app": name}, "ports": [{"port": 80}]},
    }


def healthy_deployment_status(replicas: int = 3, generation: int = 1) -> dict[str, Any]:
    return {
        "observedGeneration": generation,
        "replicas": replicas,
        "updatedReplicas": replicas,
        "readyReplicas": replicas,
        "availableReplicas": replicas,
    }


def make_app(
    name: str = "shop",
    automated: bool = False,
    prune: bool = False,
    self_heal: bool = False,
    retry_limit: int = 2,
    namespace: str = "shop",
    server: str = SERVER,
) -> Application:
    return Application(
        name=name,
        source=SourceRef(repo_url=REPO_URL, target_revision="HEAD", path="."),
        destination=Destination(server=server, namespace=namespace),
        sync_policy=SyncPolicy(
            automated=automated,
            prune=prune,
            self_heal=self_heal,
            retry_limit=retry_limit,
        ),
    )


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def source() -> InMemorySourceProvider:
    return InMemorySourceProvider()


@pytest.fixture
def repository() -> InMemoryApplicationRepository:
    return InMemoryApplicationRepository()


@pytest.fixture
def reconciler(repository, source, cluster) -> ReconcileApplicationUseCase:
    """Full pipeline over in-memory ports, with retries that do not sleep."""
    return ReconcileApplicationUseCase(
        repository=repository,
        source_provider=source,
        live_provider=cluster,
        backend=cluster,
        mapper=ManifestMapper(),
        executor=SyncExecutor(cluster, initial_delay=0, jitter=False),
    )


@pytest.fixture
def registry(repository, reconciler) -> ApplicationRegistry:
    return ApplicationRegistry(repository, reconciler)

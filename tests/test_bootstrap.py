"""Tests for building the controller from configuration."""

import sys

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from src.gitops.bootstrap import create_controller, load_providers, shutdown_controller
from src.gitops.common.exceptions import ConfigurationError
from src.gitops.config import ReconcilerConfig
from src.gitops.reconcile.adapters import (
    InMemoryApplicationRepository,
    InMemoryCluster,
    InMemorySourceProvider,
)

ENV_VARS = ["DATABASE_URL", "PROVIDER_FACTORY", "RECONCILE_WORKERS", "IGNORE_PATHS"]


def cluster_factory():
    cluster = InMemoryCluster()
    return InMemorySourceProvider(), cluster, cluster


def broken_factory():
    return InMemorySourceProvider(), None


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadProviders:
    def test_defaults_to_in_memory(self):
        source, live, backend = load_providers(None)
        assert isinstance(source, InMemorySourceProvider)
        assert live is backend

    def test_factory(self):
        source, live, backend = load_providers(f"{__name__}:cluster_factory")
        assert isinstance(live, InMemoryCluster)

    @pytest.mark.parametrize(
        "factory",
        ["no_such_module:factory", f"{__name__}:missing", f"{__name__}:broken_factory"],
    )
    def test_bad_factory(self, factory):
        with pytest.raises(ConfigurationError):
            load_providers(factory)


class TestCreateController:
    @pytest.mark.asyncio
    async def test_in_memory_controller(self, monkeypatch):
        monkeypatch.setenv("RECONCILE_WORKERS", "3")
        monkeypatch.setenv("IGNORE_PATHS", "/metadata/labels")

        controller, pool = await create_controller(ReconcilerConfig())

        assert pool is None
        assert controller.workers == 3
        assert isinstance(controller.registry.repository, InMemoryApplicationRepository)
        assert [str(r) for r in controller.reconciler.diff_engine.ignore_rules] == ["/metadata/labels"]

        await controller.start(initial_refresh=False)
        assert controller.running
        await shutdown_controller(controller, pool)
        assert not controller.running

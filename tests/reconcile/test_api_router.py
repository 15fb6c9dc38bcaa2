"""Tests for the operator API router.

The router is mounted on a bare FastAPI app with a controller built over
the in-memory ports, so requests run the real reconcile pipeline.
"""

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from conftest import REPO_URL, SERVER, config_map, deployment
from src.gitops.controller import ReconcileController
from src.gitops.reconcile.api import dependencies
from src.gitops.reconcile.api.router import router
from src.gitops.reconcile.domain.entities import ApplyOutcome
from src.gitops.reconcile.domain.resources import ResourceKey

SETTINGS = ResourceKey("shop", "ConfigMap", "settings")


def registration(name: str = "shop", **policy) -> dict:
    return {
        "name": name,
        "source": {"repo_url": REPO_URL},
        "destination": {"server": SERVER, "namespace": "shop"},
        "sync_policy": policy,
    }


@pytest_asyncio.fixture
async def controller(reconciler, registry):
    ctrl = ReconcileController(reconciler, registry, workers=1, refresh_interval=0, drift_interval=0)
    await ctrl.start(initial_refresh=False)
    yield ctrl
    await ctrl.stop()


@pytest_asyncio.fixture
async def client(controller, monkeypatch):
    monkeypatch.setenv("DISABLE_AUTH", "true")
    dependencies.set_controller(controller)
    api = FastAPI()
    api.include_router(router)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=api), base_url="http://test") as c:
        yield c
    dependencies.set_controller(None)


async def register_synced(client, controller, source, **policy):
    source.publish(REPO_URL, "r1", [config_map()])
    response = await client.post("/api/applications", json=registration(automated=True, **policy))
    assert response.status_code == 201
    await controller.wait_until_idle(timeout=2)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register(self, client, controller):
        body = registration(prune=True)
        body["ignore_rules"] = ["Deployment:/spec/replicas"]

        response = await client.post("/api/applications", json=body)

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "shop"
        assert data["sync_policy"] == {"automated": False, "prune": True, "self_heal": False, "retry_limit": 5}
        assert data["ignore_rules"] == ["Deployment:/spec/replicas"]
        assert data["sync_status"] == "Unknown"
        assert data["pending_trigger"] == "refresh"

    @pytest.mark.asyncio
    async def test_duplicate_name(self, client, controller):
        await client.post("/api/applications", json=registration())
        response = await client.post("/api/applications", json=registration())
        assert response.status_code == 409

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            registration(name="Not_Valid"),
            {"name": "shop", "destination": {"server": SERVER}},
            registration(retry_limit=-1),
            {**registration(), "ignore_rules": ["spec/replicas"]},
        ],
    )
    async def test_invalid_registration(self, client, body):
        response = await client.post("/api/applications", json=body)
        assert response.status_code == 422


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_and_get(self, client, controller, source):
        await register_synced(client, controller, source)

        listing = (await client.get("/api/applications")).json()
        assert listing["total"] == 1

        data = (await client.get("/api/applications/shop")).json()
        assert data["sync_status"] == "Synced"
        assert data["last_synced_revision"] == "r1"
        assert data["history_length"] == 1
        assert [r["resource"] for r in data["resources"]] == ["ConfigMap/shop/settings"]
        assert data["in_flight"] is False

    @pytest.mark.asyncio
    async def test_unknown_application(self, client):
        for path in ("", "/health", "/history"):
            response = await client.get(f"/api/applications/nope{path}")
            assert response.status_code == 404
            assert "nope" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_health(self, client, controller, source):
        await register_synced(client, controller, source)

        data = (await client.get("/api/applications/shop/health")).json()

        assert data["application"] == "shop"
        assert data["sync_status"] == "Synced"
        assert data["resources"][0]["kind"] == "ConfigMap"

    @pytest.mark.asyncio
    async def test_history_with_limit(self, client, controller, source):
        await register_synced(client, controller, source)
        source.publish(REPO_URL, "r2", [config_map(data={"mode": "staging"})])
        await client.post("/api/applications/shop/refresh", json={"revision": "r2"})
        await controller.wait_until_idle(timeout=2)

        full = (await client.get("/api/applications/shop/history")).json()
        latest = (await client.get("/api/applications/shop/history", params={"limit": 1})).json()

        assert [r["revision"] for r in full["records"]] == ["r1", "r2"]
        assert [r["id"] for r in latest["records"]] == [2]
        assert latest["records"][0]["status"] == "Succeeded"
        assert latest["records"][0]["results"][0]["status"] == "Applied"

    @pytest.mark.asyncio
    async def test_history_limit_validated(self, client, controller, source):
        await register_synced(client, controller, source)
        response = await client.get("/api/applications/shop/history", params={"limit": 0})
        assert response.status_code == 422


class TestTriggers:
    @pytest.mark.asyncio
    async def test_manual_sync(self, client, controller, source, cluster):
        source.publish(REPO_URL, "r1", [config_map()])
        await client.post("/api/applications", json=registration())
        await controller.wait_until_idle(timeout=2)
        assert cluster.get(SERVER, SETTINGS) is None

        response = await client.post("/api/applications/shop/sync", json={"prune": True})
        await controller.wait_until_idle(timeout=2)

        assert response.status_code == 202
        assert response.json() == {"application": "shop", "trigger": "manual", "revision": None, "queued": True}
        assert cluster.get(SERVER, SETTINGS) is not None

    @pytest.mark.asyncio
    async def test_sync_without_body(self, client, controller, source):
        await register_synced(client, controller, source)
        response = await client.post("/api/applications/shop/sync")
        assert response.status_code == 202

    @pytest.mark.asyncio
    async def test_refresh(self, client, controller, source):
        await register_synced(client, controller, source)

        response = await client.post("/api/applications/shop/refresh", json={"revision": "abc"})

        assert response.status_code == 202
        assert response.json()["trigger"] == "refresh"
        assert response.json()["revision"] == "abc"

    @pytest.mark.asyncio
    async def test_rollback_by_history_id(self, client, controller, source):
        await register_synced(client, controller, source)

        response = await client.post("/api/applications/shop/rollback", json={"history_id": 1})

        assert response.status_code == 202
        assert response.json()["trigger"] == "rollback"
        assert response.json()["revision"] == "r1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"history_id": 9}, {"revision": "r1", "history_id": 1}])
    async def test_invalid_rollback(self, client, controller, source, body):
        await register_synced(client, controller, source)
        response = await client.post("/api/applications/shop/rollback", json=body)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_triggers_on_unknown_application(self, client):
        for action, body in (("sync", {}), ("refresh", {}), ("rollback", {"revision": "r1"})):
            response = await client.post(f"/api/applications/nope/{action}", json=body)
            assert response.status_code == 404


class TestDeregistration:
    @pytest.mark.asyncio
    async def test_without_cascade_keeps_resources(self, client, controller, source, cluster):
        await register_synced(client, controller, source)

        response = await client.delete("/api/applications/shop")

        assert response.json() == {"application": "shop", "cascade": False, "deleted_resources": []}
        assert cluster.get(SERVER, SETTINGS) is not None
        assert (await client.get("/api/applications/shop")).status_code == 404

    @pytest.mark.asyncio
    async def test_cascade(self, client, controller, source, cluster):
        source.publish(REPO_URL, "r1", [config_map(), deployment()])
        await client.post("/api/applications", json=registration(automated=True))
        await controller.wait_until_idle(timeout=2)

        response = await client.delete("/api/applications/shop", params={"cascade": "true"})

        assert response.status_code == 200
        assert response.json()["deleted_resources"] == ["Deployment/shop/web", "ConfigMap/shop/settings"]
        assert cluster.get(SERVER, SETTINGS) is None

    @pytest.mark.asyncio
    async def test_cascade_failure(self, client, controller, source, cluster):
        await register_synced(client, controller, source)
        cluster.script("delete", str(SETTINGS), ApplyOutcome.permanent("finalizer stuck"))

        response = await client.delete("/api/applications/shop", params={"cascade": "true"})

        assert response.status_code == 502
        assert "finalizer stuck" in response.json()["detail"]
        assert (await client.get("/api/applications/shop")).status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_application(self, client):
        assert (await client.delete("/api/applications/nope")).status_code == 404


class TestAuthentication:
    @pytest_asyncio.fixture
    async def secured(self, controller, monkeypatch):
        monkeypatch.delenv("DISABLE_AUTH", raising=False)
        monkeypatch.setenv("API_KEY", "secret-key")
        monkeypatch.setattr(dependencies, "_api_key", None)
        dependencies.set_controller(controller)
        api = FastAPI()
        api.include_router(router)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=api), base_url="http://test") as c:
            yield c
        dependencies.set_controller(None)

    @pytest.mark.asyncio
    async def test_missing_key(self, secured):
        response = await secured.get("/api/applications")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "ApiKey"

    @pytest.mark.asyncio
    async def test_wrong_key(self, secured):
        response = await secured.get("/api/applications", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_key(self, secured):
        response = await secured.get("/api/applications", headers={"X-API-Key": "secret-key"})
        assert response.status_code == 200
        assert response.json() == {"applications": [], "total": 0}

    @pytest.mark.asyncio
    async def test_fail_closed_without_configured_key(self, controller, monkeypatch):
        monkeypatch.delenv("DISABLE_AUTH", raising=False)
        monkeypatch.setenv("API_KEY", "")
        monkeypatch.setattr(dependencies, "_api_key", None)
        dependencies.set_controller(controller)
        api = FastAPI()
        api.include_router(router)
        try:
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=api), base_url="http://test") as c:
                response = await c.get("/api/applications", headers={"X-API-Key": "anything"})
        finally:
            dependencies.set_controller(None)

        assert response.status_code == 500

"""FastAPI application for the GitOps reconciler.

This is the main entry point for the operator API server. The reconcile
controller runs inside the same event loop; use ``scheduler.py`` to run
the controller without the HTTP API.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .common.database import check_database_health
from .reconcile.api.dependencies import (
    close_controller,
    get_db_pool,
    init_controller,
    peek_controller,
)
from .reconcile.api.router import router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    - Startup: build the controller (repository, providers) and start it
    - Shutdown: stop the controller and close the database pool
    """
    logger.info("Starting GitOps Reconciler API...")

    try:
        await init_controller()
        logger.info("Reconcile controller started")
    except Exception as e:
        logger.error(f"Failed to initialize reconcile controller: {e}")
        raise

    yield

    logger.info("Shutting down GitOps Reconciler API...")
    await close_controller()


app = FastAPI(
    title="GitOps Reconciler API",
    description="""
    Continuously converges target environments onto the state declared in
    version-controlled manifests.

    ## Features

    - **Applications**: Register, inspect and deregister Applications
    - **Sync**: Trigger manual syncs, webhook refreshes and rollbacks
    - **Health**: Aggregated health of the resources an Application owns
    - **History**: Append-only record of every sync
    """,
    version="1.0.0",
    lifespan=lifespan,
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-API-Key"],
)

app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "GitOps Reconciler API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health():
    """Liveness check with controller and database status."""
    controller = peek_controller()
    body = {
        "status": "healthy" if controller is not None and controller.running else "starting",
        "controller": controller.get_status() if controller is not None else None,
    }
    pool = get_db_pool()
    if pool is not None:
        body["database"] = await check_database_health(pool)
        if not body["database"]["healthy"]:
            body["status"] = "degraded"
    return body


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.gitops.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )

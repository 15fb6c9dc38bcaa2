#!/usr/bin/env python3
"""Reconcile Controller process for the GitOps reconciler.

This module runs the reconcile controller as a long-running process
without the operator API. Designed to run as the main process of a host or
service unit next to (or instead of) the API server.

Architecture:
    - Worker pool plus refresh and drift tickers (see src/gitops/controller)
    - Graceful shutdown on SIGTERM/SIGINT
    - Configurable via environment variables
    - Health check endpoint via optional HTTP server

Environment Variables:
    RECONCILE_WORKERS: Worker tasks (default: 4)
    REFRESH_INTERVAL_SECONDS: Seconds between source polls (default: 180, minimum: 1)
    DRIFT_INTERVAL_SECONDS: Seconds between drift checks (default: 60, minimum: 1)
    RETRY_INITIAL_DELAY_SECONDS, RETRY_BACKOFF_FACTOR, RETRY_MAX_DELAY_SECONDS:
        Executor backoff (defaults: 1.0, 2.0, 60.0)
    IGNORE_PATHS: Comma-separated global ignore rules ("Kind:/ptr" or "/ptr")
    DESTINATION_FAILURE_THRESHOLD, DESTINATION_RESET_SECONDS:
        Destination circuit breaker (defaults: 3, 120)
    PROVIDER_FACTORY: "module:callable" returning the providers
    HEALTH_CHECK_PORT: Port for health check endpoint (default: 8080, 0 to disable)

    Database:
        DATABASE_URL (unset keeps state in memory)

Example:
    # Poll sources every minute, check drift every 30 seconds
    REFRESH_INTERVAL_SECONDS=60 DRIFT_INTERVAL_SECONDS=30 python scheduler.py

    # Persist state and load the cluster providers from a factory
    DATABASE_URL=... PROVIDER_FACTORY=mycluster:providers python scheduler.py
"""
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.gitops.bootstrap import create_controller, shutdown_controller
from src.gitops.common.exceptions import ConfigurationError
from src.gitops.config import ReconcilerConfig
from src.gitops.controller import ReconcileController

logger = logging.getLogger(__name__)


# ============================================
# Health Check Server
# ============================================

class HealthState:
    """Shared state for health checks."""

    def __init__(self):
        self.controller: Optional[ReconcileController] = None

    @property
    def healthy(self) -> bool:
        return self.controller is not None and self.controller.running

    def to_dict(self) -> dict:
        if self.controller is None:
            return {"status": "starting"}
        stats = self.controller.stats.to_dict()
        return {
            "status": "healthy" if self.healthy else "unhealthy",
            "uptime_seconds": stats["uptime_seconds"],
            "total_runs": stats["total_runs"],
            "failed_runs": stats["failed_runs"],
            "crashed_runs": stats["crashed_runs"],
            "last_run_at": stats["last_run_at"] or "never",
            "queue": self.controller.queue.get_status(),
        }


async def health_check_handler(reader, writer, state: HealthState):
    """Handle HTTP health check requests."""
    # Request content is ignored
    await reader.read(1024)

    body = json.dumps(state.to_dict())
    http_status = 200 if state.healthy else 503
    response = (
        f"HTTP/1.1 {http_status} {'OK' if http_status == 200 else 'Service Unavailable'}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    )

    writer.write(response.encode())
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def start_health_server(port: int, state: HealthState):
    """Start the health check HTTP server."""
    if port <= 0:
        return None

    async def handler(reader, writer):
        await health_check_handler(reader, writer, state)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info(f"Health check server listening on port {port}")
    return server


# ============================================
# Main Entry Point
# ============================================

async def main():
    """Main entry point for the controller process."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    print("=" * 60)
    print("GitOps Reconcile Controller")
    print("=" * 60)

    try:
        config = ReconcilerConfig()
        controller, pool = await create_controller(config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    logger.info(f"Config: {config}")

    health_state = HealthState()
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    health_server = await start_health_server(config.health_check_port, health_state)

    try:
        await controller.start()
        health_state.controller = controller
        await shutdown_event.wait()
        logger.info("Shutdown requested")
    finally:
        logger.info("Cleaning up...")

        if health_server:
            health_server.close()
            await health_server.wait_closed()

        await shutdown_controller(controller, pool)

        logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())

"""FastAPI dependency injection for the operator API.

Lifecycle Management:
- The reconcile controller (with its repository and providers) is built
  at startup, shared across requests and stopped at shutdown
- The database pool, when DATABASE_URL is set, is owned by the controller
  setup and closed with it

Security:
- API key authentication required for all endpoints (except /health)
- Set API_KEY environment variable to enable authentication
- Set DISABLE_AUTH=true to disable authentication (development only)
"""

import logging
import os
import secrets
from typing import Any, Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ...bootstrap import create_controller, shutdown_controller
from ...config import ReconcilerConfig
from ...controller import ReconcileController

logger = logging.getLogger(__name__)

# ========== API Key Authentication ==========

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

_api_key: Optional[str] = None


def _get_api_key() -> Optional[str]:
    """Get the API key from environment (cached)."""
    global _api_key
    if _api_key is None:
        _api_key = os.getenv("API_KEY", "")
    return _api_key if _api_key else None


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> bool:
    """Verify the API key from the request header.

    Security model:
    - If DISABLE_AUTH=true (dev mode): authentication is disabled
    - Otherwise: API_KEY is required (fail-closed)

    Raises:
        HTTPException: 401 if API key is missing or invalid, 500 if the
            server has no API_KEY configured
    """
    if os.getenv("DISABLE_AUTH", "").lower() == "true":
        logger.warning("Authentication disabled (DISABLE_AUTH=true). Only use this in development!")
        return True

    expected_key = _get_api_key()

    if not expected_key:
        logger.error(
            "API_KEY not set - rejecting request. "
            "Set API_KEY environment variable or DISABLE_AUTH=true for development."
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: API_KEY not set",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Constant-time comparison
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return True


# ========== Global State ==========

_controller: Optional[ReconcileController] = None
_pool: Any = None
_config: Optional[ReconcilerConfig] = None


async def init_controller(config: Optional[ReconcilerConfig] = None, start: bool = True) -> ReconcileController:
    """Build and start the reconcile controller.

    Should be called on application startup.
    """
    global _controller, _pool, _config

    _config = config or ReconcilerConfig()
    _controller, _pool = await create_controller(_config)
    if start:
        await _controller.start()
    return _controller


async def close_controller() -> None:
    """Stop the controller and close the database pool.

    Should be called on application shutdown.
    """
    global _controller, _pool

    if _controller is not None:
        await shutdown_controller(_controller, _pool)
        logger.info("Reconcile controller closed")
    _controller = None
    _pool = None


def set_controller(controller: Optional[ReconcileController], config: Optional[ReconcilerConfig] = None) -> None:
    """Install a prebuilt controller (tests and embedded use)."""
    global _controller, _config
    _controller = controller
    _config = config


# ========== Dependency Functions ==========


def get_controller() -> ReconcileController:
    """Get the shared reconcile controller."""
    if _controller is None:
        raise RuntimeError("Controller not initialized. Call init_controller() first.")
    return _controller


def peek_controller() -> Optional[ReconcileController]:
    """The controller if initialized, without raising."""
    return _controller


def get_db_pool() -> Any:
    """Get the database pool, or None when state is kept in memory."""
    return _pool


def get_default_retry_limit() -> int:
    """Retry limit used when a registration does not specify one."""
    return _config.default_retry_limit if _config is not None else 5

"""Composition root: builds the controller from configuration.

Providers come from PROVIDER_FACTORY, a "module:callable" whose callable
returns ``(source_provider, live_state_provider, executor_backend)``.
Without it, the in-memory development providers are used. State goes to
PostgreSQL when DATABASE_URL is set, to memory otherwise.
"""

import importlib
import logging
from typing import Any, Optional

from .common.database import close_pool, create_pool
from .common.exceptions import ConfigurationError
from .config import ReconcilerConfig
from .controller import ReconcileController
from .reconcile.adapters import (
    InMemoryApplicationRepository,
    InMemoryCluster,
    InMemorySourceProvider,
    ManifestMapper,
    PostgresApplicationRepository,
)
from .reconcile.domain.ports import (
    IApplicationRepository,
    IExecutorBackend,
    ILiveStateProvider,
    ISourceProvider,
)
from .reconcile.use_cases import (
    ApplicationRegistry,
    DiffEngine,
    ReconcileApplicationUseCase,
    SyncExecutor,
    default_breakers,
)

logger = logging.getLogger(__name__)


def load_providers(factory: Optional[str]) -> tuple[ISourceProvider, ILiveStateProvider, IExecutorBackend]:
    """Import and call the provider factory.

    Raises:
        ConfigurationError: If the factory cannot be imported or returns
            something other than the three ports
    """
    if not factory:
        logger.warning("PROVIDER_FACTORY not set, using in-memory providers (development only)")
        cluster = InMemoryCluster()
        return InMemorySourceProvider(), cluster, cluster

    module_name, _, attr = factory.partition(":")
    try:
        module = importlib.import_module(module_name)
        func = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load PROVIDER_FACTORY {factory!r}: {e}", cause=e)

    providers: Any = func()
    expected = (ISourceProvider, ILiveStateProvider, IExecutorBackend)
    if (
        not isinstance(providers, (tuple, list))
        or len(providers) != 3
        or not all(isinstance(p, port) for p, port in zip(providers, expected))
    ):
        raise ConfigurationError(
            f"PROVIDER_FACTORY {factory!r} must return (ISourceProvider, ILiveStateProvider, IExecutorBackend)"
        )
    logger.info(f"Providers loaded from {factory}")
    return tuple(providers)


async def build_repository(config: ReconcilerConfig) -> tuple[IApplicationRepository, Any]:
    """Create the repository; returns it with the pool to close (or None)."""
    if not config.database_url:
        logger.warning("DATABASE_URL not set, application state is kept in memory")
        return InMemoryApplicationRepository(), None

    pool = await create_pool(config.database_url)
    repository = PostgresApplicationRepository(pool)
    await repository.ensure_schema()
    return repository, pool


def build_controller(
    config: ReconcilerConfig,
    repository: IApplicationRepository,
    source_provider: ISourceProvider,
    live_provider: ILiveStateProvider,
    backend: IExecutorBackend,
) -> ReconcileController:
    reconciler = ReconcileApplicationUseCase(
        repository=repository,
        source_provider=source_provider,
        live_provider=live_provider,
        backend=backend,
        mapper=ManifestMapper(),
        diff_engine=DiffEngine(config.ignore_rules),
        executor=SyncExecutor(
            backend,
            initial_delay=config.retry_initial_delay,
            backoff_factor=config.retry_backoff_factor,
            max_delay=config.retry_max_delay,
        ),
        breakers=default_breakers(
            failure_threshold=config.destination_failure_threshold,
            timeout=config.destination_reset_seconds,
        ),
    )
    return ReconcileController(
        reconciler=reconciler,
        registry=ApplicationRegistry(repository, reconciler),
        workers=config.workers,
        refresh_interval=config.refresh_interval,
        drift_interval=config.drift_interval,
    )


async def create_controller(config: Optional[ReconcilerConfig] = None) -> tuple[ReconcileController, Any]:
    """Build a controller from configuration.

    Returns the controller and the database pool to close on shutdown
    (None for in-memory state).
    """
    config = config or ReconcilerConfig()
    source_provider, live_provider, backend = load_providers(config.provider_factory)
    repository, pool = await build_repository(config)
    return build_controller(config, repository, source_provider, live_provider, backend), pool


async def shutdown_controller(controller: ReconcileController, pool: Any) -> None:
    await controller.stop()
    if pool is not None:
        await close_pool(pool)

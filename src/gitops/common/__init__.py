"""Shared infrastructure for the reconciler.

Modules:
    exceptions: Exception hierarchy and ErrorKind taxonomy
    resilience: Retry with exponential backoff and circuit breakers
    database: asyncpg transaction and pool helpers
"""
from .exceptions import (
    ApplicationExists,
    ApplicationNotFound,
    CircuitOpenError,
    ConfigurationError,
    DatabaseError,
    DestinationUnreachable,
    ErrorKind,
    ManifestInvalid,
    OwnershipConflict,
    PermanentApplyFailure,
    ReconcilerError,
    RetryableApplyFailure,
    RevisionNotFound,
    SourceUnavailable,
    error_kind_of,
)
from .resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    retry_async,
)

__all__ = [
    "ApplicationExists",
    "ApplicationNotFound",
    "CircuitOpenError",
    "ConfigurationError",
    "DatabaseError",
    "DestinationUnreachable",
    "ErrorKind",
    "ManifestInvalid",
    "OwnershipConflict",
    "PermanentApplyFailure",
    "ReconcilerError",
    "RetryableApplyFailure",
    "RevisionNotFound",
    "SourceUnavailable",
    "error_kind_of",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "retry_async",
]

#!/usr/bin/env python3
"""Exception Hierarchy for the GitOps reconciliation engine.

This module provides a structured exception hierarchy for every failure the
engine can observe: source resolution, live state access, manifest parsing,
ownership checks, apply execution, persistence and configuration.

Design Principles:
    - All exceptions inherit from ReconcilerError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Exceptions are categorized by recoverability
    - Each reconciliation failure maps to an ErrorKind recorded in history

Exception Hierarchy:
    ReconcilerError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── ApplicationError
    │   ├── ApplicationNotFound
    │   └── ApplicationExists
    ├── SourceError (recoverable - retried next tick)
    │   ├── SourceUnavailable
    │   └── RevisionNotFound
    ├── DestinationUnreachable (recoverable - retried next tick)
    ├── ManifestInvalid
    ├── OwnershipConflict
    ├── ApplyError
    │   ├── RetryableApplyFailure
    │   └── PermanentApplyFailure
    ├── DatabaseError (may be recoverable)
    │   ├── ConnectionPoolError
    │   ├── TransactionError
    │   └── IntegrityError
    └── CircuitOpenError
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure kinds recorded in sync history."""

    SOURCE_UNAVAILABLE = "SourceUnavailable"
    REVISION_NOT_FOUND = "RevisionNotFound"
    DESTINATION_UNREACHABLE = "DestinationUnreachable"
    MANIFEST_INVALID = "ManifestInvalid"
    OWNERSHIP_CONFLICT = "OwnershipConflict"
    RETRYABLE_APPLY_FAILURE = "RetryableApplyFailure"
    PERMANENT_APPLY_FAILURE = "PermanentApplyFailure"


# ============================================
# Base Exception
# ============================================

class ReconcilerError(Exception):
    """Base exception for all reconciler errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "SOURCE_UNAVAILABLE")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(ReconcilerError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Application Registry Errors
# ============================================

class ApplicationError(ReconcilerError):
    """Base class for application registry errors."""


class ApplicationNotFound(ApplicationError):
    """Raised when an application name is not registered."""

    def __init__(self, name: str, **kwargs):
        details = kwargs.pop("details", {})
        details["application"] = name
        super().__init__(
            f"Application '{name}' not found",
            code="APPLICATION_NOT_FOUND",
            details=details,
            **kwargs,
        )
        self.name = name


class ApplicationExists(ApplicationError):
    """Raised when registering an application name twice."""

    def __init__(self, name: str, **kwargs):
        details = kwargs.pop("details", {})
        details["application"] = name
        super().__init__(
            f"Application '{name}' already registered",
            code="APPLICATION_EXISTS",
            details=details,
            **kwargs,
        )
        self.name = name


# ============================================
# Source Errors (Recoverable on next tick)
# ============================================

class SourceError(ReconcilerError):
    """Base class for Source Provider failures."""

    def __init__(self, message: str, repo_url: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if repo_url:
            details["repo_url"] = repo_url
        kwargs.setdefault("recoverable", True)
        super().__init__(message, details=details, **kwargs)
        self.repo_url = repo_url


class SourceUnavailable(SourceError):
    """Raised when the source repository cannot be reached or rendered."""

    kind = ErrorKind.SOURCE_UNAVAILABLE

    def __init__(self, message: str = "Source unavailable", **kwargs):
        super().__init__(message, code="SOURCE_UNAVAILABLE", **kwargs)


class RevisionNotFound(SourceError):
    """Raised when a revision pointer does not resolve."""

    kind = ErrorKind.REVISION_NOT_FOUND

    def __init__(self, revision: str, **kwargs):
        details = kwargs.pop("details", {})
        details["revision"] = revision
        super().__init__(
            f"Revision '{revision}' not found",
            code="REVISION_NOT_FOUND",
            details=details,
            **kwargs,
        )
        self.revision = revision


# ============================================
# Destination Errors (Recoverable on next tick)
# ============================================

class DestinationUnreachable(ReconcilerError):
    """Raised when the Live State Provider cannot reach a destination."""

    kind = ErrorKind.DESTINATION_UNREACHABLE

    def __init__(
        self,
        message: str = "Destination unreachable",
        server: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if server:
            details["server"] = server
        kwargs.setdefault("recoverable", True)
        super().__init__(
            message,
            code="DESTINATION_UNREACHABLE",
            details=details,
            **kwargs,
        )
        self.server = server


# ============================================
# Manifest and Ownership Errors
# ============================================

class ManifestInvalid(ReconcilerError):
    """Raised when a manifest is malformed or the set cannot be ordered.

    Attributes:
        identity: Resource key string when the manifest had one
        isolable: True when only the affected operation needs to be skipped
    """

    kind = ErrorKind.MANIFEST_INVALID

    def __init__(
        self,
        message: str,
        identity: Optional[str] = None,
        isolable: bool = False,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if identity:
            details["resource"] = identity
        super().__init__(
            message,
            code="MANIFEST_INVALID",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.identity = identity
        self.isolable = isolable


class OwnershipConflict(ReconcilerError):
    """Raised when a desired resource is owned by someone else."""

    kind = ErrorKind.OWNERSHIP_CONFLICT

    def __init__(
        self,
        identity: str,
        owner: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["resource"] = identity
        details["owner"] = owner or "unmanaged"
        super().__init__(
            f"Resource {identity} is owned by {owner or 'no application'}",
            code="OWNERSHIP_CONFLICT",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.identity = identity
        self.owner = owner


# ============================================
# Apply Errors
# ============================================

class ApplyError(ReconcilerError):
    """Base class for executor backend failures."""

    def __init__(
        self,
        message: str,
        identity: Optional[str] = None,
        attempts: int = 1,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if identity:
            details["resource"] = identity
        details["attempts"] = attempts
        super().__init__(message, details=details, **kwargs)
        self.identity = identity
        self.attempts = attempts


class RetryableApplyFailure(ApplyError):
    """Raised when the backend reports a transient failure."""

    kind = ErrorKind.RETRYABLE_APPLY_FAILURE

    def __init__(self, message: str = "Transient apply failure", **kwargs):
        super().__init__(
            message,
            code="RETRYABLE_APPLY_FAILURE",
            recoverable=True,
            **kwargs,
        )


class PermanentApplyFailure(ApplyError):
    """Raised when the backend rejects an operation or retries are exhausted."""

    kind = ErrorKind.PERMANENT_APPLY_FAILURE

    def __init__(self, message: str = "Permanent apply failure", **kwargs):
        super().__init__(
            message,
            code="PERMANENT_APPLY_FAILURE",
            recoverable=False,
            **kwargs,
        )


# ============================================
# Database Errors
# ============================================

class DatabaseError(ReconcilerError):
    """Base class for database-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionPoolError(DatabaseError):
    """Raised when database connection pool is exhausted or unavailable."""

    def __init__(
        self,
        message: str = "Database connection pool error",
        **kwargs,
    ):
        super().__init__(message, code="CONNECTION_POOL_ERROR", **kwargs)


class TransactionError(DatabaseError):
    """Raised when database transaction fails."""

    def __init__(
        self,
        message: str = "Database transaction failed",
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details=details,
            **kwargs,
        )


class IntegrityError(DatabaseError):
    """Raised when database integrity constraint is violated."""

    def __init__(
        self,
        message: str = "Database integrity error",
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if constraint:
            details["constraint"] = constraint
        super().__init__(
            message,
            code="INTEGRITY_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Circuit Breaker
# ============================================

class CircuitOpenError(ReconcilerError):
    """Raised when circuit breaker is open and requests are being rejected.

    Attributes:
        reset_at: When the circuit breaker will attempt to close
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        details["failure_count"] = failure_count

        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Map any exception to the ErrorKind recorded in history.

    Unknown exceptions are permanent apply failures.
    """
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    return ErrorKind.PERMANENT_APPLY_FAILURE

"""Use cases - Application business logic.

Use cases orchestrate domain entities and ports to perform reconciliation:
- DiffEngine: Classify desired vs live resources
- SyncPolicyEvaluator: Turn a diff and a policy into an ordered plan
- SyncExecutor: Apply a plan with retry, fail-fast abort and cancellation
- HealthAssessor: Derive resource and Application health
- HistoryManager: Append-only SyncRecord history and rollback targets
- DriftDetector: Compare live state against the last synced manifests
- ReconcileApplicationUseCase: The full per-Application pipeline
- ApplicationRegistry: Register and deregister Applications

Use cases depend only on domain entities and port interfaces,
never on concrete adapter implementations.
"""

from .assess_health import HealthAssessor
from .detect_drift import DriftDetector, DriftReport, parse_manifests
from .diff_resources import DiffEngine
from .evaluate_policy import PolicyDecision, SyncPolicyEvaluator, validate_dependencies
from .execute_sync import SyncExecutor
from .manage_applications import ApplicationRegistry
from .manage_history import HistoryManager
from .reconcile_application import (
    ReconcileApplicationUseCase,
    ReconcileResult,
    default_breakers,
)

__all__ = [
    "ApplicationRegistry",
    "DiffEngine",
    "DriftDetector",
    "DriftReport",
    "HealthAssessor",
    "HistoryManager",
    "PolicyDecision",
    "ReconcileApplicationUseCase",
    "ReconcileResult",
    "SyncExecutor",
    "SyncPolicyEvaluator",
    "default_breakers",
    "parse_manifests",
    "validate_dependencies",
]

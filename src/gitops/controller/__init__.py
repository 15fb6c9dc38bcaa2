"""Reconcile controller: coalescing work queue and worker pool."""

from .controller import ControllerStats, ReconcileController
from .work_queue import TriggerQueue

__all__ = [
    "ControllerStats",
    "ReconcileController",
    "TriggerQueue",
]

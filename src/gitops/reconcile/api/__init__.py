"""Operator API for Applications.

Contains:
- FastAPI router with endpoints
- Pydantic schemas for request/response validation
"""

from .router import router
from .schemas import (
    ApplicationListResponse,
    ApplicationResponse,
    HealthResponse,
    HistoryResponse,
    RefreshRequest,
    RegisterApplicationRequest,
    RollbackRequest,
    SyncRecordDTO,
    SyncRequest,
    TriggerResponse,
)

__all__ = [
    "router",
    "RegisterApplicationRequest",
    "SyncRequest",
    "RefreshRequest",
    "RollbackRequest",
    "ApplicationResponse",
    "ApplicationListResponse",
    "HealthResponse",
    "HistoryResponse",
    "SyncRecordDTO",
    "TriggerResponse",
]

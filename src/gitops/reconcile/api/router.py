"""FastAPI router for Application management endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...common.exceptions import (
    ApplicationExists,
    ApplicationNotFound,
    DestinationUnreachable,
    ManifestInvalid,
    PermanentApplyFailure,
    RevisionNotFound,
)
from ...controller import ReconcileController
from .dependencies import get_controller, get_default_retry_limit, verify_api_key
from .schemas import (
    ApplicationListResponse,
    ApplicationResponse,
    DeregisterResponse,
    HealthResponse,
    HistoryResponse,
    RefreshRequest,
    RegisterApplicationRequest,
    ResourceStatusDTO,
    RollbackRequest,
    SyncRecordDTO,
    SyncRequest,
    TriggerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/applications", tags=["Applications"])


def _not_found(name: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Application not found: {name}")


def _to_response(controller: ReconcileController, app) -> ApplicationResponse:
    pending = controller.queue.pending(app.name)
    return ApplicationResponse.from_application(
        app,
        in_flight=controller.queue.is_in_flight(app.name),
        pending_trigger=pending.kind.value if pending else None,
    )


@router.post("", response_model=ApplicationResponse, status_code=status.HTTP_201_CREATED)
async def register_application(
    request: RegisterApplicationRequest,
    controller: ReconcileController = Depends(get_controller),
    default_retry_limit: int = Depends(get_default_retry_limit),
    _auth: bool = Depends(verify_api_key),
):
    """Register an Application and queue its first refresh."""
    try:
        app = request.to_application(default_retry_limit)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    try:
        created = await controller.register(app)
    except ApplicationExists:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Application already exists: {app.name}",
        )
    return _to_response(controller, created)


@router.get("", response_model=ApplicationListResponse)
async def list_applications(
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    apps = await controller.registry.list()
    return ApplicationListResponse(
        applications=[_to_response(controller, app) for app in apps],
        total=len(apps),
    )


@router.get("/{name}", response_model=ApplicationResponse)
async def get_application(
    name: str,
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    """Definition, sync status, health, pending plan and last error."""
    try:
        app = await controller.registry.get(name)
    except ApplicationNotFound:
        raise _not_found(name)
    return _to_response(controller, app)


@router.delete("/{name}", response_model=DeregisterResponse)
async def deregister_application(
    name: str,
    cascade: bool = Query(default=False, description="Delete the live resources the Application owns"),
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    """Deregister an Application.

    Without ``cascade`` live resources are left in place. With it, every
    owned resource is deleted first; if that fails the Application stays
    registered and the request returns 502.
    """
    try:
        report = await controller.deregister(name, cascade=cascade)
    except ApplicationNotFound:
        raise _not_found(name)
    except (DestinationUnreachable, PermanentApplyFailure) as e:
        logger.warning(f"Cascade deregistration of {name} failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    deleted = [r.resource for r in report.results] if report else []
    return DeregisterResponse(application=name, cascade=cascade, deleted_resources=deleted)


@router.post("/{name}/sync", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def sync_application(
    name: str,
    request: Optional[SyncRequest] = None,
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    """Queue a manual sync. It supersedes any run in flight."""
    request = request or SyncRequest()
    try:
        trigger = await controller.sync(name, prune=request.prune, revision=request.revision)
    except ApplicationNotFound:
        raise _not_found(name)
    return TriggerResponse(application=name, trigger=trigger.kind.value, revision=trigger.revision)


@router.post("/{name}/refresh", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def refresh_application(
    name: str,
    request: Optional[RefreshRequest] = None,
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    """Webhook-style refresh: re-resolve the source now."""
    request = request or RefreshRequest()
    try:
        trigger = await controller.refresh(name, revision=request.revision)
    except ApplicationNotFound:
        raise _not_found(name)
    return TriggerResponse(application=name, trigger=trigger.kind.value, revision=trigger.revision)


@router.post("/{name}/rollback", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def rollback_application(
    name: str,
    request: RollbackRequest,
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    """Queue a sync to a previous revision, given directly or by history id."""
    try:
        trigger = await controller.rollback(name, revision=request.revision, history_id=request.history_id)
    except ApplicationNotFound:
        raise _not_found(name)
    except (ValueError, RevisionNotFound, ManifestInvalid) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(getattr(e, "message", e)))
    return TriggerResponse(application=name, trigger=trigger.kind.value, revision=trigger.revision)


@router.get("/{name}/health", response_model=HealthResponse)
async def get_application_health(
    name: str,
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    try:
        app = await controller.registry.get(name)
    except ApplicationNotFound:
        raise _not_found(name)
    return HealthResponse(
        application=app.name,
        health=app.current_health.value,
        sync_status=app.sync_status.value,
        resources=[ResourceStatusDTO(**r.to_dict()) for r in app.resources],
    )


@router.get("/{name}/history", response_model=HistoryResponse)
async def get_application_history(
    name: str,
    limit: Optional[int] = Query(default=None, ge=1, le=1000, description="Only the most recent records"),
    controller: ReconcileController = Depends(get_controller),
    _auth: bool = Depends(verify_api_key),
):
    """Sync history, oldest first."""
    try:
        records = await controller.reconciler.history.history(name, limit)
    except ApplicationNotFound:
        raise _not_found(name)
    return HistoryResponse(
        application=name,
        records=[SyncRecordDTO.from_record(r) for r in records],
        total=len(records),
    )

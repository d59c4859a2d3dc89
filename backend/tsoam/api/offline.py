"""Offline queue API: enqueue mutations, inspect and force synchronization, offline cache reads."""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from ..services.offline_service import InvalidOperation, OfflineError, OfflineService
from ..services.offline_store import StorageError
from ..services.offline_sync import OperationType
from ..services.remote_api import RemoteRejected, UnknownModule

router = APIRouter(prefix="/offline", tags=["offline"])


def get_offline_service(request: Request) -> OfflineService:
    return request.app.state.offline_service


def _storage_unavailable(exc: StorageError) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Offline storage unavailable: {exc}")


# ── Request / Response schemas ──────────────────────────────────────────────

class OperationCreate(BaseModel):
    module: str
    type: OperationType
    data: Dict[str, Any] = {}


class OperationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: OperationType
    module: str
    data: Dict[str, Any]
    timestamp: int
    retry_count: int
    last_error: Optional[str]


class SyncStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    last_sync: int
    pending_operations: int
    is_online: bool
    sync_in_progress: bool
    storage_available: bool


class SyncProgressResponse(BaseModel):
    step: str
    progress: float
    total: int
    message: str
    errors: List[str]


class CachedDataIn(BaseModel):
    data: Any


class VisibilityRequest(BaseModel):
    visible: bool


class AuthTokenRequest(BaseModel):
    token: Optional[str] = None


# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/operations", response_model=OperationResponse, status_code=status.HTTP_202_ACCEPTED)
async def queue_operation(
    op_in: OperationCreate,
    service: OfflineService = Depends(get_offline_service),
):
    """Queue a create/update/delete for replay. Sync starts immediately when online."""
    try:
        return await service.queue_operation(op_in.module, op_in.type, op_in.data)
    except InvalidOperation as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)


@router.get("/operations", response_model=List[OperationResponse])
async def list_operations(service: OfflineService = Depends(get_offline_service)):
    try:
        return await service.list_pending_operations()
    except StorageError as exc:
        raise _storage_unavailable(exc)


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(service: OfflineService = Depends(get_offline_service)):
    return await service.get_sync_status()


@router.post("/sync", response_model=SyncProgressResponse)
async def force_sync(service: OfflineService = Depends(get_offline_service)):
    """Run a sync cycle now and return its final progress event."""
    try:
        progress = await service.force_sync_all()
    except OfflineError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if progress is None:
        raise HTTPException(status_code=409, detail="Sync already in progress")
    return progress.to_dict()


@router.get("/progress", response_model=SyncProgressResponse)
async def latest_progress(service: OfflineService = Depends(get_offline_service)):
    progress = service.latest_progress
    if progress is None:
        raise HTTPException(status_code=404, detail="No sync has run yet")
    return progress.to_dict()


@router.delete("/data", status_code=status.HTTP_204_NO_CONTENT)
async def clear_offline_data(service: OfflineService = Depends(get_offline_service)):
    """Wipe cached records, pending operations and sync metadata."""
    try:
        await service.clear_offline_data()
    except StorageError as exc:
        raise _storage_unavailable(exc)


@router.put("/data/{module}/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def store_offline_data(
    module: str,
    key: str,
    body: CachedDataIn,
    service: OfflineService = Depends(get_offline_service),
):
    try:
        await service.store_offline_data(module, key, body.data)
    except StorageError as exc:
        raise _storage_unavailable(exc)


@router.get("/data/{module}/{key}")
async def get_offline_data(
    module: str,
    key: str,
    service: OfflineService = Depends(get_offline_service),
):
    try:
        data = await service.get_offline_data(module, key)
    except StorageError as exc:
        raise _storage_unavailable(exc)
    if data is None:
        raise HTTPException(status_code=404, detail="No offline data for this key")
    return data


@router.get("/data/{module}", response_model=List[Any])
async def get_module_data(module: str, service: OfflineService = Depends(get_offline_service)):
    try:
        return await service.get_module_data(module)
    except StorageError as exc:
        raise _storage_unavailable(exc)


@router.post("/visibility", status_code=status.HTTP_204_NO_CONTENT)
async def report_visibility(
    req: VisibilityRequest,
    service: OfflineService = Depends(get_offline_service),
):
    """Dashboard regained (or lost) focus; a visible, online client triggers a sync."""
    service.set_visibility(req.visible)


@router.put("/auth-token", status_code=status.HTTP_204_NO_CONTENT)
async def set_auth_token(
    req: AuthTokenRequest,
    service: OfflineService = Depends(get_offline_service),
):
    service.set_auth_token(req.token)


@router.post("/cache/{module}/refresh")
async def refresh_module_cache(module: str, service: OfflineService = Depends(get_offline_service)):
    """Pull the module listing from the API into the offline cache."""
    try:
        cached = await service.refresh_module_cache(module)
    except OfflineError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except UnknownModule as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RemoteRejected as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except StorageError as exc:
        raise _storage_unavailable(exc)
    return {"module": module, "cached": cached}

import binascii

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, status
from typing import Optional
from pydantic import BaseModel
from datetime import datetime
from ..services.assets import decode_base64_payload
from ..services.remote_client import AssetInfo
from ..services.sync_coordinator import SyncCoordinator
from .deps import get_coordinator

router = APIRouter(tags=["sync"])


class SyncStateResponse(BaseModel):
    status: str
    error: Optional[str]
    error_kind: Optional[str]
    is_ready: bool
    retry_count: int
    last_synced_at: Optional[datetime]
    pending_operations: int


class SyncResult(BaseModel):
    synced: bool
    state: SyncStateResponse


class Base64Upload(BaseModel):
    data: str
    filename: str
    mime_type: str = "image/jpeg"


class AssetResponse(BaseModel):
    identity: str
    url: str
    name: str
    size: int
    sha256: str


def _asset_response(info: AssetInfo) -> AssetResponse:
    return AssetResponse(
        identity=info.identity,
        url=info.url,
        name=info.name,
        size=info.size,
        sha256=info.sha256,
    )


def _state_response(coordinator: SyncCoordinator) -> SyncStateResponse:
    state = coordinator.get_sync_state()
    return SyncStateResponse(
        status=state.status.value,
        error=state.error,
        error_kind=state.error_kind.value if state.error_kind else None,
        is_ready=state.is_ready,
        retry_count=state.retry_count,
        last_synced_at=state.last_synced_at,
        pending_operations=coordinator.pending_count(),
    )


@router.get("/sync/state", response_model=SyncStateResponse)
async def get_sync_state(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return _state_response(coordinator)


@router.post("/sync", response_model=SyncResult)
async def force_sync(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Manual sync. Reconnects first when the remote store was never reached."""
    synced = await coordinator.force_sync()
    return SyncResult(synced=synced, state=_state_response(coordinator))


@router.post("/assets", response_model=AssetResponse, status_code=status.HTTP_201_CREATED)
async def upload_asset(
    file: UploadFile = File(...),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    info = await coordinator.upload_asset(
        data,
        file.filename or "upload.bin",
        file.content_type or "application/octet-stream",
    )
    if info is None:
        raise HTTPException(status_code=503, detail="Remote store unavailable; upload not stored")
    return _asset_response(info)


@router.post("/assets/base64", response_model=AssetResponse, status_code=status.HTTP_201_CREATED)
async def upload_base64_asset(
    upload: Base64Upload,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Upload raw base64 or a ``data:<mime>;base64,`` URL (camera captures)."""
    try:
        data, _ = decode_base64_payload(upload.data, upload.mime_type)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid base64 payload")
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    info = await coordinator.upload_base64(upload.data, upload.filename, upload.mime_type)
    if info is None:
        raise HTTPException(status_code=503, detail="Remote store unavailable; upload not stored")
    return _asset_response(info)

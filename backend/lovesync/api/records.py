from fastapi import APIRouter, Depends, HTTPException, status
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime
from ..core.errors import LocalStorageError, RecordNotFoundError, UnknownCollectionError
from ..models.record import RecordOrigin
from ..services.sync_coordinator import SyncCoordinator
from .deps import get_coordinator

router = APIRouter(prefix="/collections", tags=["records"])


class RecordWrite(BaseModel):
    data: Dict[str, Any]


class RecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    identity: str
    data: Dict[str, Any]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    origin: RecordOrigin
    sync_failed: bool


def _unknown_collection(exc: UnknownCollectionError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


def _storage_failure(exc: LocalStorageError) -> HTTPException:
    return HTTPException(status_code=507, detail=f"Change kept in memory only: {exc}")


@router.get("/{collection}/records", response_model=List[RecordResponse])
async def list_records(collection: str, coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Current snapshot, newest first, including unsynced and failed records."""
    try:
        return coordinator.get_records(collection)
    except UnknownCollectionError as e:
        raise _unknown_collection(e)


@router.post("/{collection}/records", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
async def add_record(
    collection: str,
    record_in: RecordWrite,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.add_record(collection, record_in.data)
    except UnknownCollectionError as e:
        raise _unknown_collection(e)
    except LocalStorageError as e:
        raise _storage_failure(e)


@router.patch("/{collection}/records/{identity}", response_model=RecordResponse)
async def update_record(
    collection: str,
    identity: str,
    record_in: RecordWrite,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.update_record(collection, identity, record_in.data)
    except UnknownCollectionError as e:
        raise _unknown_collection(e)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LocalStorageError as e:
        raise _storage_failure(e)


@router.delete("/{collection}/records/{identity}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(
    collection: str,
    identity: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Remote confirmation happens in the background; the record may linger as a pending delete."""
    try:
        deleted = coordinator.delete_record(collection, identity)
    except UnknownCollectionError as e:
        raise _unknown_collection(e)
    except LocalStorageError as e:
        raise _storage_failure(e)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"{collection} record {identity} not found")

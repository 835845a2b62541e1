from fastapi import HTTPException, Request

from ..services.sync_coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return coordinator

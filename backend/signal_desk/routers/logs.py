from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from signal_desk.core.websocket_manager import ConnectionManager, get_manager
from signal_desk.schemas.signal import LogCreate, LogOut
from signal_desk.services.storage import SignalStorage, get_storage

router = APIRouter(tags=["Logs"])


def serialize_log(entry) -> dict:
    return LogOut.model_validate(entry).model_dump(mode="json", by_alias=True)


@router.get("/logs")
async def list_logs(
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Newest entries to return"),
    storage: SignalStorage = Depends(get_storage),
) -> List[dict]:
    return [serialize_log(entry) for entry in await storage.get_logs(limit)]


@router.post("/logs", status_code=201)
async def create_log(
    payload: LogCreate,
    storage: SignalStorage = Depends(get_storage),
    manager: ConnectionManager = Depends(get_manager),
):
    data = serialize_log(await storage.create_log(payload))
    await manager.broadcast("log", data)
    return data

from typing import List

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from trainer_service.protocol.delivery.connectivity import ManualConnectivity

router = APIRouter(prefix="/delivery", tags=["delivery"])


class QueueState(BaseModel):
    connected: bool
    queued: List[str]


class ConnectivityUpdate(BaseModel):
    connected: bool = Field(..., description="Override the connectivity signal.")


@router.get("/queue", response_model=QueueState)
async def get_queue(request: Request):
    """Offline queue in delivery order."""
    svc = request.app.state.chat_svc
    return {"connected": svc.connectivity.is_connected(), "queued": await svc.offline_queue()}


@router.post("/drain")
async def drain(request: Request):
    """Replay the offline queue now."""
    svc = request.app.state.chat_svc
    if not svc.connectivity.is_connected():
        raise HTTPException(status_code=409, detail="Offline")
    delivered = await svc.drain_offline_queue()
    return {"delivered": delivered}


@router.put("/connectivity", response_model=QueueState)
async def set_connectivity(body: ConnectivityUpdate, request: Request):
    """Set the connectivity flag (manual and probe-based signals only)."""
    svc = request.app.state.chat_svc
    if not isinstance(svc.connectivity, ManualConnectivity):
        raise HTTPException(status_code=400, detail="Connectivity signal cannot be overridden")
    svc.connectivity.set_connected(body.connected)
    await svc.connectivity.wait_idle()
    return {"connected": svc.connectivity.is_connected(), "queued": await svc.offline_queue()}

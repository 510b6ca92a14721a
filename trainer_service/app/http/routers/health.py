from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Store: can read the session index.
    Connectivity: current value of the connectivity signal.
    """
    svc = request.app.state.chat_svc
    try:
        await svc.list_sessions()
    except Exception as e:
        return {"ready": False, "store": False, "connected": None, "error": str(e)}
    connected = svc.connectivity.is_connected()
    return {"ready": True, "store": True, "connected": connected}

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from trainer_service.core.logging import logger

router = APIRouter(prefix="/chat", tags=["chat"])


class StreamRequest(BaseModel):
    session_id: str = Field(..., description="The unique identifier for the session.")
    prompt: str = Field(..., min_length=1, description="The user's message.")


class CancelRequest(BaseModel):
    session_id: str = Field(..., description="Session whose active reply should stop.")


@router.post("/stream")
async def stream(request: Request, body: StreamRequest):
    logger.info(f"/chat/stream called: session_id={body.session_id}")
    chat_svc = request.app.state.chat_svc

    async def event_generator():
        async for chunk in chat_svc.stream(session_id=body.session_id, prompt=body.prompt):
            if await request.is_disconnected():
                logger.info(f"Client disconnected: session_id={body.session_id}")
                break
            yield chunk

    return StreamingResponse(event_generator(), media_type="application/x-ndjson")


@router.post("/cancel")
def cancel(request: Request, body: CancelRequest):
    """Stop the active reply after its current turn."""
    if not request.app.state.chat_svc.cancel(body.session_id):
        raise HTTPException(status_code=404, detail="No active reply for this session")
    return {"cancelled": True}

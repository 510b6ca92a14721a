from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

router = APIRouter(prefix="/sessions", tags=["sessions"])


class Session(BaseModel):
    session_id: str = Field(..., description="The unique identifier for the session.")
    created_at: str = Field(..., description="The timestamp when the session was created.")


class Delivery(BaseModel):
    state: str
    reason: Optional[str] = None
    retryable: bool = False
    attempt: int = 0
    max_attempts: int = 0
    description: str = ""


class Message(BaseModel):
    id: str
    role: str
    content: str
    created_at: float
    state: str
    delivery: Delivery
    reasoning: Optional[str] = None
    reply_to: Optional[str] = None


@router.post("", response_model=Session)
async def create_session(request: Request):
    """Create a new session."""
    return await request.app.state.chat_svc.create_session()


@router.get("", response_model=List[Session])
async def list_sessions(request: Request):
    """List all sessions."""
    return await request.app.state.chat_svc.list_sessions()


@router.get("/{session_id}/messages", response_model=List[Message])
async def get_session_messages(session_id: str, request: Request):
    """Get messages for a session."""
    messages = await request.app.state.chat_svc.get_session_messages(session_id)
    if messages is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return messages


@router.post("/{session_id}/messages/{message_id}/retry")
async def retry_message(session_id: str, message_id: str, request: Request):
    """Retry a failed or queued user message; streams the same events as /chat/stream."""
    chat_svc = request.app.state.chat_svc
    messages = await chat_svc.get_session_messages(session_id)
    if messages is None:
        raise HTTPException(status_code=404, detail="Session not found")
    msg = next((m for m in messages if m["id"] == message_id and m["role"] == "user"), None)
    if msg is None:
        raise HTTPException(status_code=404, detail="Message not found")
    delivery = msg["delivery"]
    if delivery["state"] == "sent" or (delivery["state"] == "failed" and not delivery["retryable"]):
        raise HTTPException(status_code=409, detail="Message cannot be retried")
    return StreamingResponse(chat_svc.retry(session_id, message_id), media_type="application/x-ndjson")


@router.delete("/{session_id}", status_code=204)
async def delete_session(session_id: str, request: Request):
    """Delete a session by ID."""
    if not await request.app.state.chat_svc.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")


@router.delete("", status_code=200)
async def delete_all_sessions(request: Request):
    """Delete all sessions."""
    count = await request.app.state.chat_svc.delete_all_sessions()
    return {"deleted_count": count}

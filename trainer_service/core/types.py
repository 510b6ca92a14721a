from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Dict, Optional, Tuple, TypedDict
import datetime
import json
import uuid


class StreamEvent(StrEnum):
    TEXT = "text"
    THINK = "think"
    DIRECTIVE_DETECTED = "directive_detected"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    STATE = "state"
    DELIVERY = "delivery"
    MESSAGE = "message"
    ERROR = "error"
    DONE = "done"


class Event(TypedDict, total=False):
    type: str
    session_id: str
    data: Dict[str, Any]
    ts: str


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageState(StrEnum):
    STREAMING = "streaming"
    COMPLETED = "completed"


class DeliveryState(StrEnum):
    SENDING = "sending"
    SENT = "sent"
    RETRYING = "retrying"
    OFFLINE = "offline"
    FAILED = "failed"


class FailureReason(StrEnum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (FailureReason.NETWORK, FailureReason.TIMEOUT, FailureReason.SERVER, FailureReason.RATE_LIMIT)

    @property
    def user_message(self) -> str:
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES = {
    FailureReason.NETWORK: "Network connection lost",
    FailureReason.TIMEOUT: "Request timed out",
    FailureReason.SERVER: "Server error, will retry",
    FailureReason.RATE_LIMIT: "Rate limit exceeded, will retry",
    FailureReason.AUTHENTICATION: "Authentication failed",
    FailureReason.UNKNOWN: "Unknown error occurred",
}


class TurnState(StrEnum):
    IDLE = "idle"
    PREPARING_RESPONSE = "preparing_response"
    STREAMING = "streaming"
    NON_STREAMING = "non_streaming"
    DETECTING_CALLS = "detecting_calls"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZING = "finalizing"


class StreamMode(StrEnum):
    LIVE = "live"
    BUFFERING = "buffering"


class CompletionStatus(StrEnum):
    OK = "ok"
    MISSING_CONTENT = "missing_content"


def _now() -> float:
    return datetime.datetime.now(datetime.timezone.utc).timestamp()


def escape_payload(text: str) -> str:
    """Inverse of RawJSON.unescape: backslashes and quotes get a leading backslash."""
    return text.replace("\\", "\\\\").replace('"', '\\"')


class RawJSON(str):
    """
    Verbatim (still escaped) value of a reserved payload field.

    The outer directive grammar wraps the document in quotes, so embedded
    quotes and backslashes arrive escaped. unescape() reverses that in a
    single left-to-right pass; any other backslash sequence is kept as-is.
    """

    def unescape(self) -> str:
        out = []
        i = 0
        n = len(self)
        while i < n:
            ch = self[i]
            if ch == "\\" and i + 1 < n and self[i + 1] in ('"', "\\"):
                out.append(self[i + 1])
                i += 2
                continue
            out.append(ch)
            i += 1
        return "".join(out)

    def loads(self) -> Any:
        return json.loads(self.unescape())


@dataclass(frozen=True)
class DirectiveCall:
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    span: Tuple[int, int] = (0, 0)

    @property
    def start(self) -> int:
        return self.span[0]

    @property
    def end(self) -> int:
        return self.span[1]


@dataclass(frozen=True)
class DirectiveResult:
    name: str
    success: bool
    output: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, name: str, output: str) -> "DirectiveResult":
        return cls(name=name, success=True, output=output)

    @classmethod
    def failure(cls, name: str, error: str) -> "DirectiveResult":
        return cls(name=name, success=False, error=error)

    def to_record(self) -> Dict[str, Any]:
        return {"name": self.name, "success": self.success, "output": self.output, "error": self.error}


@dataclass(frozen=True)
class ProcessedTurn:
    cleaned_text: str
    had_directives: bool
    results: Tuple[DirectiveResult, ...] = ()


@dataclass(frozen=True)
class ModelReply:
    content: str
    reasoning: Optional[str] = None
    status: CompletionStatus = CompletionStatus.OK

    @property
    def ok(self) -> bool:
        return self.status == CompletionStatus.OK and bool(self.content.strip())

    @classmethod
    def missing(cls, reasoning: Optional[str] = None) -> "ModelReply":
        return cls(content="", reasoning=reasoning, status=CompletionStatus.MISSING_CONTENT)


@dataclass(frozen=True)
class DeliveryStatus:
    state: DeliveryState
    reason: Optional[FailureReason] = None
    retryable: bool = False
    attempt: int = 0
    max_attempts: int = 0

    @classmethod
    def sending(cls) -> "DeliveryStatus":
        return cls(DeliveryState.SENDING)

    @classmethod
    def sent(cls) -> "DeliveryStatus":
        return cls(DeliveryState.SENT)

    @classmethod
    def offline(cls) -> "DeliveryStatus":
        return cls(DeliveryState.OFFLINE, retryable=True)

    @classmethod
    def retrying(cls, attempt: int, max_attempts: int) -> "DeliveryStatus":
        return cls(DeliveryState.RETRYING, attempt=attempt, max_attempts=max_attempts)

    @classmethod
    def failed(cls, reason: FailureReason, retryable: bool) -> "DeliveryStatus":
        return cls(DeliveryState.FAILED, reason=reason, retryable=retryable)

    @property
    def description(self) -> str:
        if self.state == DeliveryState.SENDING:
            return "Sending..."
        if self.state == DeliveryState.SENT:
            return "Sent"
        if self.state == DeliveryState.RETRYING:
            return f"Retrying ({self.attempt}/{self.max_attempts})..."
        if self.state == DeliveryState.OFFLINE:
            return "Offline, will send when connected"
        text = (self.reason or FailureReason.UNKNOWN).user_message
        return f"{text}. Tap to retry" if self.retryable else text

    def to_record(self) -> Dict[str, Any]:
        return {
            "state": str(self.state),
            "reason": str(self.reason) if self.reason else None,
            "retryable": self.retryable,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "DeliveryStatus":
        reason = rec.get("reason")
        return cls(
            state=DeliveryState(rec.get("state", DeliveryState.SENT)),
            reason=FailureReason(reason) if reason else None,
            retryable=bool(rec.get("retryable", False)),
            attempt=int(rec.get("attempt", 0)),
            max_attempts=int(rec.get("max_attempts", 0)),
        )


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=_now)
    state: MessageState = MessageState.COMPLETED
    delivery: DeliveryStatus = field(default_factory=DeliveryStatus.sent)
    reasoning: Optional[str] = None
    # id of the user message whose orchestration produced this message
    reply_to: Optional[str] = None

    def evolve(self, **changes: Any) -> "ConversationMessage":
        return replace(self, **changes)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": str(self.role),
            "content": self.content,
            "created_at": self.created_at,
            "state": str(self.state),
            "delivery": self.delivery.to_record(),
            "reasoning": self.reasoning,
            "reply_to": self.reply_to,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "ConversationMessage":
        return cls(
            id=rec["id"],
            role=Role(rec["role"]),
            content=rec.get("content") or "",
            created_at=float(rec.get("created_at") or _now()),
            state=MessageState(rec.get("state", MessageState.COMPLETED)),
            delivery=DeliveryStatus.from_record(rec.get("delivery") or {}),
            reasoning=rec.get("reasoning"),
            reply_to=rec.get("reply_to"),
        )


@dataclass(frozen=True)
class RetryRecord:
    message_id: str
    attempt: int
    last_error: str
    next_eligible_at: float

    def to_record(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "attempt": self.attempt,
            "last_error": self.last_error,
            "next_eligible_at": self.next_eligible_at,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "RetryRecord":
        return cls(
            message_id=rec["message_id"],
            attempt=int(rec.get("attempt", 0)),
            last_error=rec.get("last_error", ""),
            next_eligible_at=float(rec.get("next_eligible_at", 0.0)),
        )


@dataclass
class StreamBufferState:
    mode: StreamMode = StreamMode.LIVE
    raw_accumulated: str = ""
    rendered_so_far: str = ""

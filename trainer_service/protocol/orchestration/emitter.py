import json
import datetime
from typing import Any, Dict


class NdjsonEmitter:
    """Emitter producing NDJSON bytes for the chat event stream"""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id

    def emit(self, event: Dict[str, Any]) -> bytes:
        out = {
            "type": str(event.get("type", "")),
            "session_id": event.get("session_id") or self.session_id,
            "data": event.get("data", {}),
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        return (json.dumps(out, default=str) + "\n").encode("utf-8")

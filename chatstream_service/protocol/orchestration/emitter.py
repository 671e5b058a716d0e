import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from chatstream_service.core.types import StreamEvent


class StreamLine(BaseModel):
    """One NDJSON line of the reply stream."""

    kind: str = Field(..., description="content, thinking_start, thinking_chunk, thinking_end, tool_call, error or done.")
    message_id: str = Field("", description="The message the event belongs to.")
    ts: str = Field(..., description="UTC timestamp of the line.")
    text: Optional[str] = None
    server: Optional[str] = None
    tool: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class NdjsonEmitter:
    """Emitter producing NDJSON bytes for the stream event schema"""

    def emit(self, event: StreamEvent, message_id: str = "") -> bytes:
        return self._line({**event.to_dict(), "message_id": message_id})

    def error(self, message: str, message_id: str = "") -> bytes:
        return self._line({"kind": "error", "message": message, "message_id": message_id})

    def done(self, message_id: str = "") -> bytes:
        return self._line({"kind": "done", "message_id": message_id})

    @staticmethod
    def _line(out: Dict[str, Any]) -> bytes:
        out["ts"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
        # only the fields the event carries
        return (StreamLine(**out).model_dump_json(exclude_unset=True) + "\n").encode("utf-8")

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, Dict, Optional, Union


class StreamEventKind(StrEnum):
    CONTENT = "content"
    THINKING_START = "thinking_start"
    THINKING_CHUNK = "thinking_chunk"
    THINKING_END = "thinking_end"
    TOOL_CALL = "tool_call"


class ParserState(StrEnum):
    BODY = "body"
    THINKING = "thinking"
    FENCE = "fence"


class CardStatus(StrEnum):
    PENDING_AUTH = "pending_auth"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CardStatus.SUCCEEDED, CardStatus.FAILED)


class LifecycleEventType(StrEnum):
    CARD_CREATED = "card_created"
    CARD_STATUS = "card_status"
    TOOL_DETECTING_START = "tool_detecting_start"
    TOOL_DETECTING_END = "tool_detecting_end"


@dataclass(frozen=True)
class ContentToken:
    text: str
    kind: ClassVar[StreamEventKind] = StreamEventKind.CONTENT

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "text": self.text}


@dataclass(frozen=True)
class ThinkingStart:
    kind: ClassVar[StreamEventKind] = StreamEventKind.THINKING_START

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value}


@dataclass(frozen=True)
class ThinkingToken:
    text: str
    kind: ClassVar[StreamEventKind] = StreamEventKind.THINKING_CHUNK

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "text": self.text}


@dataclass(frozen=True)
class ThinkingEnd:
    kind: ClassVar[StreamEventKind] = StreamEventKind.THINKING_END

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value}


@dataclass(frozen=True)
class ToolCall:
    server: str
    tool: str
    arguments: Optional[Dict[str, Any]] = None
    kind: ClassVar[StreamEventKind] = StreamEventKind.TOOL_CALL

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value, "server": self.server, "tool": self.tool}
        if self.arguments is not None:
            out["arguments"] = self.arguments
        return out


StreamEvent = Union[ContentToken, ThinkingStart, ThinkingToken, ThinkingEnd, ToolCall]


@dataclass
class SuppressionState:
    """Hold state of the suppression valve for one reply."""

    held: str = ""
    active: bool = False
    brace_depth: int = 0
    seen_structure_start: bool = False
    # bookkeeping for incremental scanning of the held text
    scan_pos: int = 0
    closing_tag: Optional[str] = None
    in_string: bool = False
    escape: bool = False

    def reset(self) -> None:
        self.held = ""
        self.active = False
        self.brace_depth = 0
        self.seen_structure_start = False
        self.scan_pos = 0
        self.closing_tag = None
        self.in_string = False
        self.escape = False


@dataclass
class ToolCallCard:
    id: str
    server: str
    tool: str
    message_id: str
    status: CardStatus
    arguments: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    result: Any = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "server": self.server,
            "tool": self.tool,
            "status": self.status.value,
            "arguments": self.arguments or {},
            "messageId": self.message_id,
        }
        if self.error is not None:
            out["error"] = self.error
        return out

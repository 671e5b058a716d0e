from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Dict, List

from chatstream_service.core.types import StreamEvent


class ChunkSource(ABC):
    @abstractmethod
    def stream(self) -> AsyncGenerator[str, None]:
        """Stream raw text chunks of one model reply"""
        ...


class StreamParser(ABC):
    @abstractmethod
    def push(self, chunk: str) -> List[StreamEvent]:
        """Ingest a raw model chunk and return zero or more stream events"""
        ...

    @abstractmethod
    def flush(self) -> List[StreamEvent]:
        """Flush any residual state at end of stream and return the final events"""
        ...


class AuthorizationPolicy(ABC):
    @abstractmethod
    def should_auto_authorize(self, server_name: str) -> bool:
        """True if calls to this server may run without asking the user."""
        ...


class MessageStore(ABC):
    """Owner of the message buffers the core writes into."""

    @abstractmethod
    def get_content(self, message_id: str) -> str:
        ...

    @abstractmethod
    def append_text(self, message_id: str, text: str) -> None:
        ...

    @abstractmethod
    def overwrite_content(self, message_id: str, full_text: str) -> None:
        """Replace the live value; full_text must extend the current content."""
        ...

    @abstractmethod
    def dispatch_lifecycle_event(self, message_id: str, event: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def persist(self, message_id: str, content: str) -> None:
        """Durably write the full content of a message."""
        ...

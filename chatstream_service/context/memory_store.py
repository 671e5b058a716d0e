"""In-memory message store implementing MessageStore"""
from typing import Any, Dict, List

from chatstream_service.core.errors import ContentRewriteError
from chatstream_service.core.interfaces import MessageStore


class MemoryMessageStore(MessageStore):
    def __init__(self):
        self.contents: Dict[str, str] = {}
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.persisted: Dict[str, str] = {}
        self.persist_count: Dict[str, int] = {}

    def get_content(self, message_id: str) -> str:
        return self.contents.get(message_id, "")

    def append_text(self, message_id: str, text: str) -> None:
        self.contents[message_id] = self.contents.get(message_id, "") + text

    def overwrite_content(self, message_id: str, full_text: str) -> None:
        current = self.contents.get(message_id, "")
        if not full_text.startswith(current) or len(full_text) <= len(current):
            raise ContentRewriteError(
                f"message {message_id}: new content must extend the current {len(current)} chars"
            )
        self.contents[message_id] = full_text

    def dispatch_lifecycle_event(self, message_id: str, event: Dict[str, Any]) -> None:
        self.events.setdefault(message_id, []).append(event)

    async def persist(self, message_id: str, content: str) -> None:
        self.persisted[message_id] = content
        self.persist_count[message_id] = self.persist_count.get(message_id, 0) + 1

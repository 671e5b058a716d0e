import asyncio
from typing import Set

from chatstream_service.core.interfaces import MessageStore
from chatstream_service.core.logging import logger
from chatstream_service.core.tasks import drain_tasks, fire_and_forget


class ContentAppender:
    """Append visible text to the live message and throttle durable writes"""

    def __init__(self, message_id: str, store: MessageStore, persist_every_chars: int = 200):
        self.message_id = message_id
        self.store = store
        self.persist_every_chars = max(1, persist_every_chars)
        self._since_persist = 0
        self._tasks: Set[asyncio.Task] = set()

    def append(self, text: str) -> None:
        if not text:
            return
        try:
            self.store.append_text(self.message_id, text)
        except Exception:
            logger.exception(f"Appender: appending to message {self.message_id} failed")
            return
        self._since_persist += len(text)
        if self._since_persist >= self.persist_every_chars:
            self._request_persist()

    def flush(self) -> None:
        self._request_persist()

    async def drain(self) -> None:
        await drain_tasks(self._tasks)

    def _request_persist(self) -> None:
        self._since_persist = 0
        try:
            content = self.store.get_content(self.message_id)
        except Exception:
            logger.exception(f"Appender: reading message {self.message_id} failed, skipping persist")
            return
        logger.debug(f"Appender: persisting message {self.message_id}, length={len(content)}")
        fire_and_forget(
            self.store.persist,
            self.message_id,
            content,
            tasks=self._tasks,
            label=f"persist {self.message_id}",
        )

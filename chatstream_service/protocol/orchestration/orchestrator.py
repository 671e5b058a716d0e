from typing import AsyncGenerator, List, Optional

from chatstream_service.core.interfaces import AuthorizationPolicy, ChunkSource, MessageStore, StreamParser
from chatstream_service.core.logging import logger
from chatstream_service.core.types import (
    ContentToken,
    LifecycleEventType,
    StreamEvent,
    ToolCall,
)
from chatstream_service.protocol.orchestration.appender import ContentAppender
from chatstream_service.protocol.orchestration.emitter import NdjsonEmitter
from chatstream_service.protocol.orchestration.lifecycle import CardCallback, ToolCallLifecycleManager
from chatstream_service.protocol.orchestration.valve import SuppressionValve
from chatstream_service.protocol.parsers.tokenizer import StructuredStreamTokenizer


class ReplyStream:
    """
    Everything one streamed reply needs: tokenizer -> valve -> {appender, lifecycle}.
    push()/flush() return the confirmed events (visible content, thinking, at most one tool call).
    """

    def __init__(
        self,
        message_id: str,
        store: MessageStore,
        policy: AuthorizationPolicy,
        parser: Optional[StreamParser] = None,
        valve: Optional[SuppressionValve] = None,
        appender: Optional[ContentAppender] = None,
        lifecycle: Optional[ToolCallLifecycleManager] = None,
        on_auto_execute: Optional[CardCallback] = None,
        on_request_authorization: Optional[CardCallback] = None,
    ):
        self.message_id = message_id
        self.store = store
        self.parser = parser or StructuredStreamTokenizer()
        self.valve = valve or SuppressionValve()
        if self.valve.on_detecting is None:
            self.valve.on_detecting = self._on_detecting
        self.appender = appender or ContentAppender(message_id, store)
        self.lifecycle = lifecycle or ToolCallLifecycleManager(
            message_id,
            store,
            policy,
            on_auto_execute=on_auto_execute,
            on_request_authorization=on_request_authorization,
        )
        self.card_id: Optional[str] = None
        self.tool_emitted = False
        self.closed = False

    def push(self, chunk: str) -> List[StreamEvent]:
        if self.closed:
            logger.warning(f"ReplyStream {self.message_id}: push after flush ignored")
            return []
        return self._route(self.parser.push(chunk))

    def flush(self) -> List[StreamEvent]:
        if self.closed:
            return []
        self.closed = True
        out = self._route(self.parser.flush())
        out.extend(self._confirm(self.valve.flush()))
        self.appender.flush()
        logger.info(f"ReplyStream {self.message_id}: flushed, tool_call={self.tool_emitted}")
        return out

    async def drain(self) -> None:
        """Wait for callbacks and durable writes started by this reply."""
        await self.lifecycle.drain()
        await self.appender.drain()

    def _route(self, events: List[StreamEvent]) -> List[StreamEvent]:
        out: List[StreamEvent] = []
        for evt in events:
            if isinstance(evt, ContentToken):
                out.extend(self._confirm(self.valve.filter(evt)))
            elif isinstance(evt, ToolCall):
                # prose before the invocation must land before the card marker
                out.extend(self._confirm(self.valve.release()))
                out.extend(self._confirm([evt]))
            else:
                out.append(evt)
        return out

    def _confirm(self, events: List[StreamEvent]) -> List[StreamEvent]:
        out: List[StreamEvent] = []
        for evt in events:
            if isinstance(evt, ContentToken):
                self.appender.append(evt.text)
                out.append(evt)
            elif isinstance(evt, ToolCall):
                if self.tool_emitted:
                    logger.info(f"ReplyStream {self.message_id}: dropping extra tool call {evt.server}.{evt.tool}")
                    continue
                self.tool_emitted = True
                self.card_id = self.lifecycle.handle(evt.server, evt.tool, evt.arguments)
                out.append(evt)
            else:
                out.append(evt)
        return out

    def _on_detecting(self, detecting: bool) -> None:
        event_type = LifecycleEventType.TOOL_DETECTING_START if detecting else LifecycleEventType.TOOL_DETECTING_END
        self.store.dispatch_lifecycle_event(self.message_id, {"type": event_type, "data": {}})


async def orchestrate(
    source: ChunkSource,
    reply: ReplyStream,
    emitter: Optional[NdjsonEmitter] = None,
) -> AsyncGenerator[bytes, None]:
    """
    Drive one reply: source chunks -> ReplyStream -> NDJSON lines.
    The reply is always flushed, also when the source fails or the consumer stops early.
    """
    emitter = emitter or NdjsonEmitter()
    message_id = reply.message_id

    try:
        logger.info(f"Orchestration started: message_id={message_id}")
        async for chunk in source.stream():
            for evt in reply.push(chunk):
                yield emitter.emit(evt, message_id)
        for evt in reply.flush():
            yield emitter.emit(evt, message_id)
    except Exception as e:
        logger.exception(f"Exception in orchestrate: message_id={message_id}, error={e}")
        yield emitter.error(str(e), message_id)
        for evt in reply.flush():
            yield emitter.emit(evt, message_id)
    finally:
        if not reply.closed:
            # aborted by the consumer: drain buffers without yielding
            reply.flush()

    logger.info(f"Orchestration complete: message_id={message_id}")
    yield emitter.done(message_id)

import re
from typing import List, Optional, Tuple

from chatstream_service.core.interfaces import StreamParser
from chatstream_service.core.logging import logger
from chatstream_service.core.types import (
    ContentToken,
    ParserState,
    StreamEvent,
    ThinkingEnd,
    ThinkingStart,
    ThinkingToken,
    ToolCall,
)
from chatstream_service.protocol.parsers.decoders import (
    TOOL_OPEN_RE,
    TOOL_TAG_RE,
    USE_OPEN_RE,
    USE_TAG_RE,
    XML_END_RE,
    XML_TYPE_RE,
    decode_json_invocation,
    decode_tag_body,
    decode_use_tag_invocation,
    decode_xml_invocation,
    find_top_level_objects,
    has_invocation_field,
    looks_like_json_object,
)

# construct kinds, in tie-break priority order
_TOOL_TAG = "tool_tag"
_USE_TAG = "use_tag"
_OBJECT = "object"
_XML = "xml"
_PENDING = "pending"
_THINK = "think"
_FENCE = "fence"
_PRIORITY = {k: i for i, k in enumerate((_TOOL_TAG, _USE_TAG, _OBJECT, _XML, _PENDING, _THINK, _FENCE))}


class StructuredStreamTokenizer(StreamParser):
    """
    Stateful streaming tokenizer for one model reply.
    - Streams <think>...</think> as ThinkingStart / ThinkingToken / ThinkingEnd
    - Tracks ``` fences (visible text; <think> is literal inside a fence)
    - Decodes <tool_call>, <use_mcp_tool>, bare {"type":"tool_call"} objects and the
      bare <type>tool_call</type> XML body into a single ToolCall per reply
    - Holds back incomplete tags/objects and a small tail so markers split across
      chunks are still recognized
    """

    THINK_OPEN_RE = re.compile(r"<think>", re.IGNORECASE)
    THINK_CLOSE_RE = re.compile(r"</think>", re.IGNORECASE)
    THINK_CLOSE = "</think>"
    FENCE = "```"
    LONGEST_MARKER = "</use_mcp_tool>"

    def __init__(self, safe_tail: int = 16, max_tool_chars: int = 32768, max_object_hold: int = 2048):
        self.safe_tail = max(safe_tail, len(self.LONGEST_MARKER) - 1)
        self.max_tool_chars = max_tool_chars
        self.max_object_hold = max_object_hold
        self.state = ParserState.BODY
        self.buf = ""
        self.tool_emitted = False

    def push(self, chunk: str) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        if not chunk:
            return events

        self.buf += chunk
        logger.debug(f"Tokenizer push: state={self.state}, buf_len={len(self.buf)}, chunk_len={len(chunk)}")
        try:
            self._drain(events)
        except Exception:
            logger.exception("Tokenizer: internal failure, emitting buffered text as content")
            if self.buf:
                events.append(ContentToken(self.buf))
            self.buf = ""
        return events

    def flush(self) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        if self.state == ParserState.THINKING:
            if self.buf:
                events.append(ThinkingToken(self.buf))
            logger.debug("Tokenizer flush: closing open thinking segment")
            events.append(ThinkingEnd())
        elif self.buf:
            events.append(ContentToken(self.buf))

        self.buf = ""
        self.state = ParserState.BODY
        return events

    # --- scanning ---

    def _drain(self, events: List[StreamEvent]) -> None:
        while self.buf:
            if self.state == ParserState.THINKING:
                if not self._scan_thinking(events):
                    return
            elif not self._scan_body(events):
                return

    def _scan_thinking(self, events: List[StreamEvent]) -> bool:
        m = self.THINK_CLOSE_RE.search(self.buf)
        if m:
            if m.start() > 0:
                events.append(ThinkingToken(self.buf[: m.start()]))
            events.append(ThinkingEnd())
            self.buf = self.buf[m.end() :]
            self.state = ParserState.BODY
            logger.debug("Tokenizer: leaving thinking segment")
            return True

        # keep back only a suffix that could still grow into </think>
        keep = self._partial_marker_len(self.buf, self.THINK_CLOSE)
        if len(self.buf) > keep:
            events.append(ThinkingToken(self.buf[: len(self.buf) - keep]))
            self.buf = self.buf[len(self.buf) - keep :]
        return False

    @staticmethod
    def _partial_marker_len(text: str, marker: str) -> int:
        for k in range(min(len(marker) - 1, len(text)), 0, -1):
            if text[-k:].lower() == marker[:k]:
                return k
        return 0

    def _scan_body(self, events: List[StreamEvent]) -> bool:
        found = self._next_construct()
        if found is None:
            # No construct: emit text but keep the safety tail
            if len(self.buf) > self.safe_tail:
                self._emit_text(events, self.buf[: -self.safe_tail])
                self.buf = self.buf[-self.safe_tail :]
            return False

        kind, start, end, payload, limit = found
        if kind == _PENDING:
            self._emit_text(events, self.buf[:start])
            self.buf = self.buf[start:]
            if len(self.buf) > limit:
                logger.warning(f"Tokenizer: held construct exceeded {limit} chars, releasing as text")
                self._emit_text(events, self.buf[: -self.safe_tail])
                self.buf = self.buf[-self.safe_tail :]
            return False

        if kind == _THINK:
            self._emit_text(events, self.buf[:start])
            events.append(ThinkingStart())
            self.buf = self.buf[end:]
            self.state = ParserState.THINKING
            logger.debug("Tokenizer: entering thinking segment")
            return True

        if kind == _FENCE:
            self._emit_text(events, self.buf[:end])
            self.buf = self.buf[end:]
            self.state = ParserState.BODY if self.state == ParserState.FENCE else ParserState.FENCE
            logger.debug(f"Tokenizer: fence delimiter, state={self.state}")
            return True

        call = self._decode(kind, self.buf[start:end], payload)
        self._emit_text(events, self.buf[:start])
        if call is None:
            logger.debug(f"Tokenizer: {kind} span did not decode, treating as text")
            self._emit_text(events, self.buf[start:end])
        elif self.tool_emitted:
            logger.info(f"Tokenizer: ignoring additional invocation {call.server}.{call.tool}")
        else:
            logger.info(f"Tokenizer: tool call decoded from {kind}: server={call.server}, tool={call.tool}")
            events.append(call)
            self.tool_emitted = True
        self.buf = self.buf[end:]
        return True

    def _next_construct(self) -> Optional[Tuple[str, int, int, str, int]]:
        """Earliest construct in the buffer as (kind, start, end, payload, hold_limit)."""
        buf = self.buf
        found = []

        m = TOOL_TAG_RE.search(buf)
        if m:
            found.append((_TOOL_TAG, m.start(), m.end(), m.group(1), 0))
        else:
            o = TOOL_OPEN_RE.search(buf)
            if o:
                found.append((_PENDING, o.start(), len(buf), "", self.max_tool_chars))

        m = USE_TAG_RE.search(buf)
        if m:
            found.append((_USE_TAG, m.start(), m.end(), m.group(1), 0))
        else:
            o = USE_OPEN_RE.search(buf)
            if o:
                found.append((_PENDING, o.start(), len(buf), "", self.max_tool_chars))

        obj = self._find_object()
        if obj is not None:
            found.append(obj)

        m = XML_TYPE_RE.search(buf)
        if m:
            e = XML_END_RE.search(buf, m.end())
            if e:
                found.append((_XML, m.start(), e.end(), "", 0))
            else:
                found.append((_PENDING, m.start(), len(buf), "", self.max_tool_chars))

        if self.state == ParserState.BODY:
            m = self.THINK_OPEN_RE.search(buf)
            if m:
                found.append((_THINK, m.start(), m.end(), "", 0))

        idx = buf.find(self.FENCE)
        if idx != -1:
            found.append((_FENCE, idx, idx + len(self.FENCE), "", 0))

        if not found:
            return None
        return min(found, key=lambda c: (c[1], _PRIORITY[c[0]]))

    def _find_object(self):
        """First top-level object carrying an invocation field, complete or still open."""
        buf = self.buf
        offset = 0
        held = None
        while True:
            rescan = None
            for start, end in find_top_level_objects(buf, offset):
                if end is not None:
                    if has_invocation_field(buf[start:end]):
                        return (_OBJECT, start, end, "", 0)
                    continue
                body = buf[start:]
                if has_invocation_field(body):
                    if held is None:
                        held = (_PENDING, start, len(buf), "", self.max_tool_chars)
                    # the open brace may be stray prose; look for a complete invocation inside it
                    rescan = start + 1
                elif held is None and looks_like_json_object(body):
                    return (_PENDING, start, len(buf), "", self.max_object_hold)
            if rescan is None:
                return held
            offset = rescan

    @staticmethod
    def _decode(kind: str, span: str, payload: str) -> Optional[ToolCall]:
        if kind == _TOOL_TAG:
            return decode_tag_body(payload)
        if kind == _USE_TAG:
            return decode_use_tag_invocation(payload)
        if kind == _OBJECT:
            return decode_json_invocation(span)
        return decode_xml_invocation(span)

    @staticmethod
    def _emit_text(events: List[StreamEvent], text: str) -> None:
        if text:
            events.append(ContentToken(text))

import re
from typing import Callable, List, Optional, Tuple

from chatstream_service.core.logging import logger
from chatstream_service.core.types import ContentToken, StreamEvent, SuppressionState
from chatstream_service.protocol.parsers.decoders import decode_invocation

# (pattern, closing tag or None). None means the hold ends when brace depth returns
# to zero, or at a line/statement boundary if no '{' was seen.
TRIGGERS: List[Tuple[re.Pattern, Optional[str]]] = [
    (re.compile(r"<\|channel\|>\s*commentary\s+to=", re.IGNORECASE), None),
    (re.compile(r"commentary\s+to=", re.IGNORECASE), None),
    # bare target: only at the start of the reply or after whitespace
    (re.compile(r"(?<!\S)to\s*=\s*[a-z0-9_.\-]+", re.IGNORECASE), None),
    (re.compile(r"<use_mcp_tool>", re.IGNORECASE), "</use_mcp_tool>"),
    (re.compile(r"<tool_call>", re.IGNORECASE), "</tool_call>"),
    (re.compile(r"\btool_call\b\s*[:=(]?\s*\{", re.IGNORECASE), None),
    # stray channel control tokens such as <|call|> end at their own "|>"
    (re.compile(r"<\|[a-z_]+\|>", re.IGNORECASE), "|>"),
]

_BOUNDARIES = "\n;"
_CONTROL_TOKEN_RE = re.compile(r"^<\|[a-z_]+\|>$", re.IGNORECASE)


class SuppressionValve:
    """
    Guard in front of the visible-content path.
    Keeps a short guard window unreleased and scans it for invocation-like prefixes
    (channel markers, `to=server.tool`, opening tags, `tool_call {`). From a hit
    onward everything is withheld until the instruction ends; the withheld text is
    then decoded into a ToolCall or dropped. Withheld text is never shown.
    """

    def __init__(
        self,
        guard_window: int = 64,
        max_held_chars: int = 32768,
        on_detecting: Optional[Callable[[bool], None]] = None,
    ):
        self.guard_window = guard_window
        self.max_held_chars = max_held_chars
        self.on_detecting = on_detecting
        self.state = SuppressionState()
        # last character consumed ahead of state.held; lookbehinds see it
        self._prev_char = ""

    def filter(self, event: ContentToken) -> List[StreamEvent]:
        """Return the visible part of a content increment, plus a ToolCall when a hold completes."""
        out: List[StreamEvent] = []
        text = event.text if isinstance(event, ContentToken) else str(event or "")
        if not text:
            return out

        self.state.held += text
        try:
            self._drain(out)
        except Exception:
            # never show a half-formed instruction: drop what is withheld
            logger.exception("Valve: internal failure, dropping withheld text")
            dropped = self._take(len(self.state.held))
            if not self.state.active:
                self._emit(out, dropped)
            self._finish_hold()
        return out

    def release(self) -> List[StreamEvent]:
        """Emit the guard window now (no hold in progress)."""
        out: List[StreamEvent] = []
        if not self.state.active and self.state.held:
            self._emit(out, self._take(len(self.state.held)))
        return out

    def flush(self) -> List[StreamEvent]:
        out: List[StreamEvent] = []
        s = self.state
        if s.active:
            logger.debug(f"Valve flush: resolving open hold of {len(s.held)} chars")
            self._resolve(out, self._take(len(s.held)))
        elif s.held:
            self._emit(out, self._take(len(s.held)))
        s.reset()
        return out

    # --- internals ---

    def _drain(self, out: List[StreamEvent]) -> None:
        s = self.state
        while True:
            if not s.active:
                hit = self._find_trigger(s.held)
                if hit is None:
                    # No trigger: release everything behind the guard window
                    if len(s.held) > self.guard_window:
                        self._emit(out, self._take(len(s.held) - self.guard_window))
                    return
                index, closing_tag = hit
                self._emit(out, self._take(index))
                self._start_hold(closing_tag)
                continue

            done_at = self._scan_hold()
            if done_at is None:
                if len(s.held) > self.max_held_chars:
                    logger.warning(f"Valve: withheld text exceeded {self.max_held_chars} chars, resolving early")
                    self._resolve(out, self._take(len(s.held)))
                return
            self._resolve(out, self._take(done_at))

    def _take(self, n: int) -> str:
        """Consume the first n withheld characters, remembering the last one as scan context."""
        s = self.state
        text, s.held = s.held[:n], s.held[n:]
        if text:
            self._prev_char = text[-1]
        return text

    def _find_trigger(self, text: str) -> Optional[Tuple[int, Optional[str]]]:
        # search from past the context character so lookbehinds see it but matches never start in it
        ctx = self._prev_char
        scan = ctx + text
        best: Optional[Tuple[int, Optional[str]]] = None
        for pattern, closing_tag in TRIGGERS:
            m = pattern.search(scan, len(ctx))
            if m and (best is None or m.start() - len(ctx) < best[0]):
                best = (m.start() - len(ctx), closing_tag)
        return best

    def _start_hold(self, closing_tag: Optional[str]) -> None:
        s = self.state
        s.active = True
        s.closing_tag = closing_tag
        s.brace_depth = 0
        s.seen_structure_start = False
        s.scan_pos = 0
        s.in_string = False
        s.escape = False
        logger.debug(f"Valve: trigger hit, withholding from {s.held[:40]!r}")
        self._notify(True)

    def _scan_hold(self) -> Optional[int]:
        """Index just past the end of the withheld instruction, or None if it is still open."""
        s = self.state
        held = s.held
        if s.closing_tag:
            m = re.compile(re.escape(s.closing_tag), re.IGNORECASE).search(held, s.scan_pos)
            if m:
                return m.end()
            s.scan_pos = max(0, len(held) - len(s.closing_tag) + 1)
            return None

        for i in range(s.scan_pos, len(held)):
            ch = held[i]
            if s.in_string:
                if s.escape:
                    s.escape = False
                elif ch == "\\":
                    s.escape = True
                elif ch == '"':
                    s.in_string = False
                continue
            if ch == '"' and s.brace_depth > 0:
                s.in_string = True
            elif ch == "{":
                s.seen_structure_start = True
                s.brace_depth += 1
            elif ch == "}":
                if s.brace_depth > 0:
                    s.brace_depth -= 1
                if s.seen_structure_start and s.brace_depth == 0:
                    return i + 1
            elif ch in _BOUNDARIES and not s.seen_structure_start:
                return i + 1
        s.scan_pos = len(held)
        return None

    def _resolve(self, out: List[StreamEvent], hidden: str) -> None:
        call = decode_invocation(hidden)
        if call is not None:
            logger.info(f"Valve: withheld text decoded as tool call: server={call.server}, tool={call.tool}")
            out.append(call)
        elif _CONTROL_TOKEN_RE.match(hidden.strip()):
            logger.debug(f"Valve: dropping control token {hidden.strip()!r}")
        else:
            # invocation-like text no grammar understands: hidden, but reported
            logger.warning(f"Valve: unrecognized invocation grammar, dropping withheld text {hidden[:80]!r}")
        self._finish_hold()

    def _finish_hold(self) -> None:
        s = self.state
        was_active = s.active
        held = s.held
        s.reset()
        s.held = held
        if was_active:
            self._notify(False)

    def _notify(self, detecting: bool) -> None:
        if self.on_detecting is None:
            return
        try:
            self.on_detecting(detecting)
        except Exception:
            logger.exception("Valve: on_detecting hook failed")

    @staticmethod
    def _emit(out: List[StreamEvent], text: str) -> None:
        if text:
            out.append(ContentToken(text))

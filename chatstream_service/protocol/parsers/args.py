import json
from typing import Any, Dict, Mapping, Optional

from chatstream_service.core.logging import logger

_VALID_ESCAPES = frozenset('"\\/bfnrtu')
_RAW_CONTROL = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
_decoder = json.JSONDecoder()


def repair_json(raw: str) -> str:
    """
    Best-effort fix-up of near-miss JSON emitted by models.
    Trims anything before the first '{', escapes stray backslashes and raw
    control characters inside string literals.
    """
    s = (raw or "").strip()
    idx = s.find("{")
    if idx > 0:
        s = s[idx:]

    out = []
    in_str = False
    i = 0
    n = len(s)
    while i < n:
        ch = s[i]
        if in_str:
            if ch == "\\":
                nxt = s[i + 1] if i + 1 < n else ""
                if nxt and nxt in _VALID_ESCAPES:
                    out.append(ch)
                    out.append(nxt)
                    i += 2
                    continue
                out.append("\\\\")
                i += 1
                continue
            if ch == '"':
                in_str = False
            elif ch in _RAW_CONTROL:
                out.append(_RAW_CONTROL[ch])
                i += 1
                continue
        elif ch == '"':
            in_str = True
        out.append(ch)
        i += 1
    return "".join(out)


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Decode the first JSON object in text, retrying once on the repaired form.
    Trailing data after the object is ignored."""
    if not text:
        return None
    for candidate in (text, repair_json(text)):
        start = candidate.find("{")
        if start == -1:
            continue
        try:
            obj, _ = _decoder.raw_decode(candidate, start)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def normalize_arguments(value: Any) -> Optional[Dict[str, Any]]:
    """
    Accept either an already structured mapping or a string that needs decoding.
    Anything that does not yield an object means "no arguments".
    """
    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if not value.strip():
            return None
        parsed = parse_json_object(value)
        if parsed is None:
            logger.warning("Arguments are not a JSON object, dropping: %r", value[:100])
        return parsed
    logger.warning("Unsupported argument type %s, dropping", type(value).__name__)
    return None

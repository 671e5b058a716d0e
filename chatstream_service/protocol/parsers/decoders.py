"""
Decoders for the textual tool-invocation grammars models emit.

Supported forms (all decode to the same ToolCall):
- <tool_call>{json}</tool_call> or <tool_call><type>tool_call</type><server>..</server>...</tool_call>
- <use_mcp_tool><server_name>..</server_name><tool_name>..</tool_name><arguments>{json}</arguments></use_mcp_tool>
- a bare JSON object with "type": "tool_call" (or a "tool" / "tool_name" key)
- the channel form: <|channel|>commentary to=server.tool ... {json}

Every decoder returns None instead of raising when the text is not a usable invocation.
"""
import re
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from chatstream_service.core.types import ToolCall
from chatstream_service.protocol.parsers.args import normalize_arguments, parse_json_object

SERVER_KEYS = ("server", "mcp", "provider")
TOOL_KEYS = ("tool", "tool_name", "name")
ARGS_KEYS = ("parameters", "args", "params", "arguments")

INVOCATION_FIELD_RE = re.compile(r'"(?:type|r#type)"\s*:\s*"tool_call"|"tool(?:_name)?"\s*:', re.IGNORECASE)
JSON_START_RE = re.compile(r'\{\s*(?:"|$)')

TOOL_TAG_RE = re.compile(r"<tool_call>([\s\S]*?)</tool_call>", re.IGNORECASE)
USE_TAG_RE = re.compile(r"<use_mcp_tool>([\s\S]*?)</use_mcp_tool>", re.IGNORECASE)
TOOL_OPEN_RE = re.compile(r"<tool_call>", re.IGNORECASE)
USE_OPEN_RE = re.compile(r"<use_mcp_tool>", re.IGNORECASE)
TOOL_CLOSE_RE = re.compile(r"</tool_call>", re.IGNORECASE)
USE_CLOSE_RE = re.compile(r"</use_mcp_tool>", re.IGNORECASE)

XML_TYPE_RE = re.compile(r"<type>\s*tool_call\s*</type>", re.IGNORECASE)
XML_END_RE = re.compile(r"</parameters>", re.IGNORECASE)
_XML_SERVER_RE = re.compile(r"<server>\s*([^<]+?)\s*</server>", re.IGNORECASE)
_XML_TOOL_RE = re.compile(r"<tool>\s*([^<]+?)\s*</tool>", re.IGNORECASE)
_XML_PARAMS_RE = re.compile(r"<parameters>([\s\S]*?)</parameters>", re.IGNORECASE)
_XML_PAIR_RE = re.compile(r"<([A-Za-z0-9_]+)>([\s\S]*?)</\1>")

_USE_SERVER_RE = re.compile(r"<server_name[^>]*>\s*([\s\S]*?)\s*</server_name>", re.IGNORECASE)
_USE_TOOL_RE = re.compile(r"<tool_name[^>]*>\s*([\s\S]*?)\s*</tool_name>", re.IGNORECASE)
_USE_ARGS_RE = re.compile(r"<arguments[^>]*>\s*([\s\S]*?)\s*</arguments>", re.IGNORECASE)
_FENCE_OPEN_RE = re.compile(r"^```[A-Za-z]*\s*")
_FENCE_CLOSE_RE = re.compile(r"```\s*$")

CHANNEL_TARGET_RE = re.compile(r"\bto\s*=\s*([A-Za-z0-9_.\-]+)", re.IGNORECASE)

_FIELD_RES = {
    key: re.compile(r'"%s"\s*:\s*"([^"]+)"' % key, re.IGNORECASE)
    for key in SERVER_KEYS + TOOL_KEYS
}
_PARAMS_BLOCK_RE = re.compile(r'"(?:parameters|args|params|arguments)"\s*:\s*\{([\s\S]*?)\}', re.IGNORECASE)
# values end at a quote followed by the next key or the end of the block, so
# unescaped quotes inside a value survive
_KV_RE = re.compile(r'"([^"]+)"\s*:\s*"([\s\S]*?)"(?=\s*(?:,\s*"|$))')


def find_top_level_objects(text: str, start: int = 0) -> Iterator[Tuple[int, Optional[int]]]:
    """
    Yield (start, end) spans of top-level {...} objects in text, end exclusive.
    String literals and escapes are only tracked inside an object, so quotes in
    surrounding prose do not disturb the scan. An object still open at the end of
    text is yielded last as (start, None).
    """
    depth = 0
    in_str = False
    esc = False
    obj_start = -1
    for i in range(start, len(text)):
        ch = text[i]
        if depth == 0:
            if ch == "{":
                depth = 1
                obj_start = i
            continue
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                yield obj_start, i + 1
    if depth > 0:
        yield obj_start, None


def first_balanced_object(text: str) -> Optional[str]:
    for start, end in find_top_level_objects(text):
        if end is not None:
            return text[start:end]
        return None
    return None


def has_invocation_field(text: str) -> bool:
    return INVOCATION_FIELD_RE.search(text) is not None


def looks_like_json_object(text: str) -> bool:
    """True for '{' followed by optional whitespace and a quote (or nothing yet)."""
    return JSON_START_RE.match(text) is not None


def _first_str(obj: Mapping[str, Any], keys) -> str:
    for key in keys:
        val = obj.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return ""


def _arguments_from(obj: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    for key in ARGS_KEYS:
        if obj.get(key) is not None:
            return normalize_arguments(obj[key])
    return None


def invocation_from_mapping(obj: Mapping[str, Any]) -> Optional[ToolCall]:
    kind = str(obj.get("type") or obj.get("r#type") or "").lower()
    if kind != "tool_call" and not obj.get("tool") and not obj.get("tool_name"):
        return None
    server = _first_str(obj, SERVER_KEYS)
    tool = _first_str(obj, TOOL_KEYS)
    if not server or not tool:
        return None
    return ToolCall(server=server, tool=tool, arguments=_arguments_from(obj))


def _extract_fields(text: str) -> Optional[ToolCall]:
    """Field-by-field fallback for payloads json cannot load."""
    server = ""
    for key in SERVER_KEYS:
        m = _FIELD_RES[key].search(text)
        if m:
            server = m.group(1).strip()
            break
    tool = ""
    for key in TOOL_KEYS:
        m = _FIELD_RES[key].search(text)
        if m:
            tool = m.group(1).strip()
            break
    if not server or not tool:
        return None

    args: Optional[Dict[str, Any]] = None
    m_params = _PARAMS_BLOCK_RE.search(text)
    if m_params:
        args = {k: v for k, v in _KV_RE.findall(m_params.group(1).strip())}
    return ToolCall(server=server, tool=tool, arguments=args)


def decode_json_invocation(text: str) -> Optional[ToolCall]:
    if not text or "{" not in text:
        return None
    obj = parse_json_object(text)
    if obj is not None:
        call = invocation_from_mapping(obj)
        if call is not None:
            return call
    return _extract_fields(text)


def decode_xml_invocation(text: str) -> Optional[ToolCall]:
    txt = (text or "").strip()
    if not XML_TYPE_RE.search(txt):
        return None
    m_server = _XML_SERVER_RE.search(txt)
    m_tool = _XML_TOOL_RE.search(txt)
    server = m_server.group(1).strip() if m_server else ""
    tool = m_tool.group(1).strip() if m_tool else ""
    if not server or not tool:
        return None

    args: Optional[Dict[str, Any]] = None
    m_params = _XML_PARAMS_RE.search(txt)
    if m_params and m_params.group(1).strip():
        args = {tag: value.strip() for tag, value in _XML_PAIR_RE.findall(m_params.group(1))}
    return ToolCall(server=server, tool=tool, arguments=args)


def decode_tag_body(body: str) -> Optional[ToolCall]:
    """Body of a <tool_call> tag: JSON payload or the minimal XML form."""
    return decode_json_invocation(body) or decode_xml_invocation(body)


def decode_use_tag_invocation(block: str) -> Optional[ToolCall]:
    s = (block or "").strip()
    m_server = _USE_SERVER_RE.search(s)
    m_tool = _USE_TOOL_RE.search(s)
    server = m_server.group(1).strip() if m_server else ""
    tool = m_tool.group(1).strip() if m_tool else ""
    if not server or not tool:
        return None

    args: Optional[Dict[str, Any]] = None
    m_args = _USE_ARGS_RE.search(s)
    if m_args and m_args.group(1):
        inside = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", m_args.group(1).strip()))
        start = inside.find("{")
        end = inside.rfind("}")
        if start != -1 and end > start:
            args = parse_json_object(inside[start : end + 1])
    return ToolCall(server=server, tool=tool, arguments=args)


def decode_channel_invocation(text: str) -> Optional[ToolCall]:
    """<|channel|>commentary to=server.tool <|message|>{args}; the tool may also live in the payload."""
    m = CHANNEL_TARGET_RE.search(text or "")
    if not m:
        return None
    target = m.group(1).strip(".")
    server, _, tool = target.partition(".")
    payload = first_balanced_object(text[m.end() :])
    obj = parse_json_object(payload) if payload else None

    if obj is not None:
        nested = invocation_from_mapping(obj)
        if nested is not None:
            return nested
    if not tool and obj is not None:
        tool = _first_str(obj, TOOL_KEYS)
        args = _arguments_from(obj)
    else:
        args = obj
    if not server or not tool:
        return None
    return ToolCall(server=server, tool=tool, arguments=args)


def _tag_inner(open_re: re.Pattern, close_re: re.Pattern, text: str) -> Optional[str]:
    m = open_re.search(text)
    if not m:
        return None
    close = close_re.search(text, m.end())
    return text[m.end() :] if close is None else text[m.end() : close.start()]


def decode_invocation(text: str) -> Optional[ToolCall]:
    """Try every grammar on a span of withheld text."""
    if not text:
        return None
    inner = _tag_inner(USE_OPEN_RE, USE_CLOSE_RE, text)
    if inner is not None:
        call = decode_use_tag_invocation(inner)
        if call is not None:
            return call
    inner = _tag_inner(TOOL_OPEN_RE, TOOL_CLOSE_RE, text)
    if inner is not None:
        call = decode_tag_body(inner)
        if call is not None:
            return call
    return decode_channel_invocation(text) or decode_json_invocation(text) or decode_xml_invocation(text)

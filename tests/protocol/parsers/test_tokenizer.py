import random

import pytest

from chatstream_service.core.types import (
    ContentToken,
    ParserState,
    ThinkingEnd,
    ThinkingStart,
    ThinkingToken,
    ToolCall,
)
from chatstream_service.protocol.parsers.tokenizer import StructuredStreamTokenizer

REPLY = (
    "Intro text. <think>plan the call</think>Here goes: "
    '<tool_call>{"server": "weather", "tool": "forecast", "arguments": {"city": "Paris"}}</tool_call>'
    " Thanks!"
)


def run(chunks, **kwargs):
    tok = StructuredStreamTokenizer(**kwargs)
    events = []
    for c in chunks:
        events.extend(tok.push(c))
    events.extend(tok.flush())
    return events


def content_of(events):
    return "".join(e.text for e in events if isinstance(e, ContentToken))


def thinking_of(events):
    return "".join(e.text for e in events if isinstance(e, ThinkingToken))


def calls_of(events):
    return [e for e in events if isinstance(e, ToolCall)]


def random_partition(text, rng):
    chunks = []
    i = 0
    while i < len(text):
        size = rng.randint(1, 12)
        chunks.append(text[i : i + size])
        i += size
    return chunks


class TestPlainText:
    def test_text_is_held_until_flush(self):
        tok = StructuredStreamTokenizer()
        assert tok.push("Hello ") == []
        assert tok.push("world") == []
        assert tok.flush() == [ContentToken("Hello world")]

    def test_long_text_released_behind_safe_tail(self):
        tok = StructuredStreamTokenizer()
        events = tok.push("a" * 40)
        assert content_of(events) == "a" * 24
        assert content_of(tok.flush()) == "a" * 16

    def test_safe_tail_never_below_longest_marker(self):
        tok = StructuredStreamTokenizer(safe_tail=2)
        assert tok.safe_tail == len("</use_mcp_tool>") - 1

    def test_empty_chunk_is_a_no_op(self):
        tok = StructuredStreamTokenizer()
        assert tok.push("") == []

    def test_flush_is_idempotent(self):
        tok = StructuredStreamTokenizer()
        tok.push("text")
        assert tok.flush() == [ContentToken("text")]
        assert tok.flush() == []


class TestThinking:
    def test_single_chunk_thinking(self):
        events = run(["<think>reasoning</think>done"])
        assert events == [ThinkingStart(), ThinkingToken("reasoning"), ThinkingEnd(), ContentToken("done")]

    def test_split_markers(self):
        events = run(["<thi", "nk>reason", "ing</th", "ink>done"])
        assert isinstance(events[0], ThinkingStart)
        assert thinking_of(events) == "reasoning"
        assert sum(isinstance(e, ThinkingEnd) for e in events) == 1
        assert content_of(events) == "done"

    def test_flush_closes_open_thinking(self):
        tok = StructuredStreamTokenizer()
        events = tok.push("<think>unfinished")
        assert events == [ThinkingStart(), ThinkingToken("unfinished")]
        assert tok.state == ParserState.THINKING
        assert tok.flush() == [ThinkingEnd()]
        assert tok.state == ParserState.BODY

    def test_partial_close_marker_is_flushed_as_thinking(self):
        tok = StructuredStreamTokenizer()
        tok.push("<think>abc</thi")
        assert tok.flush() == [ThinkingToken("</thi"), ThinkingEnd()]

    def test_prose_before_thinking(self):
        events = run(["Okay. <think>x</think>"])
        assert events[:2] == [ContentToken("Okay. "), ThinkingStart()]


class TestFences:
    def test_think_is_literal_inside_fence(self):
        text = "Before ```py\n<think>no</think>\n``` after"
        events = run([text])
        assert not any(isinstance(e, (ThinkingStart, ThinkingToken, ThinkingEnd)) for e in events)
        assert content_of(events) == text

    def test_fence_state_toggles(self):
        tok = StructuredStreamTokenizer()
        tok.push("```code")
        assert tok.state == ParserState.FENCE
        tok.push(" more```")
        assert tok.state == ParserState.BODY


class TestInvocations:
    def test_bare_object_split_across_chunks(self):
        events = run(['{"ty', 'pe":"tool_call","server":"fs","tool":"read"}'])
        assert events == [ToolCall(server="fs", tool="read")]

    def test_tool_call_tag_with_json(self):
        events = run([REPLY])
        assert calls_of(events) == [ToolCall("weather", "forecast", {"city": "Paris"})]
        assert content_of(events) == "Intro text. Here goes:  Thanks!"
        assert thinking_of(events) == "plan the call"

    def test_tool_call_tag_with_xml_body(self):
        events = run(["<tool_call><type>tool_call</type><server>fs</server><tool>ls</tool><parameters></parameters></tool_call>"])
        assert calls_of(events) == [ToolCall("fs", "ls")]

    def test_use_mcp_tool_with_fenced_arguments(self):
        text = (
            "Let me check.<use_mcp_tool><server_name>weather</server_name><tool_name>get</tool_name>"
            '<arguments>```json\n{"city": "Oslo"}\n```</arguments></use_mcp_tool>'
        )
        events = run([text])
        assert events == [ContentToken("Let me check."), ToolCall("weather", "get", {"city": "Oslo"})]

    def test_bare_xml_body(self):
        text = "Calling <type>tool_call</type><server>fs</server><tool>list</tool><parameters><path>/tmp</path></parameters> ok"
        events = run([text])
        assert calls_of(events) == [ToolCall("fs", "list", {"path": "/tmp"})]
        assert content_of(events) == "Calling  ok"

    def test_tool_name_object(self):
        events = run(['Use {"tool_name": "search", "server": "web", "args": {"q": "x"}} now'])
        assert calls_of(events) == [ToolCall("web", "search", {"q": "x"})]
        assert content_of(events) == "Use  now"

    def test_second_invocation_is_consumed(self):
        text = (
            '<tool_call>{"server":"a","tool":"x"}</tool_call> mid '
            '<tool_call>{"server":"b","tool":"y"}</tool_call> end'
        )
        events = run([text])
        assert calls_of(events) == [ToolCall("a", "x")]
        assert content_of(events) == " mid  end"

    def test_undecodable_tag_is_text(self):
        text = "<tool_call>not a call</tool_call>"
        events = run([text])
        assert calls_of(events) == []
        assert content_of(events) == text

    def test_plain_json_is_not_a_call(self):
        text = 'data: {"a": 1, "b": [1, 2]} end'
        events = run([text])
        assert calls_of(events) == []
        assert content_of(events) == text

    def test_stray_brace_before_invocation(self):
        text = 'Note { "tool": "t", {"type":"tool_call","server":"s","tool":"t"} tail'
        events = run([text])
        assert calls_of(events) == [ToolCall("s", "t")]

    def test_unclosed_tag_is_content_on_flush(self):
        tok = StructuredStreamTokenizer()
        assert tok.push('<tool_call>{"server":"a"') == []
        assert content_of(tok.flush()) == '<tool_call>{"server":"a"'

    def test_speculative_object_released_past_hold_limit(self):
        tok = StructuredStreamTokenizer(max_object_hold=20)
        text = '{"note": "' + "x" * 40
        events = tok.push(text)
        assert content_of(events) == text[:-16]
        assert content_of(events + tok.flush()) == text

    def test_tool_emitted_flag(self):
        tok = StructuredStreamTokenizer()
        tok.push('{"type":"tool_call","server":"s","tool":"t"}')
        assert tok.tool_emitted


class TestChunkInvariance:
    @pytest.mark.parametrize("seed", range(25))
    def test_random_partitions_match_single_push(self, seed):
        expected = run([REPLY])
        events = run(random_partition(REPLY, random.Random(seed)))
        assert content_of(events) == content_of(expected)
        assert thinking_of(events) == thinking_of(expected)
        assert calls_of(events) == calls_of(expected)

    def test_character_by_character(self):
        events = run(list(REPLY))
        assert calls_of(events) == [ToolCall("weather", "forecast", {"city": "Paris"})]
        assert content_of(events) == "Intro text. Here goes:  Thanks!"

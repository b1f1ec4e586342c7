"""
Unit Tests for stream event parsing and line reassembly
"""
import json

import pytest

from sandbox_relay.services.stream_events import (
    LineAssembler,
    StreamEvent,
    StreamEventKind,
    assistant_text,
    parse_line,
)

ASSISTANT_LINE = json.dumps({
    "type": "assistant",
    "message": {"content": [
        {"type": "text", "text": "Hello "},
        {"type": "tool_use", "name": "Write", "input": {}},
        {"type": "text", "text": "world"},
    ]},
})


class TestParseLine:

    def test_structured_event_is_forwarded_verbatim(self):
        event = parse_line(ASSISTANT_LINE)

        assert event.kind == StreamEventKind.ASSISTANT
        assert event.to_dict() == json.loads(ASSISTANT_LINE)

    @pytest.mark.parametrize("kind", ["system", "result", "user", "error"])
    def test_known_types(self, kind):
        assert parse_line(json.dumps({"type": kind})).kind == StreamEventKind(kind)

    def test_unknown_type_keeps_payload(self):
        event = parse_line('{"type": "progress", "pct": 40}')

        assert event.kind == StreamEventKind.UNKNOWN
        assert event.payload == {"type": "progress", "pct": 40}

    def test_bridge_only_types_are_not_trusted(self):
        assert parse_line('{"type": "done"}').kind == StreamEventKind.UNKNOWN
        assert parse_line('{"type": "raw"}').kind == StreamEventKind.UNKNOWN

    @pytest.mark.parametrize("line", ["npm WARN deprecated", "{broken", "[1, 2]", "42", '"text"'])
    def test_non_object_lines_become_raw(self, line):
        event = parse_line(line)

        assert event.is_raw
        assert event.to_dict() == {"type": "raw", "content": line}


class TestAssistantText:

    def test_joins_text_segments_only(self):
        assert assistant_text(parse_line(ASSISTANT_LINE)) == "Hello world"

    def test_string_content(self):
        event = parse_line('{"type": "assistant", "message": {"content": "plain"}}')

        assert assistant_text(event) == "plain"

    @pytest.mark.parametrize("line", [
        '{"type": "assistant"}',
        '{"type": "assistant", "message": "oops"}',
        '{"type": "assistant", "message": {"content": 3}}',
        '{"type": "result", "result": "Hello"}',
    ])
    def test_missing_or_foreign_content_is_empty(self, line):
        assert assistant_text(parse_line(line)) == ""


class TestBridgeEvents:

    def test_error_event_shape(self):
        assert StreamEvent.error("AGENT_TIMEOUT", "slow", retryable=False).to_dict() == {
            "type": "error", "code": "AGENT_TIMEOUT", "message": "slow", "retryable": False,
        }

    def test_done_event_shape(self):
        assert StreamEvent.done().to_dict() == {"type": "done"}


class TestLineAssembler:

    def test_partial_line_waits_for_newline(self):
        assembler = LineAssembler()

        first = assembler.feed(b'{"type":"assistant"}\npartial')
        second = assembler.feed(b"-line\n")

        assert first == ['{"type":"assistant"}']
        assert second == ["partial-line"]
        assert assembler.pending == ""

    def test_multiple_lines_in_one_chunk(self):
        assert LineAssembler().feed(b"a\nb\nc\n") == ["a", "b", "c"]

    def test_nul_bytes_are_stripped(self):
        assert LineAssembler().feed(b"he\x00llo\n\x00") == ["hello"]

    def test_blank_lines_are_skipped(self):
        assert LineAssembler().feed(b"\n\n  \nx\n") == ["x"]

    def test_utf8_split_across_chunks(self):
        data = "héllo ✓\n".encode("utf-8")
        assembler = LineAssembler()

        lines = []
        for i in range(len(data)):
            lines.extend(assembler.feed(data[i:i + 1]))

        assert lines == ["héllo ✓"]

    def test_flush_returns_tail_once(self):
        assembler = LineAssembler()
        assembler.feed(b"done\ntrailing")

        assert assembler.flush() == "trailing"
        assert assembler.flush() is None

    def test_flush_of_whitespace_is_none(self):
        assembler = LineAssembler()
        assembler.feed(b"x\n   ")

        assert assembler.flush() is None

    def test_no_data_lost_across_arbitrary_boundaries(self):
        text = "line one\n{\"type\":\"system\"}\nthird line\nlast"
        data = text.encode("utf-8")

        for size in (1, 2, 3, 7, len(data)):
            assembler = LineAssembler()
            lines = []
            for i in range(0, len(data), size):
                lines.extend(assembler.feed(data[i:i + size]))
            tail = assembler.flush()
            if tail is not None:
                lines.append(tail)

            assert lines == text.split("\n")

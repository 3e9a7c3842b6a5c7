"""Tests for tool call signal parsing and incremental scanning."""

import pytest

from lmchat.tool_parsers import (
    ParsedToolCall,
    ToolSignalScanner,
    format_tool_call,
    parse_signal,
    partial_marker_length,
)


def scan(chunks: list[str]) -> list[tuple[str, str]]:
    """Feed chunks, flush, and merge consecutive events of the same kind."""
    scanner = ToolSignalScanner()
    events = []
    for chunk in chunks:
        events.extend(scanner.feed(chunk))
    events.extend(scanner.flush())

    merged: list[tuple[str, str]] = []
    for event in events:
        if merged and merged[-1][0] == event.kind and event.kind != "call":
            merged[-1] = (event.kind, merged[-1][1] + event.text)
        else:
            merged.append((event.kind, event.text))
    return merged


class TestParseSignal:

    def test_parses_name_and_arguments(self):
        call = parse_signal('{"name": "get_weather", "arguments": {"city": "Paris"}}')
        assert call == ParsedToolCall(name="get_weather", arguments='{"city": "Paris"}')

    def test_accepts_parameters_key(self):
        call = parse_signal('{"name": "search", "parameters": {"q": "x"}}')
        assert call.arguments == '{"q": "x"}'

    def test_string_arguments_kept_raw(self):
        call = parse_signal('{"name": "search", "arguments": "{\\"q\\": 1}"}')
        assert call.arguments == '{"q": 1}'

    def test_missing_arguments_default_to_empty_object(self):
        assert parse_signal('{"name": "get_time"}').arguments == "{}"

    def test_invalid_json_recovers_name(self):
        call = parse_signal('{"name": "get_time", "arguments": {oops}}')
        assert call.name == "get_time"
        assert "oops" in call.arguments

    def test_nameless_payload_returns_none(self):
        assert parse_signal('{"arguments": {}}') is None
        assert parse_signal("not json at all") is None
        assert parse_signal("[1, 2]") is None


class TestFormatToolCall:

    def test_format_matches_scanned_signal(self):
        text = format_tool_call("get_weather", {"city": "Paris"})
        body = '{"name": "get_weather", "arguments": {"city": "Paris"}}'
        assert text == f"<tool_call>{body}</tool_call>"
        assert scan([text]) == [("internal", text), ("call", body)]


class TestPartialMarker:

    @pytest.mark.parametrize("text,expected", [
        ("hello <", 1),
        ("hello <tool_", 6),
        ("hello", 0),
        ("<tool_call>", 0),
        ("", 0),
    ])
    def test_partial_lengths(self, text, expected):
        assert partial_marker_length(text, "<tool_call>") == expected


class TestToolSignalScanner:

    def test_plain_text_is_visible(self):
        assert scan(["Hello", " world"]) == [("visible", "Hello world")]

    def test_marker_split_across_tokens(self):
        events = scan(["Checking ", "<to", "ol_", "call>", '{"name": "x"}', "</tool", "_call>", " done"])
        assert events == [
            ("visible", "Checking "),
            ("internal", '<tool_call>{"name": "x"}</tool_call>'),
            ("call", '{"name": "x"}'),
            ("visible", " done"),
        ]

    def test_partial_marker_is_held_back(self):
        scanner = ToolSignalScanner()
        events = scanner.feed("a <tool")
        assert [(e.kind, e.text) for e in events] == [("visible", "a ")]
        assert scanner.pending == "<tool"

    def test_false_alarm_released(self):
        assert scan(["a <to", "y> b"]) == [("visible", "a <toy> b")]

    def test_unterminated_signal_with_name_becomes_call(self):
        events = scan(["<tool_call>", '{"name": "get_time", "arguments": {}}'])
        assert events[-1] == ("call", '{"name": "get_time", "arguments": {}}')

    def test_unterminated_garbage_signal_discarded(self):
        events = scan(["<tool_call>", "garbage"])
        assert all(kind != "call" for kind, _ in events)
        assert all(kind != "visible" for kind, _ in events)

    def test_would_open_signal(self):
        scanner = ToolSignalScanner()
        scanner.feed("x <tool")
        assert scanner.would_open_signal("_call>")
        assert not scanner.would_open_signal("box>")
        assert ToolSignalScanner().would_open_signal("<tool_call>")

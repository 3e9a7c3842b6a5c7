"""
Tool call signal parsing for the decode stream.

The model signals a tool invocation Hermes-style:
    <tool_call>{"name": "get_weather", "arguments": {"city": "Paris"}}</tool_call>

Decoded text arrives a token at a time, so markers can be split across
tokens. ToolSignalScanner splits the stream into user-visible text,
internal signal text and completed signals, holding back any tail that
could still turn into an opening marker.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

logger = logging.getLogger(__name__)

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"

NAME_PATTERN = re.compile(r'"name"\s*:\s*"([^"]+)"')


@dataclass
class ParsedToolCall:
    """Represents a parsed tool call."""
    name: str
    arguments: str  # Raw argument payload (normally a JSON object)


def parse_signal(payload: str) -> Optional[ParsedToolCall]:
    """
    Parse the payload between tool-call markers.

    Returns ParsedToolCall, or None if no tool name can be recovered.
    Arguments stay raw; if the payload is not valid JSON the raw payload
    is kept as the argument string so the invoker can degrade it.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        # Not valid JSON, try to extract name at least
        name_match = NAME_PATTERN.search(payload)
        if name_match:
            return ParsedToolCall(name=name_match.group(1), arguments=payload)
        return None

    if not isinstance(data, dict):
        return None
    name = data.get("name") or data.get("function")
    if not isinstance(name, str) or not name:
        return None
    args = data.get("arguments", data.get("parameters", {}))
    if args is None:
        args = {}
    args_str = args if isinstance(args, str) else json.dumps(args)
    return ParsedToolCall(name=name, arguments=args_str)


def format_tool_call(name: str, arguments: dict[str, Any]) -> str:
    """Render a tool call the way the model is instructed to emit it."""
    body = json.dumps({"name": name, "arguments": arguments}, ensure_ascii=False)
    return f"{TOOL_CALL_OPEN}{body}{TOOL_CALL_CLOSE}"


def partial_marker_length(text: str, marker: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of marker."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if marker.startswith(text[-size:]):
            return size
    return 0


# ─────────────────────────────────────────────────────────────────────
# INCREMENTAL SCANNER
# ─────────────────────────────────────────────────────────────────────


@dataclass
class ScanEvent:
    """
    One piece of scanner output.

    kind:
        visible  - text for the user
        internal - signal markup, never shown to the user
        call     - a completed signal; text is the raw payload
    """
    kind: Literal["visible", "internal", "call"]
    text: str


class ToolSignalScanner:
    """Incrementally separates tool-call signals from visible text."""

    def __init__(self, open_marker: str = TOOL_CALL_OPEN, close_marker: str = TOOL_CALL_CLOSE):
        self.open_marker = open_marker
        self.close_marker = close_marker
        self._buffer = ""
        self._payload = ""
        self._in_signal = False

    @property
    def in_signal(self) -> bool:
        return self._in_signal

    @property
    def pending(self) -> str:
        """Held-back text not yet classified."""
        return self._buffer

    def would_open_signal(self, text: str) -> bool:
        """True if appending text would complete an opening marker."""
        if self._in_signal:
            return False
        return self.open_marker in self._buffer + text

    def feed(self, text: str) -> list[ScanEvent]:
        self._buffer += text
        events: list[ScanEvent] = []

        while True:
            if not self._in_signal:
                idx = self._buffer.find(self.open_marker)
                if idx >= 0:
                    if idx:
                        events.append(ScanEvent("visible", self._buffer[:idx]))
                    events.append(ScanEvent("internal", self.open_marker))
                    self._buffer = self._buffer[idx + len(self.open_marker):]
                    self._in_signal = True
                    self._payload = ""
                    continue
                keep = partial_marker_length(self._buffer, self.open_marker)
                split = len(self._buffer) - keep
                if split:
                    events.append(ScanEvent("visible", self._buffer[:split]))
                self._buffer = self._buffer[split:]
                return events

            idx = self._buffer.find(self.close_marker)
            if idx >= 0:
                self._payload += self._buffer[:idx]
                events.append(ScanEvent("internal", self._buffer[:idx] + self.close_marker))
                events.append(ScanEvent("call", self._payload.strip()))
                self._buffer = self._buffer[idx + len(self.close_marker):]
                self._in_signal = False
                self._payload = ""
                continue
            keep = partial_marker_length(self._buffer, self.close_marker)
            split = len(self._buffer) - keep
            if split:
                self._payload += self._buffer[:split]
                events.append(ScanEvent("internal", self._buffer[:split]))
            self._buffer = self._buffer[split:]
            return events

    def flush(self) -> list[ScanEvent]:
        """
        Drain held-back text at end of generation.

        An unterminated signal still yields a call event when its payload
        names a tool: models often stop right before the closing marker.
        """
        events: list[ScanEvent] = []
        if not self._in_signal:
            if self._buffer:
                events.append(ScanEvent("visible", self._buffer))
        else:
            self._payload += self._buffer
            if self._buffer:
                events.append(ScanEvent("internal", self._buffer))
            if parse_signal(self._payload.strip()) is not None:
                events.append(ScanEvent("call", self._payload.strip()))
            else:
                logger.warning("Discarding unterminated tool call signal: %r", self._payload[:200])
            self._in_signal = False
            self._payload = ""
        self._buffer = ""
        return events

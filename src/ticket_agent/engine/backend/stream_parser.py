"""Incremental parser for line-delimited agent event streams."""

from __future__ import annotations

import json
from typing import Any

TOOL_SEPARATOR = "\n--- tool: {name} ---\n"
RESULT_SEPARATOR = "\n--- result ---\n"
TRUNCATION_MARKER = "\n... [truncated {omitted} chars]"


class StreamJsonParser:
    """Turn ``stream-json`` records into human-readable text fragments.

    Chunk boundaries are arbitrary: partial lines are kept until their newline
    arrives. Lines that are not JSON objects are passed through unchanged.
    """

    def __init__(self, *, result_max_chars: int = 2_000) -> None:
        self.result_max_chars = result_max_chars
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        fragments: list[str] = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[: newline + 1]
            self._buffer = self._buffer[newline + 1 :]
            fragments.extend(self._parse_line(line))
        return fragments

    def flush(self) -> list[str]:
        """Parse whatever is left after the stream closed."""

        if not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        return self._parse_line(line)

    def _parse_line(self, line: str) -> list[str]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            return [line]
        if not isinstance(record, dict):
            return [line]
        return [fragment for fragment in self._extract(record, line) if fragment]

    def _extract(self, record: dict[str, Any], line: str) -> list[str]:  # noqa: C901, PLR0911
        """Render one record; records of an unexpected shape come back as the raw line."""

        record_type = record.get("type")
        if record_type is None:
            return [line]

        if record_type == "assistant":
            message = record.get("message") or {}
            if not isinstance(message, dict):
                return [line]
            return self._content_blocks(message.get("content"))

        if record_type == "user":
            message = record.get("message") or {}
            if not isinstance(message, dict):
                return [line]
            content = message.get("content")
            if not isinstance(content, list):
                return []
            return [
                self._render_result(block.get("content"))
                for block in content
                if isinstance(block, dict) and block.get("type") == "tool_result"
            ]

        if record_type == "stream_event":
            event = record.get("event")
            return self._extract(event, line) if isinstance(event, dict) else [line]

        if record_type == "content_block_delta":
            delta = record.get("delta") or {}
            if not isinstance(delta, dict):
                return [line]
            if delta.get("type") == "text_delta":
                return [str(delta.get("text", ""))]
            return []

        if record_type == "content_block_start":
            block = record.get("content_block") or {}
            if not isinstance(block, dict):
                return [line]
            if block.get("type") == "text":
                return [str(block.get("text", ""))]
            if block.get("type") == "tool_use":
                return [TOOL_SEPARATOR.format(name=block.get("name", "?"))]
            return []

        if record_type == "result":
            result = record.get("result")
            return [self._render_result(result)] if result else []

        return []

    def _content_blocks(self, content: object) -> list[str]:
        if isinstance(content, str):
            return [content]
        if not isinstance(content, list):
            return []
        fragments: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                fragments.append(str(block.get("text", "")))
            elif block_type == "tool_use":
                fragments.append(TOOL_SEPARATOR.format(name=block.get("name", "?")))
            elif block_type == "tool_result":
                fragments.append(self._render_result(block.get("content")))
        return fragments

    def _render_result(self, content: object) -> str:
        text = _content_to_text(content)
        if len(text) > self.result_max_chars:
            omitted = len(text) - self.result_max_chars
            text = text[: self.result_max_chars] + TRUNCATION_MARKER.format(omitted=omitted)
        return f"{RESULT_SEPARATOR}{text}\n"


def _content_to_text(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)

from __future__ import annotations

import json

import allure

from ticket_agent.engine.backend.stream_parser import (
    RESULT_SEPARATOR,
    TOOL_SEPARATOR,
    StreamJsonParser,
)

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Agent Executor"),
]


def _line(record: dict) -> str:
    return json.dumps(record) + "\n"


def test_assistant_text_and_tool_use_are_rendered() -> None:
    parser = StreamJsonParser()
    record = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Reading files."},
                {"type": "tool_use", "name": "Read", "input": {"path": "a.py"}},
            ],
        },
    }

    assert parser.feed(_line(record)) == ["Reading files.", TOOL_SEPARATOR.format(name="Read")]


def test_partial_lines_wait_for_newline() -> None:
    parser = StreamJsonParser()
    line = _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}})

    assert parser.feed(line[:10]) == []
    assert parser.feed(line[10:]) == ["hi"]


def test_tool_results_are_truncated() -> None:
    parser = StreamJsonParser(result_max_chars=5)
    record = {
        "type": "user",
        "message": {
            "content": [{"type": "tool_result", "content": "0123456789"}],
        },
    }

    (fragment,) = parser.feed(_line(record))

    assert fragment.startswith(RESULT_SEPARATOR + "01234")
    assert "truncated 5 chars" in fragment


def test_stream_event_deltas_and_final_result() -> None:
    parser = StreamJsonParser()
    delta = {
        "type": "stream_event",
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "par"}},
    }
    result = {"type": "result", "result": "<promise>TASK COMPLETE</promise>"}

    fragments = parser.feed(_line(delta) + _line(result))

    assert fragments[0] == "par"
    assert "<promise>TASK COMPLETE</promise>" in fragments[1]


def test_non_json_lines_pass_through_and_flush_returns_tail() -> None:
    parser = StreamJsonParser()

    assert parser.feed("plain text line\n") == ["plain text line\n"]
    assert parser.feed('{"type": "system"}\n') == []
    assert parser.feed("no newline yet") == []
    assert parser.flush() == ["no newline yet"]
    assert parser.flush() == []


def test_unexpected_record_shapes_pass_through_raw() -> None:
    parser = StreamJsonParser()
    records = [
        {"type": "assistant", "message": "plain text"},
        {"type": "user", "message": ["not", "a", "dict"]},
        {"type": "content_block_delta", "delta": "x"},
        {"type": "content_block_start", "content_block": 3},
        {"type": "stream_event", "event": "ping"},
        {"text": "record without a type"},
    ]

    for record in records:
        assert parser.feed(_line(record)) == [_line(record)]


def test_untyped_stream_event_passes_through_outer_line() -> None:
    parser = StreamJsonParser()
    line = _line({"type": "stream_event", "event": {"delta": {"text": "x"}}})

    assert parser.feed(line) == [line]

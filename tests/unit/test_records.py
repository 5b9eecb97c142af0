from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_session_search.records import (
    AssistantMessageRow,
    DecodeError,
    EventMessageRow,
    ResponseItemRow,
    SessionMetaRow,
    TurnContextRow,
    UnknownRow,
    decode_line,
    detect_source,
    iter_file_rows,
    read_header,
)


def _line(record: dict) -> str:
    return json.dumps(record)


class TestDecodeLine:
    """Mapping of raw records onto the RawRow union."""

    def test_blank_line_has_no_rows(self) -> None:
        assert decode_line("   \n") == []

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(DecodeError):
            decode_line("{not json")

    def test_non_object_raises(self) -> None:
        with pytest.raises(DecodeError):
            decode_line("[1, 2]")

    def test_missing_discriminant_raises(self) -> None:
        with pytest.raises(DecodeError):
            decode_line(_line({"payload": {}}))

    def test_unknown_type_is_kept(self) -> None:
        rows = decode_line(_line({"type": "brand_new_record", "timestamp": "2025-01-01T00:00:00Z"}))

        assert rows == [UnknownRow("2025-01-01T00:00:00.000Z", "brand_new_record")]

    def test_bare_event_message(self) -> None:
        (row,) = decode_line(_line({"type": "user_message", "message": "Implement X"}))

        assert isinstance(row, EventMessageRow)
        assert row.payload.type == "user_message"
        assert row.payload.message == "Implement X"

    def test_codex_envelopes(self) -> None:
        meta = decode_line(_line({"type": "session_meta", "payload": {"id": "s1"}}))
        context = decode_line(_line({"type": "turn_context", "payload": {"model": "m"}}))
        event = decode_line(
            _line({"type": "event_msg", "payload": {"type": "agent_message", "message": "hi"}})
        )
        item = decode_line(
            _line(
                {
                    "type": "response_item",
                    "payload": {"type": "function_call", "name": "shell", "call_id": "c1"},
                }
            )
        )

        assert isinstance(meta[0], SessionMetaRow)
        assert isinstance(context[0], TurnContextRow)
        assert isinstance(event[0], EventMessageRow)
        assert isinstance(item[0], ResponseItemRow)
        assert item[0].payload.call_id == "c1"

    def test_response_item_content_and_summary(self) -> None:
        (row,) = decode_line(
            _line(
                {
                    "type": "reasoning",
                    "summary": [{"type": "summary_text", "text": "Plan"}],
                    "content": None,
                }
            )
        )

        assert isinstance(row, ResponseItemRow)
        assert row.payload.summary == ("Plan",)
        assert row.payload.content is None

    def test_bare_assistant_message(self) -> None:
        (row,) = decode_line(_line({"type": "assistant_message", "message": "done"}))

        assert row == AssistantMessageRow(None, "done")

    def test_epoch_millisecond_timestamp(self) -> None:
        (row,) = decode_line(_line({"type": "user_message", "message": "x", "timestamp": 1736668801000}))

        assert row.timestamp == "2025-01-12T08:00:01.000Z"

    @pytest.mark.parametrize("timestamp", [1e15, 1e20, float("inf")])
    def test_out_of_range_epoch_timestamp_is_dropped(self, timestamp: float) -> None:
        (row,) = decode_line(_line({"type": "user_message", "message": "x", "timestamp": timestamp}))

        assert row.timestamp is None
        assert row.payload.message == "x"

    def test_out_of_range_iso_timestamp_is_kept_raw(self) -> None:
        (row,) = decode_line(
            _line({"type": "user_message", "message": "x", "timestamp": "0001-01-01T00:00:00+01:00"})
        )

        assert row.timestamp == "0001-01-01T00:00:00+01:00"

    def test_event_images_keep_strings_only(self) -> None:
        (row,) = decode_line(_line({"type": "user_message", "images": ["a.png", 3, ""]}))

        assert row.payload.images == ("a.png", "")


class TestClaudeRecords:
    def test_user_text(self) -> None:
        (row,) = decode_line(
            _line({"type": "user", "sessionId": "s", "message": {"role": "user", "content": "hello"}})
        )

        assert isinstance(row, EventMessageRow)
        assert row.payload.type == "user_message"
        assert row.payload.message == "hello"

    def test_assistant_blocks_expand_in_order(self) -> None:
        rows = decode_line(
            _line(
                {
                    "type": "assistant",
                    "sessionId": "s",
                    "message": {
                        "role": "assistant",
                        "content": [
                            {"type": "text", "text": "Editing"},
                            {"type": "thinking", "thinking": "hmm"},
                            {"type": "tool_use", "id": "t1", "name": "Edit", "input": {"path": "a"}},
                        ],
                    },
                }
            )
        )

        assert [type(row) for row in rows] == [EventMessageRow, EventMessageRow, ResponseItemRow]
        assert rows[0].payload.type == "agent_reasoning"
        assert rows[1].payload.type == "agent_message"
        assert rows[2].payload.name == "Edit"
        assert rows[2].payload.call_id == "t1"

    def test_tool_result_becomes_call_output(self) -> None:
        (row,) = decode_line(
            _line(
                {
                    "type": "user",
                    "uuid": "u",
                    "message": {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": "t1",
                                "content": [{"type": "text", "text": "ok"}],
                                "is_error": True,
                            }
                        ],
                    },
                }
            )
        )

        assert isinstance(row, ResponseItemRow)
        assert row.payload.type == "function_call_output"
        assert row.payload.output == "ok"
        assert row.payload.status == "error"

    def test_summary_and_snapshot_records(self) -> None:
        (summary,) = decode_line(_line({"type": "summary", "summary": "Title"}))
        (snapshot,) = decode_line(_line({"type": "file-history-snapshot", "snapshot": {}}))

        assert summary.payload.type == "compacted"
        assert snapshot.payload.type == "ghost_snapshot"


class TestPiRecords:
    def test_session_and_model_change(self) -> None:
        (session,) = decode_line(_line({"type": "session", "id": "p1", "cwd": "/w"}))
        (model,) = decode_line(_line({"type": "model_change", "modelId": "m"}))

        assert isinstance(session, SessionMetaRow)
        assert isinstance(model, TurnContextRow)

    def test_tool_result_message(self) -> None:
        rows = decode_line(
            _line(
                {
                    "type": "message",
                    "message": {"role": "toolResult", "content": [{"type": "text", "text": "3 passed"}]},
                }
            )
        )

        assert len(rows) == 1
        assert rows[0].payload.type == "tool_result"
        assert rows[0].payload.message == "3 passed"

    def test_assistant_stop_reason(self) -> None:
        rows = decode_line(
            _line(
                {
                    "type": "message",
                    "message": {
                        "role": "assistant",
                        "content": [
                            {"type": "text", "text": "Running"},
                            {"type": "toolCall", "id": "tc", "name": "bash", "arguments": {"command": "ls"}},
                        ],
                        "stopReason": "toolUse",
                    },
                }
            )
        )

        assert [row.payload.type for row in rows] == [
            "agent_message",
            "function_call",
            "info",
        ]
        assert rows[2].payload.kind == "stop_reason"


class TestFiles:
    def test_iter_file_rows_skips_malformed_lines(self, codex_file: Path) -> None:
        positions = [position for position, _ in iter_file_rows(codex_file)]

        assert 15 not in positions
        assert 16 in positions
        assert positions == sorted(positions)

    def test_bad_timestamp_does_not_stop_the_file(self, write_session) -> None:
        path = write_session(
            "rollout.jsonl",
            [
                {"type": "user_message", "message": "first", "timestamp": 1736668801000},
                {"type": "user_message", "message": "second", "timestamp": 1e15},
                {"type": "agent_message", "message": "third", "timestamp": 1e20},
            ],
        )

        rows = [row for _, row in iter_file_rows(path)]

        assert [row.payload.message for row in rows] == ["first", "second", "third"]
        assert read_header(path).started_at == "2025-01-12T08:00:01.000Z"

    def test_iter_file_rows_limit(self, codex_file: Path) -> None:
        positions = {position for position, _ in iter_file_rows(codex_file, limit=3)}

        assert positions == {0, 1, 2}

    def test_codex_header(self, codex_file: Path) -> None:
        header = read_header(codex_file)

        assert header.source_kind == "codex"
        assert header.native_id == "0199-codex-1"
        assert header.cwd == "/work/api"
        assert header.model == "gpt-5-codex"
        assert header.started_at == "2025-01-10T10:00:00.000Z"

    def test_claude_header_uses_file_stem(self, claude_file: Path) -> None:
        header = read_header(claude_file)

        assert header.source_kind == "claude"
        assert header.native_id == "claude-session-1"
        assert header.title == "Web API session search"
        assert header.model == "claude-sonnet-4-5"
        assert header.cwd == "/work/web"

    def test_pi_header(self, pi_file: Path) -> None:
        header = read_header(pi_file)

        assert header.source_kind == "pi"
        assert header.native_id == "pi-session-1"
        assert header.model == "claude-opus-4"
        assert header.cwd == "/work/cli"

    def test_empty_file_header(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.jsonl"
        path.write_text("")

        header = read_header(path, source_kind="claude")

        assert header.source_kind == "claude"
        assert header.native_id == "empty"


def test_detect_source() -> None:
    assert detect_source([{"type": "session_meta", "payload": {}}]) == "codex"
    assert detect_source([{"type": "user", "sessionId": "s"}]) == "claude"
    assert detect_source([{"type": "session", "id": "p"}]) == "pi"
    assert detect_source([]) is None

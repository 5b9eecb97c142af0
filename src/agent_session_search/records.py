# ABOUTME: Raw record decoding for Codex, Claude Code and Pi session logs.
# ABOUTME: Maps each JSONL record onto the RawRow union consumed by the classifier.

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from .jsonvalue import JSONValue, as_text_list, string_value
from .timeutils import epoch_to_iso, normalize_iso

logger = logging.getLogger(__name__)

SOURCE_CODEX = "codex"
SOURCE_CLAUDE = "claude"
SOURCE_PI = "pi"
SOURCE_KINDS = (SOURCE_CODEX, SOURCE_CLAUDE, SOURCE_PI)

CODEX_ENVELOPE_TYPES = frozenset(
    {"session_meta", "turn_context", "event_msg", "response_item", "compacted"}
)

EVENT_MESSAGE_TYPES = frozenset(
    {
        "user_message",
        "agent_message",
        "agent_reasoning",
        "agent_reasoning_raw_content",
        "agent_reasoning_section_break",
        "reasoning_output",
        "token_count",
        "turn_boundary",
        "turn_aborted",
        "task_started",
        "task_complete",
        "environment_context",
        "ghost_snapshot",
        "compacted",
        "compaction",
        "exec_command_begin",
        "exec_command_end",
        "patch_apply_begin",
        "patch_apply_end",
        "mcp_tool_call_begin",
        "mcp_tool_call_end",
        "web_search_begin",
        "web_search_end",
        "plan_update",
        "entered_review_mode",
        "exited_review_mode",
        "stream_error",
        "error",
        "info",
        "tool_result",
    }
)

RESPONSE_ITEM_TYPES = frozenset(
    {
        "message",
        "reasoning",
        "function_call",
        "function_call_output",
        "custom_tool_call",
        "custom_tool_call_output",
        "local_shell_call",
        "web_search_call",
        "ghost_snapshot",
    }
)


class DecodeError(ValueError):
    """A line that is not a JSON object with a recognizable discriminant."""


@dataclass(frozen=True)
class EventMessagePayload:
    type: str
    kind: str | None = None
    message: str | None = None
    text: str | None = None
    reason: str | None = None
    images: tuple[str, ...] = ()
    info: JSONValue = None


@dataclass(frozen=True)
class ResponseItemPayload:
    type: str
    role: str | None = None
    name: str | None = None
    call_id: str | None = None
    status: str | None = None
    content: tuple[str, ...] | None = None
    summary: tuple[str, ...] | None = None
    arguments: JSONValue = None
    input: JSONValue = None
    output: JSONValue = None
    ghost_commit: JSONValue = None


@dataclass(frozen=True)
class RawRow:
    timestamp: str | None = None


@dataclass(frozen=True)
class SessionMetaRow(RawRow):
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssistantMessageRow(RawRow):
    text: str = ""


@dataclass(frozen=True)
class TurnContextRow(RawRow):
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventMessageRow(RawRow):
    payload: EventMessagePayload = field(default_factory=lambda: EventMessagePayload(type=""))


@dataclass(frozen=True)
class ResponseItemRow(RawRow):
    payload: ResponseItemPayload = field(default_factory=lambda: ResponseItemPayload(type=""))


@dataclass(frozen=True)
class UnknownRow(RawRow):
    record_type: str = ""


@dataclass
class SessionHeader:
    """Session-level fields read without touching message bodies."""

    source_kind: str
    native_id: str | None = None
    cwd: str | None = None
    model: str | None = None
    started_at: str | None = None
    title: str | None = None


def decode_line(line: str) -> list[RawRow]:
    """Decode one JSONL line into raw rows.

    Most records decode to exactly one row. Claude Code and Pi pack several
    content blocks into one record; those expand to one row per block kind,
    with at most one user/assistant message row per line.
    """
    stripped = line.strip()
    if not stripped:
        return []
    try:
        record = json.loads(stripped)
    except ValueError as exc:
        raise DecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(record, dict):
        raise DecodeError(f"expected a JSON object, got {type(record).__name__}")
    try:
        return decode_record(record)
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError(f"cannot decode record: {exc}") from exc


def decode_record(record: dict[str, Any]) -> list[RawRow]:
    record_type = record.get("type") or record.get("kind") or record.get("record_type")
    if not isinstance(record_type, str) or not record_type.strip():
        raise DecodeError("record has no type discriminant")
    record_type = record_type.strip()
    lowered = record_type.lower()
    timestamp = _timestamp_of(record)

    payload = record.get("payload")
    if lowered in CODEX_ENVELOPE_TYPES and isinstance(payload, dict):
        return [_decode_codex_envelope(lowered, payload, timestamp)]
    if lowered == "compacted":
        return [EventMessageRow(timestamp, EventMessagePayload(type="compacted"))]

    if _is_claude_record(record, lowered):
        return _decode_claude(record, lowered, timestamp)
    if lowered in {"session", "model_change", "thinking_level_change"} or (
        lowered == "message" and isinstance(record.get("message"), dict)
    ):
        return _decode_pi(record, lowered, timestamp)

    if lowered == "session_meta":
        return [SessionMetaRow(timestamp, dict(record))]
    if lowered == "turn_context":
        return [TurnContextRow(timestamp, dict(record))]
    if lowered == "assistant_message":
        return [AssistantMessageRow(timestamp, _first_text(record, "message", "text"))]
    if lowered in EVENT_MESSAGE_TYPES:
        return [EventMessageRow(timestamp, event_payload(record))]
    if lowered in RESPONSE_ITEM_TYPES:
        return [ResponseItemRow(timestamp, response_payload(record))]
    return [UnknownRow(timestamp, record_type)]


def event_payload(data: dict[str, Any]) -> EventMessagePayload:
    images = data.get("images")
    return EventMessagePayload(
        type=str(data.get("type") or ""),
        kind=_optional_str(data.get("kind")),
        message=_optional_str(data.get("message")),
        text=_optional_str(data.get("text")),
        reason=_optional_str(data.get("reason")),
        images=tuple(item for item in images if isinstance(item, str))
        if isinstance(images, list)
        else (),
        info=data.get("info"),
    )


def response_payload(data: dict[str, Any]) -> ResponseItemPayload:
    content = as_text_list(data.get("content"))
    summary = as_text_list(data.get("summary"))
    return ResponseItemPayload(
        type=str(data.get("type") or ""),
        role=_optional_str(data.get("role")),
        name=_optional_str(data.get("name")),
        call_id=_optional_str(data.get("call_id")),
        status=_optional_str(data.get("status")),
        content=tuple(content) if content is not None else None,
        summary=tuple(summary) if summary is not None else None,
        arguments=data.get("arguments"),
        input=data.get("input", data.get("action")),
        output=data.get("output"),
        ghost_commit=data.get("ghost_commit"),
    )


def _decode_codex_envelope(kind: str, payload: dict[str, Any], timestamp: str | None) -> RawRow:
    timestamp = timestamp or _timestamp_of(payload)
    if kind == "session_meta":
        return SessionMetaRow(timestamp, dict(payload))
    if kind == "turn_context":
        return TurnContextRow(timestamp, dict(payload))
    if kind == "event_msg":
        return EventMessageRow(timestamp, event_payload(payload))
    if kind == "compacted":
        return EventMessageRow(timestamp, EventMessagePayload(type="compacted"))
    return ResponseItemRow(timestamp, response_payload(payload))


def _is_claude_record(record: dict[str, Any], lowered: str) -> bool:
    if lowered in {"summary", "file-history-snapshot"}:
        return True
    if lowered not in {"user", "assistant", "system", "human"}:
        return False
    return "message" in record or "sessionId" in record or "uuid" in record


def _decode_claude(record: dict[str, Any], lowered: str, timestamp: str | None) -> list[RawRow]:
    if lowered == "summary":
        return [EventMessageRow(timestamp, EventMessagePayload(type="compacted"))]
    if lowered == "file-history-snapshot":
        return [EventMessageRow(timestamp, EventMessagePayload(type="ghost_snapshot"))]
    if lowered == "system":
        text = _optional_str(record.get("content")) or _first_text(record, "message")
        return [
            EventMessageRow(
                timestamp,
                EventMessagePayload(type="info", kind=_optional_str(record.get("subtype")), message=text),
            )
        ]

    message = record.get("message")
    if not isinstance(message, dict):
        message = {"role": lowered, "content": message}
    role = str(message.get("role") or lowered).lower()
    if role == "human":
        role = "user"
    return _decode_blocks(message.get("content"), role, timestamp)


def _decode_pi(record: dict[str, Any], lowered: str, timestamp: str | None) -> list[RawRow]:
    if lowered == "session":
        return [SessionMetaRow(timestamp, dict(record))]
    if lowered in {"model_change", "thinking_level_change"}:
        return [TurnContextRow(timestamp, dict(record))]

    message = record["message"]
    role = str(message.get("role") or "").lower()
    content = message.get("content")
    if role == "toolresult":
        rows: list[RawRow] = []
        for text in as_text_list(content) or []:
            rows.append(
                EventMessageRow(
                    timestamp,
                    EventMessagePayload(type="tool_result", kind="info", message=text),
                )
            )
        return rows

    rows = _decode_blocks(content, role, timestamp)
    stop_reason = _optional_str(message.get("stopReason"))
    if role == "assistant" and stop_reason:
        rows.append(
            EventMessageRow(
                timestamp,
                EventMessagePayload(type="info", kind="stop_reason", message=stop_reason),
            )
        )
    return rows


def _decode_blocks(content: Any, role: str, timestamp: str | None) -> list[RawRow]:
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]
    if not isinstance(content, list):
        content = []

    texts: list[str] = []
    thinking: list[str] = []
    images: list[str] = []
    calls: list[RawRow] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = str(block.get("type") or "").lower()
        if block_type == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif block_type == "thinking" and isinstance(block.get("thinking"), str):
            thinking.append(block["thinking"])
        elif block_type == "image":
            images.append(_image_reference(block))
        elif block_type in {"tool_use", "toolcall", "tool_call"}:
            calls.append(
                ResponseItemRow(
                    timestamp,
                    ResponseItemPayload(
                        type="function_call",
                        name=_optional_str(block.get("name")),
                        call_id=_optional_str(block.get("id")),
                        arguments=block.get("arguments"),
                        input=block.get("input"),
                    ),
                )
            )
        elif block_type == "tool_result":
            calls.append(
                ResponseItemRow(
                    timestamp,
                    ResponseItemPayload(
                        type="function_call_output",
                        call_id=_optional_str(block.get("tool_use_id")),
                        output=_tool_result_output(block.get("content")),
                        status="error" if block.get("is_error") else None,
                    ),
                )
            )

    rows: list[RawRow] = []
    if role == "user":
        if texts or images:
            rows.append(
                EventMessageRow(
                    timestamp,
                    EventMessagePayload(
                        type="user_message", message="\n".join(texts), images=tuple(images)
                    ),
                )
            )
    elif role == "assistant":
        if thinking:
            rows.append(
                EventMessageRow(
                    timestamp,
                    EventMessagePayload(type="agent_reasoning", message="\n".join(thinking)),
                )
            )
        if texts:
            rows.append(
                EventMessageRow(
                    timestamp,
                    EventMessagePayload(type="agent_message", message="\n".join(texts)),
                )
            )
    rows.extend(calls)
    return rows


def _tool_result_output(content: Any) -> JSONValue:
    if isinstance(content, list):
        parts = as_text_list(content) or []
        return "\n".join(parts)
    return content


def _image_reference(block: dict[str, Any]) -> str:
    source = block.get("source")
    if isinstance(source, dict):
        return str(source.get("url") or source.get("media_type") or "image")
    return str(block.get("url") or "image")


def detect_source(records: list[dict[str, Any]]) -> str | None:
    """Guess which tool wrote a file from its first decoded records."""
    for record in records:
        record_type = str(record.get("type") or "").lower()
        if record_type in CODEX_ENVELOPE_TYPES and "payload" in record:
            return SOURCE_CODEX
        if "sessionId" in record or record_type in {"summary", "file-history-snapshot"}:
            return SOURCE_CLAUDE
        if record_type in {"session", "model_change"}:
            return SOURCE_PI
        if record_type in EVENT_MESSAGE_TYPES or record_type in RESPONSE_ITEM_TYPES:
            return SOURCE_CODEX
    return None


def iter_file_rows(path: Path, limit: int | None = None) -> Iterator[tuple[int, RawRow]]:
    """Yield ``(position, row)`` for a session file; bad lines are skipped."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for position, line in enumerate(handle):
            if limit is not None and position >= limit:
                break
            try:
                rows = decode_line(line)
            except DecodeError as exc:
                logger.warning("Skipping %s:%d: %s", path, position + 1, exc)
                continue
            for row in rows:
                yield position, row


def read_head_records(path: Path, max_lines: int) -> list[dict[str, Any]]:
    head: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for position, line in enumerate(handle):
            if position >= max_lines:
                break
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if isinstance(record, dict):
                head.append(record)
    return head


def read_header(path: Path, max_lines: int = 64, source_kind: str | None = None) -> SessionHeader:
    """Extract session-level fields from a bounded head scan of ``path``."""
    head = read_head_records(path, max_lines)
    source = source_kind or detect_source(head) or SOURCE_CODEX
    header = SessionHeader(source_kind=source)

    for record in head:
        payload = record.get("payload") if isinstance(record.get("payload"), dict) else None
        record_type = str(record.get("type") or "").lower()
        header.started_at = header.started_at or _timestamp_of(record)

        if record_type == "session_meta":
            data = payload or record
            header.native_id = header.native_id or _optional_str(data.get("id"))
            header.cwd = header.cwd or _optional_str(data.get("cwd"))
            header.started_at = _timestamp_of(data) or header.started_at
        elif record_type == "turn_context":
            data = payload or record
            header.model = header.model or _optional_str(data.get("model"))
            header.cwd = header.cwd or _optional_str(data.get("cwd"))
        elif record_type == "session":
            header.native_id = header.native_id or _optional_str(record.get("id"))
            header.cwd = header.cwd or _optional_str(record.get("cwd"))
        elif record_type == "model_change":
            header.model = header.model or _optional_str(record.get("modelId"))
        elif record_type == "summary":
            header.title = header.title or _optional_str(record.get("summary"))
        elif record_type in {"user", "assistant"}:
            header.native_id = header.native_id or _optional_str(record.get("sessionId"))
            header.cwd = header.cwd or _optional_str(record.get("cwd"))
            message = record.get("message")
            if isinstance(message, dict):
                header.model = header.model or _optional_str(message.get("model"))

    if source == SOURCE_CLAUDE:
        # Claude names each transcript after its session id; resumed
        # transcripts repeat an older sessionId inside the records.
        header.native_id = path.stem
    return header


def _timestamp_of(record: dict[str, Any]) -> str | None:
    value = record.get("timestamp")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return epoch_to_iso(value / 1000 if value > 10**11 else value)
        except (ValueError, OverflowError, OSError):
            # Outside the range datetime can represent.
            return None
    if isinstance(value, str):
        return normalize_iso(value) or value
    return None


def _first_text(record: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
        if isinstance(value, dict):
            texts = as_text_list(value.get("content")) or []
            joined = "\n".join(texts)
            if joined.strip():
                return joined
    return ""


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return string_value(value)

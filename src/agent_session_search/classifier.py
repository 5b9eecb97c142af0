# ABOUTME: Deterministic classification of raw rows into visible timeline events.
# ABOUTME: Skip lists, text cleaning, type-to-kind mapping and code-edit detection.

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .jsonvalue import JSONValue, contains_edit_keys, parse_embedded, render_value, string_value
from .records import (
    AssistantMessageRow,
    DecodeError,
    EventMessagePayload,
    EventMessageRow,
    RawRow,
    ResponseItemPayload,
    ResponseItemRow,
    SessionMetaRow,
    TurnContextRow,
    UnknownRow,
    decode_line,
)

logger = logging.getLogger(__name__)


class VisibilityKind(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    CODE_EDIT = "codeEdit"
    REASONING = "reasoning"
    TOKEN_USAGE = "tokenUsage"
    ENVIRONMENT_CONTEXT = "environmentContext"
    TURN_CONTEXT = "turnContext"
    SESSION_META = "sessionMeta"
    TASK_INSTRUCTIONS = "taskInstructions"
    COMPACTION = "compaction"
    TURN_ABORTED = "turnAborted"
    GHOST_SNAPSHOT = "ghostSnapshot"
    INFO_OTHER = "infoOther"


TOOL_LIKE_KINDS = frozenset({VisibilityKind.TOOL, VisibilityKind.CODE_EDIT})

DEFAULT_KIND_MAPPING: dict[str, VisibilityKind] = {
    "user_message": VisibilityKind.USER,
    "user": VisibilityKind.USER,
    "agent_message": VisibilityKind.ASSISTANT,
    "assistant": VisibilityKind.ASSISTANT,
    "message": VisibilityKind.ASSISTANT,
    "agent_reasoning": VisibilityKind.REASONING,
    "agent_reasoning_raw_content": VisibilityKind.REASONING,
    "reasoning": VisibilityKind.REASONING,
    "token_count": VisibilityKind.TOKEN_USAGE,
    "function_call": VisibilityKind.TOOL,
    "function_call_output": VisibilityKind.TOOL,
    "custom_tool_call": VisibilityKind.TOOL,
    "custom_tool_call_output": VisibilityKind.TOOL,
    "local_shell_call": VisibilityKind.TOOL,
    "web_search_call": VisibilityKind.TOOL,
    "tool_use": VisibilityKind.TOOL,
    "tool_call": VisibilityKind.TOOL,
    "tool_result": VisibilityKind.TOOL,
    "exec_command_begin": VisibilityKind.TOOL,
    "exec_command_end": VisibilityKind.TOOL,
    "mcp_tool_call_begin": VisibilityKind.TOOL,
    "mcp_tool_call_end": VisibilityKind.TOOL,
    "patch_apply_begin": VisibilityKind.TOOL,
    "patch_apply_end": VisibilityKind.TOOL,
    "web_search_begin": VisibilityKind.TOOL,
    "web_search_end": VisibilityKind.TOOL,
    "environment_context": VisibilityKind.ENVIRONMENT_CONTEXT,
    "turn_context": VisibilityKind.TURN_CONTEXT,
    "session_meta": VisibilityKind.SESSION_META,
    "user_instructions": VisibilityKind.TASK_INSTRUCTIONS,
    "task_instructions": VisibilityKind.TASK_INSTRUCTIONS,
    "compacted": VisibilityKind.COMPACTION,
    "compaction": VisibilityKind.COMPACTION,
    "turn_aborted": VisibilityKind.TURN_ABORTED,
    "ghost_snapshot": VisibilityKind.GHOST_SNAPSHOT,
}


def normalize_tool_name(name: str | None) -> str:
    raw = (name or "").strip().lower()
    for separator in ("_", "-", " "):
        raw = raw.replace(separator, "")
    return raw


def normalize_type(value: str | None) -> str:
    return (value or "").strip().lower().replace("-", "_").replace(" ", "_")


class ClassifierRules(BaseModel):
    """Allow/deny lists driving classification.

    Membership is a product decision, so every list can be replaced from a
    JSON file (see ``Settings.rules_path``).
    """

    model_config = ConfigDict(frozen=True)

    skip_event_types: frozenset[str] = frozenset(
        {
            "reasoning_output",
            "turn_boundary",
            "turn_aborted",
            "turn aborted",
            "compaction",
            "compacted",
            "ghost_snapshot",
            "ghost snapshot",
            "environment_context",
        }
    )
    skip_response_types: frozenset[str] = frozenset(
        {"reasoning_output", "ghost_snapshot", "ghost snapshot"}
    )
    removed_markers: tuple[str, ...] = ("<user_instructions>", "</user_instructions>")
    stripped_tags: tuple[str, ...] = (
        "permissions_instructions",
        "permissions instructions",
        "collaboration_mode",
        "collaboration mode",
    )
    edit_tool_names: frozenset[str] = frozenset(
        {
            "edit",
            "write",
            "replace",
            "applypatch",
            "patch",
            "createfile",
            "writefile",
            "deletefile",
            "fileedit",
            "filewrite",
            "updatefile",
            "insert",
            "append",
            "move",
            "rename",
            "remove",
            "multiedit",
        }
    )
    shell_tool_names: frozenset[str] = frozenset(
        {"execcommand", "bash", "runshellcommand", "shell", "localshellcall"}
    )
    edit_path_keys: frozenset[str] = frozenset({"file_path", "filepath", "path"})
    edit_content_keys: frozenset[str] = frozenset({"content", "new_content", "text"})
    patch_markers: tuple[str, ...] = (
        "*** begin patch",
        "*** update file",
        "*** add file",
        "*** delete file",
        "update file:",
    )
    completion_markers: tuple[str, ...] = (
        "updated the following files",
        "success. updated the following files",
    )
    kind_mapping: dict[str, VisibilityKind] = Field(
        default_factory=lambda: dict(DEFAULT_KIND_MAPPING)
    )
    tool_type_hints: tuple[str, ...] = ("tool", "function_call", "shell", "exec_command")

    @field_validator("skip_event_types", "skip_response_types", mode="after")
    @classmethod
    def _lower_types(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(item.strip().lower() for item in value)

    @field_validator("edit_tool_names", "shell_tool_names", mode="after")
    @classmethod
    def _normalize_names(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(normalize_tool_name(item) for item in value)

    @field_validator("patch_markers", "completion_markers", mode="after")
    @classmethod
    def _lower_markers(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(item.lower() for item in value)

    @field_validator("kind_mapping", mode="after")
    @classmethod
    def _normalize_mapping(cls, value: dict[str, VisibilityKind]) -> dict[str, VisibilityKind]:
        return {normalize_type(key): kind for key, kind in value.items()}

    @classmethod
    def from_file(cls, path: Path) -> "ClassifierRules":
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


DEFAULT_RULES = ClassifierRules()


@dataclass(frozen=True)
class ClassifiedEvent:
    kind: VisibilityKind
    call_id: str | None = None
    is_tool_like: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind.value, "call_id": self.call_id, "is_tool_like": self.is_tool_like}


def classify(row: RawRow, rules: ClassifierRules = DEFAULT_RULES) -> ClassifiedEvent | None:
    """Classify one raw row; None means the row has no visible event."""
    if isinstance(row, (SessionMetaRow, TurnContextRow, UnknownRow)):
        return None
    if isinstance(row, AssistantMessageRow):
        # Duplicate of the canonical response-item message.
        return None
    if isinstance(row, EventMessageRow):
        return _classify_event(row.payload, rules)
    if isinstance(row, ResponseItemRow):
        return _classify_response(row.payload, rules)
    return None


def classify_line(line: str, rules: ClassifierRules = DEFAULT_RULES) -> ClassifiedEvent | None:
    """Decode and classify a raw JSONL line, returning its first visible event."""
    try:
        rows = decode_line(line)
    except DecodeError as exc:
        logger.warning("Cannot classify line: %s", exc)
        return None
    for row in rows:
        event = classify(row, rules)
        if event is not None:
            return event
    return None


def map_kind(
    raw_type: str | None, title: str | None, rules: ClassifierRules = DEFAULT_RULES
) -> VisibilityKind | None:
    """Resolve a tool-specific type string to a visibility kind, if known."""
    candidates = [normalize_type(raw_type), normalize_type(title)]
    for candidate in candidates:
        if candidate and candidate in rules.kind_mapping:
            return rules.kind_mapping[candidate]
    for candidate in candidates:
        if candidate and any(hint in candidate for hint in rules.tool_type_hints):
            return VisibilityKind.TOOL
    return None


def event_text(payload: EventMessagePayload, rules: ClassifierRules = DEFAULT_RULES) -> str:
    raw = _first_non_empty(payload.message, payload.text, payload.reason)
    return clean_text(raw, rules)


def has_images(payload: EventMessagePayload) -> bool:
    return any(image.strip() for image in payload.images)


def response_text(payload: ResponseItemPayload, rules: ClassifierRules = DEFAULT_RULES) -> str:
    """Text used to detect and display a response item."""
    content_text = clean_text(_join(payload.content), rules)
    if content_text:
        return content_text
    summary_text = clean_text(_join(payload.summary), rules)
    if summary_text:
        return summary_text
    fallback = _fallback_text(payload)
    if fallback:
        return fallback
    return string_value(payload.output) or ""


def clean_text(text: str, rules: ClassifierRules = DEFAULT_RULES) -> str:
    if not text:
        return ""
    for marker in rules.removed_markers:
        text = text.replace(marker, "")
    for tag in rules.stripped_tags:
        text = _strip_tagged_block(text, tag)
    return text.strip()


def is_code_edit(
    payload: ResponseItemPayload, detection_text: str, rules: ClassifierRules = DEFAULT_RULES
) -> bool:
    name = normalize_tool_name(payload.name)
    if name and name in rules.edit_tool_names:
        return True

    for value in (payload.arguments, payload.input):
        if contains_edit_keys(parse_embedded(value), rules.edit_path_keys, rules.edit_content_keys):
            return True

    if name in rules.shell_tool_names:
        args_text = render_value(payload.arguments) or render_value(payload.input) or ""
        if has_patch_markers(args_text, rules):
            return True

    output_text = render_value(payload.output)
    if output_text and has_completion_markers(output_text, rules):
        return True

    return has_patch_markers(detection_text, rules)


def has_patch_markers(text: str, rules: ClassifierRules = DEFAULT_RULES) -> bool:
    return _contains_any(text, rules.patch_markers)


def has_completion_markers(text: str, rules: ClassifierRules = DEFAULT_RULES) -> bool:
    return _contains_any(text, rules.completion_markers)


def _classify_event(payload: EventMessagePayload, rules: ClassifierRules) -> ClassifiedEvent | None:
    event_type = payload.type.strip().lower()
    if event_type in rules.skip_event_types:
        return None

    text = event_text(payload, rules)
    if not text and not has_images(payload):
        return None

    if event_type == "token_count":
        return ClassifiedEvent(VisibilityKind.TOKEN_USAGE)
    if event_type == "agent_reasoning":
        return ClassifiedEvent(VisibilityKind.REASONING)

    mapped = map_kind(payload.type, payload.kind or payload.type, rules)
    if mapped is VisibilityKind.TOOL and (
        has_patch_markers(text, rules) or has_completion_markers(text, rules)
    ):
        mapped = VisibilityKind.CODE_EDIT

    if event_type == "user_message":
        return ClassifiedEvent(mapped or VisibilityKind.USER)
    if event_type == "agent_message":
        return ClassifiedEvent(mapped or VisibilityKind.ASSISTANT)
    resolved = mapped or VisibilityKind.INFO_OTHER
    return ClassifiedEvent(resolved, is_tool_like=resolved in TOOL_LIKE_KINDS)


def _classify_response(
    payload: ResponseItemPayload, rules: ClassifierRules
) -> ClassifiedEvent | None:
    item_type = payload.type.strip().lower()
    if item_type in rules.skip_response_types:
        return None

    if item_type == "reasoning" and payload.summary and not payload.content:
        # Summary-only reasoning repeats the agent_reasoning event.
        return None

    if item_type == "message":
        if (payload.role or "").lower() == "user":
            # User content surfaces through the environment-context path.
            return None
        if not clean_text(_join(payload.content), rules):
            return None
        return ClassifiedEvent(VisibilityKind.ASSISTANT)

    detection_text = response_text(payload, rules)
    if not detection_text:
        return None

    mapped = map_kind(payload.type, payload.type, rules)
    if mapped is VisibilityKind.TOOL and is_code_edit(payload, detection_text, rules):
        mapped = VisibilityKind.CODE_EDIT
    resolved = mapped or VisibilityKind.INFO_OTHER
    return ClassifiedEvent(
        resolved, call_id=payload.call_id, is_tool_like=resolved in TOOL_LIKE_KINDS
    )


def _fallback_text(payload: ResponseItemPayload) -> str:
    lines: list[str] = []
    if payload.name:
        lines.append(f"name: {payload.name}")
    for label, value in (
        ("arguments", payload.arguments),
        ("input", payload.input),
        ("output", payload.output),
        ("ghost_commit", payload.ghost_commit),
    ):
        rendered = render_value(value)
        if rendered:
            lines.append(_format_label(label, rendered))
    if not lines and payload.call_id:
        lines.append(f"call_id: {payload.call_id}")
    return "\n".join(lines)


def _format_label(label: str, value: str) -> str:
    if "\n" in value:
        return f"{label}:\n{value}"
    return f"{label}: {value}"


def _strip_tagged_block(text: str, tag: str) -> str:
    open_token = f"<{tag.lower()}>"
    close_token = f"</{tag.lower()}>"
    while True:
        lowered = text.lower()
        start = lowered.find(open_token)
        if start < 0:
            return text
        end = lowered.find(close_token, start + len(open_token))
        if end < 0:
            return text[:start]
        text = text[:start] + text[end + len(close_token) :]


def _contains_any(text: str, markers: Iterable[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def _first_non_empty(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value
    return ""


def _join(texts: tuple[str, ...] | None) -> str:
    if not texts:
        return ""
    return "\n\n".join(texts)


def rules_to_json(rules: ClassifierRules) -> str:
    """Serialize rules with stable ordering, for writing an override file."""
    data: dict[str, JSONValue] = json.loads(rules.model_dump_json())
    for key, value in data.items():
        if isinstance(value, list):
            data[key] = sorted(value)
    return json.dumps(data, indent=2, sort_keys=True)

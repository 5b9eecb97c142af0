# ABOUTME: Timeline construction from classified raw rows.
# ABOUTME: Builds TimelineEvents, folds repeats, projects Messages and groups turns.

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Iterable

from .classifier import (
    DEFAULT_RULES,
    ClassifiedEvent,
    ClassifierRules,
    VisibilityKind,
    classify,
    event_text,
    response_text,
)
from .jsonvalue import parse_embedded
from .records import EventMessageRow, RawRow, ResponseItemRow

ACTOR_USER = "user"
ACTOR_ASSISTANT = "assistant"
ACTOR_INFO = "info"

_ASSISTANT_KINDS = frozenset(
    {
        VisibilityKind.ASSISTANT,
        VisibilityKind.REASONING,
        VisibilityKind.TOOL,
        VisibilityKind.CODE_EDIT,
    }
)


@dataclass(frozen=True)
class TimelineEvent:
    """One displayable unit of a session timeline."""

    id: str
    session_id: str
    position: int  # line index of the originating record
    timestamp: str | None
    actor: str
    kind: VisibilityKind
    title: str | None = None
    text: str | None = None
    attachments: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)
    repeat_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["attachments"] = list(self.attachments)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimelineEvent":
        return cls(
            id=str(data["id"]),
            session_id=str(data["session_id"]),
            position=int(data["position"]),
            timestamp=data.get("timestamp"),
            actor=str(data["actor"]),
            kind=VisibilityKind(data["kind"]),
            title=data.get("title"),
            text=data.get("text"),
            attachments=tuple(data.get("attachments") or ()),
            metadata=dict(data.get("metadata") or {}),
            repeat_count=int(data.get("repeat_count") or 1),
        )


@dataclass(frozen=True)
class Message:
    """Search projection of a user or assistant timeline event."""

    session_id: str
    role: str
    text: str
    position: int
    timestamp: str | None = None


@dataclass
class ConversationTurn:
    id: str
    timestamp: str | None
    user_message: TimelineEvent | None
    outputs: list[TimelineEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "user_message": self.user_message.to_dict() if self.user_message else None,
            "outputs": [event.to_dict() for event in self.outputs],
        }


class TimelineBuilder:
    """Fold raw rows of one session, in file order, into timeline events.

    The only rolling context is the previous event: an identical event from
    the same row variant increments its repeat count, while one from the
    other variant is a mirror (Codex writes assistant text both as an event
    message and as a response item) and is dropped.
    """

    def __init__(self, session_id: str, rules: ClassifierRules = DEFAULT_RULES) -> None:
        self.session_id = session_id
        self.rules = rules
        self.events: list[TimelineEvent] = []
        self._last_variant: type | None = None
        self._sub_index = 0
        self._last_position = -1

    def add(self, position: int, row: RawRow) -> TimelineEvent | None:
        classified = classify(row, self.rules)
        if classified is None:
            return None
        event = self._build_event(position, row, classified)

        previous = self.events[-1] if self.events else None
        if previous is not None and _same_content(previous, event):
            if type(row) is self._last_variant:
                self.events[-1] = replace(previous, repeat_count=previous.repeat_count + 1)
                return self.events[-1]
            return None

        self.events.append(event)
        self._last_variant = type(row)
        return event

    def extend(self, rows: Iterable[tuple[int, RawRow]]) -> None:
        for position, row in rows:
            self.add(position, row)

    def messages(self) -> list[Message]:
        return project_messages(self.events)

    def _build_event(
        self, position: int, row: RawRow, classified: ClassifiedEvent
    ) -> TimelineEvent:
        if position == self._last_position:
            self._sub_index += 1
        else:
            self._sub_index = 0
            self._last_position = position

        title: str | None = None
        text = ""
        attachments: tuple[str, ...] = ()
        metadata: dict[str, str] = {"kind": classified.kind.value}

        if isinstance(row, EventMessageRow):
            payload = row.payload
            text = event_text(payload, self.rules)
            attachments = tuple(image for image in payload.images if image.strip())
            metadata["raw_type"] = payload.type
            if payload.kind:
                metadata["event_kind"] = payload.kind
            title = _title_for(classified.kind, payload.type, None)
        elif isinstance(row, ResponseItemRow):
            payload = row.payload
            text = response_text(payload, self.rules)
            metadata["raw_type"] = payload.type
            if payload.name:
                metadata["tool_name"] = payload.name
            if classified.call_id:
                metadata["call_id"] = classified.call_id
            arguments = parse_embedded(payload.arguments)
            if not isinstance(arguments, dict):
                arguments = parse_embedded(payload.input)
            if isinstance(arguments, dict):
                file_path = _extract_file_path(arguments)
                if file_path:
                    metadata["file_path"] = file_path
                command = _extract_command(arguments)
                if command:
                    metadata["command"] = command
            title = _title_for(classified.kind, payload.type, payload.name)

        return TimelineEvent(
            id=f"{self.session_id}:{position}:{self._sub_index}",
            session_id=self.session_id,
            position=position,
            timestamp=row.timestamp,
            actor=actor_for(classified.kind),
            kind=classified.kind,
            title=title,
            text=text or None,
            attachments=attachments,
            metadata=metadata,
        )


def actor_for(kind: VisibilityKind) -> str:
    if kind is VisibilityKind.USER:
        return ACTOR_USER
    if kind in _ASSISTANT_KINDS:
        return ACTOR_ASSISTANT
    return ACTOR_INFO


def project_messages(events: Iterable[TimelineEvent]) -> list[Message]:
    """User/assistant events as search Messages, positions strictly increasing."""
    messages: list[Message] = []
    last_position = -1
    for event in events:
        if event.kind not in (VisibilityKind.USER, VisibilityKind.ASSISTANT):
            continue
        if not event.text or event.position <= last_position:
            continue
        messages.append(
            Message(
                session_id=event.session_id,
                role=event.kind.value,
                text=event.text,
                position=event.position,
                timestamp=event.timestamp,
            )
        )
        last_position = event.position
    return messages


def group_turns(events: Iterable[TimelineEvent]) -> list[ConversationTurn]:
    """Group events into turns: a user event plus the outputs that follow it.

    Output events before the first user event form a leading turn with no
    user message.
    """
    turns: list[ConversationTurn] = []
    current: ConversationTurn | None = None
    for event in events:
        if event.kind is VisibilityKind.USER:
            current = ConversationTurn(id=event.id, timestamp=event.timestamp, user_message=event)
            turns.append(current)
            continue
        if current is None:
            current = ConversationTurn(id=event.id, timestamp=event.timestamp, user_message=None)
            turns.append(current)
        current.outputs.append(event)
    return turns


def _same_content(left: TimelineEvent, right: TimelineEvent) -> bool:
    return (
        left.kind == right.kind
        and left.title == right.title
        and left.text == right.text
        and left.attachments == right.attachments
    )


def _title_for(kind: VisibilityKind, raw_type: str, tool_name: str | None) -> str | None:
    if kind in (VisibilityKind.USER, VisibilityKind.ASSISTANT):
        return None
    if kind is VisibilityKind.CODE_EDIT:
        return f"Code Edit: {tool_name}" if tool_name else "Code Edit"
    if kind is VisibilityKind.TOOL and tool_name:
        return tool_name
    if kind is VisibilityKind.REASONING:
        return "Reasoning"
    if kind is VisibilityKind.TOKEN_USAGE:
        return "Token Usage"
    return raw_type.replace("_", " ").strip().title() or None


def _extract_file_path(arguments: dict[str, Any]) -> str | None:
    path = arguments.get("path") or arguments.get("file_path") or arguments.get("filepath")
    return str(path) if path is not None else None


def _extract_command(arguments: dict[str, Any]) -> str | None:
    command = arguments.get("command") or arguments.get("cmd")
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    return str(command) if command is not None else None

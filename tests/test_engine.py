# ABOUTME: Tests for the SessionEngine facade.
# ABOUTME: Verifies classification, timelines, preview fallback and lookups.

from pathlib import Path

import pytest

from agent_session_search.classifier import VisibilityKind
from agent_session_search.config import Settings
from agent_session_search.engine import SessionEngine
from agent_session_search.index import ParseLevel, SessionFilter


def test_classify(engine: SessionEngine) -> None:
    event = engine.classify('{"type":"event_msg","payload":{"type":"user_message","message":"Implement X"}}')

    assert event is not None
    assert event.kind is VisibilityKind.USER
    assert engine.classify('{"type":"event_msg","payload":{"type":"token_count"}}') is None


def test_index_and_get_session(engine: SessionEngine, pi_file: Path) -> None:
    session = engine.index_session(str(pi_file))

    assert engine.get_session("pi:pi-session-1") == session
    assert engine.list_sessions(SessionFilter(source_kind="pi")) == [session]


def test_unknown_session(engine: SessionEngine) -> None:
    with pytest.raises(KeyError):
        engine.get_session("codex:nope")
    with pytest.raises(KeyError):
        engine.get_timeline("codex:nope")


def test_timeline_is_read_from_the_file(engine: SessionEngine, codex_file: Path) -> None:
    engine.index_session(codex_file, level=ParseLevel.METADATA)

    turns = engine.get_timeline("codex:0199-codex-1")

    assert [turn.user_message.text for turn in turns] == [
        "Add a web api handler for sessions",
        "Fix api bug in the parser",
    ]
    assert turns[0].outputs[-1].kind is VisibilityKind.ASSISTANT


def test_timeline_falls_back_to_preview(engine: SessionEngine, claude_file: Path) -> None:
    engine.index_session(claude_file, level=ParseLevel.PREVIEW)
    preview = engine.store.get_preview("claude:claude-session-1")
    claude_file.unlink()

    events = engine.get_events("claude:claude-session-1")

    assert events == preview
    assert events[0].text == "Add web api handler"


def test_message_context(engine: SessionEngine, codex_file: Path) -> None:
    engine.index_session(codex_file)

    context = engine.message_context("codex:0199-codex-1", 10, before=1, after=1)

    assert context["message"]["text"] == "Added the web api handler in handlers.py."
    assert [row["position"] for row in context["before"]] == [3]
    assert [row["position"] for row in context["after"]] == [13]


def test_refresh_and_stats(engine: SessionEngine) -> None:
    report = engine.refresh()
    stats = engine.stats()

    assert len(report.indexed) == 3
    assert stats["session_count"] == 3
    assert stats["message_count"] == 11
    assert stats["parse_levels"] == {"full": 3}


def test_persistent_engine(session_roots: dict[str, list[Path]], tmp_path: Path) -> None:
    settings = Settings(db_path=str(tmp_path / "index.duckdb"), roots=session_roots, max_workers=1)
    with SessionEngine(settings) as first:
        first.refresh(ParseLevel.METADATA)

    with SessionEngine(settings) as second:
        assert len(second.list_sessions()) == 3

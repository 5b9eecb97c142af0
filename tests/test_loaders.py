# ABOUTME: Tests for session file discovery.
# ABOUTME: Verifies root walking, filtering, ordering and injectable stat.

import os
from pathlib import Path

import pytest

from agent_session_search.loaders import FileStat, discover_session_files, stat_path
from agent_session_search.loaders.local import default_roots, resolve_claude_dirs, resolve_codex_dirs


class TestDiscoverSessionFiles:
    """Tests for discover_session_files."""

    def test_finds_one_file_per_source(self, session_roots: dict[str, list[Path]]) -> None:
        files = discover_session_files(session_roots)

        assert sorted(item.source_kind for item in files) == ["claude", "codex", "pi"]
        assert all(item.path.suffix == ".jsonl" for item in files)

    def test_newest_first(self, session_roots: dict[str, list[Path]], pi_file: Path, codex_file: Path) -> None:
        os.utime(codex_file, (1_000, 1_000))
        os.utime(pi_file, (3_000, 3_000))

        files = discover_session_files(session_roots)

        assert files[0].path == pi_file
        assert files[-1].path == codex_file
        assert files[0].mtime == 3_000

    def test_source_filter(self, session_roots: dict[str, list[Path]]) -> None:
        files = discover_session_files(session_roots, source="pi")

        assert [item.source_kind for item in files] == ["pi"]

    def test_skips_hidden_and_subagent_files(self, session_roots: dict[str, list[Path]]) -> None:
        claude_root = session_roots["claude"][0]
        (claude_root / "-work-web" / "subagents").mkdir()
        (claude_root / "-work-web" / "subagents" / "agent-1.jsonl").write_text("{}\n")
        (claude_root / ".cache").mkdir()
        (claude_root / ".cache" / "old.jsonl").write_text("{}\n")

        files = discover_session_files(session_roots, source="claude")

        assert [item.path.name for item in files] == ["claude-session-1.jsonl"]

    def test_missing_root_is_empty(self, tmp_path: Path) -> None:
        assert discover_session_files({"codex": [tmp_path / "nope"]}) == []

    def test_duplicate_roots_are_deduplicated(self, session_roots: dict[str, list[Path]]) -> None:
        root = session_roots["codex"][0]

        files = discover_session_files({"codex": [root, root]})

        assert len(files) == 1

    def test_injected_stat(self, session_roots: dict[str, list[Path]], codex_file: Path) -> None:
        def fake_stat(path: Path) -> FileStat | None:
            if path == codex_file:
                return None
            return FileStat(mtime=42.0, size=7)

        files = discover_session_files(session_roots, stat=fake_stat)

        assert codex_file not in [item.path for item in files]
        assert all(item.mtime == 42.0 and item.size == 7 for item in files)


def test_stat_path(tmp_path: Path) -> None:
    path = tmp_path / "s.jsonl"
    path.write_text("abc")

    info = stat_path(path)

    assert info is not None
    assert info.size == 3
    assert stat_path(tmp_path / "missing.jsonl") is None


def test_root_resolution(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CODEX_SESSIONS_DIR", str(tmp_path / "codex"))
    monkeypatch.delenv("CLAUDE_CODE_PROJECTS_DIR", raising=False)

    assert resolve_codex_dirs() == [tmp_path / "codex"]
    assert resolve_codex_dirs(tmp_path / "explicit") == [tmp_path / "explicit"]
    assert resolve_claude_dirs()[0].parts[-2:] == (".claude", "projects")
    assert default_roots()["codex"] == [tmp_path / "codex"]

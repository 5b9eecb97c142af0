# ABOUTME: Pytest configuration and shared fixtures.
# ABOUTME: Provides session roots copied from fixtures, settings, stores and engines.

import json
import shutil
from pathlib import Path
from typing import Callable, Iterator

import pytest

from agent_session_search.config import Settings
from agent_session_search.engine import SessionEngine
from agent_session_search.index import SearchIndex

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SOURCES = ("codex", "claude", "pi")


@pytest.fixture
def session_roots(tmp_path: Path) -> dict[str, list[Path]]:
    """Copy the fixture session trees into a scratch directory per source."""
    roots: dict[str, list[Path]] = {}
    for source in SOURCES:
        target = tmp_path / "roots" / source
        shutil.copytree(FIXTURES_DIR / source, target)
        roots[source] = [target]
    return roots


@pytest.fixture
def codex_file(session_roots: dict[str, list[Path]]) -> Path:
    return next(session_roots["codex"][0].rglob("*.jsonl"))


@pytest.fixture
def claude_file(session_roots: dict[str, list[Path]]) -> Path:
    return next(session_roots["claude"][0].rglob("*.jsonl"))


@pytest.fixture
def pi_file(session_roots: dict[str, list[Path]]) -> Path:
    return next(session_roots["pi"][0].rglob("*.jsonl"))


@pytest.fixture
def settings(session_roots: dict[str, list[Path]]) -> Settings:
    return Settings(db_path=":memory:", roots=session_roots, max_workers=2)


@pytest.fixture
def store() -> Iterator[SearchIndex]:
    """Create an in-memory index store."""
    index = SearchIndex(":memory:")
    yield index
    index.close()


@pytest.fixture
def engine(settings: Settings) -> Iterator[SessionEngine]:
    with SessionEngine(settings) as session_engine:
        yield session_engine


@pytest.fixture
def write_session(tmp_path: Path) -> Callable[..., Path]:
    """Write JSON records (or raw strings) as a JSONL file and return its path."""

    def _write(name: str, records: list, directory: Path | None = None) -> Path:
        target_dir = directory or tmp_path / "adhoc"
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        lines = [record if isinstance(record, str) else json.dumps(record) for record in records]
        path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return path

    return _write

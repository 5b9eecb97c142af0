from __future__ import annotations

import logging
import os
from pathlib import Path

from ..records import SOURCE_CLAUDE, SOURCE_CODEX, SOURCE_PI
from .base import SessionFile, StatProvider, stat_path

logger = logging.getLogger(__name__)

CODEX_SESSIONS_DIR = Path.home() / ".codex" / "sessions"
CODEX_ARCHIVED_DIR = Path.home() / ".codex" / "archived_sessions"
CLAUDE_PROJECTS_DIR = Path.home() / ".claude" / "projects"
PI_SESSIONS_DIR = Path.home() / ".pi" / "agent" / "sessions"

ENV_CODEX_DIR = "CODEX_SESSIONS_DIR"
ENV_CLAUDE_DIR = "CLAUDE_CODE_PROJECTS_DIR"
ENV_PI_DIR = "PI_SESSIONS_DIR"


def resolve_codex_dirs(root_dir: Path | None = None) -> list[Path]:
    if root_dir is not None:
        return [root_dir]
    env_value = os.environ.get(ENV_CODEX_DIR)
    if env_value:
        return [Path(env_value).expanduser()]
    return [CODEX_SESSIONS_DIR, CODEX_ARCHIVED_DIR]


def resolve_claude_dirs(root_dir: Path | None = None) -> list[Path]:
    if root_dir is not None:
        return [root_dir]
    env_value = os.environ.get(ENV_CLAUDE_DIR)
    if env_value:
        return [Path(env_value).expanduser()]
    return [CLAUDE_PROJECTS_DIR]


def resolve_pi_dirs(root_dir: Path | None = None) -> list[Path]:
    if root_dir is not None:
        return [root_dir]
    env_value = os.environ.get(ENV_PI_DIR)
    if env_value:
        return [Path(env_value).expanduser()]
    return [PI_SESSIONS_DIR]


def default_roots() -> dict[str, list[Path]]:
    return {
        SOURCE_CODEX: resolve_codex_dirs(),
        SOURCE_CLAUDE: resolve_claude_dirs(),
        SOURCE_PI: resolve_pi_dirs(),
    }


def discover_root(root: Path, source_kind: str, stat: StatProvider = stat_path) -> list[SessionFile]:
    """Find every ``*.jsonl`` session log below ``root``."""
    if not root.is_dir():
        return []
    files: list[SessionFile] = []
    for path in sorted(root.rglob("*.jsonl")):
        if any(part.startswith(".") for part in path.relative_to(root).parts):
            continue
        if source_kind == SOURCE_CLAUDE and path.parent.name == "subagents":
            continue
        info = stat(path)
        if info is None:
            logger.debug("Session file vanished during discovery: %s", path)
            continue
        files.append(SessionFile(path=path, source_kind=source_kind, mtime=info.mtime, size=info.size))
    return files

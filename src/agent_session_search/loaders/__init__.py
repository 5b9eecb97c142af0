from __future__ import annotations

from pathlib import Path
from typing import Mapping

from .base import FileStat, SessionFile, StatProvider, stat_path
from .local import default_roots, discover_root

__all__ = [
    "FileStat",
    "SessionFile",
    "StatProvider",
    "default_roots",
    "discover_session_files",
    "stat_path",
]


def discover_session_files(
    roots: Mapping[str, list[Path]],
    source: str = "all",
    stat: StatProvider = stat_path,
) -> list[SessionFile]:
    files: list[SessionFile] = []
    seen: set[Path] = set()
    for source_kind, directories in roots.items():
        if source not in {"all", source_kind}:
            continue
        for directory in directories:
            for session_file in discover_root(directory, source_kind, stat=stat):
                if session_file.path in seen:
                    continue
                seen.add(session_file.path)
                files.append(session_file)

    files.sort(key=_sort_key, reverse=True)
    return files


def _sort_key(session_file: SessionFile) -> float:
    return session_file.mtime

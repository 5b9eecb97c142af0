# ABOUTME: Base types for session discovery.
# ABOUTME: Defines SessionFile, FileStat and the injectable file-metadata source.

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional


@dataclass(frozen=True)
class FileStat:
    """Modification time and size; a change in either forces a re-parse."""

    mtime: float
    size: int


@dataclass(frozen=True)
class SessionFile:
    """A session log found under one of the configured roots."""

    path: Path
    source_kind: str  # 'codex', 'claude' or 'pi'
    mtime: float
    size: int


StatProvider = Callable[[Path], Optional[FileStat]]


def stat_path(path: Path) -> FileStat | None:
    """Stat a file on disk; None when it does not exist."""
    try:
        result = os.stat(path)
    except FileNotFoundError:
        return None
    return FileStat(mtime=result.st_mtime, size=result.st_size)

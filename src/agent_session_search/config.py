"""Explicit runtime configuration, built once and passed down."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from .classifier import DEFAULT_RULES, ClassifierRules
from .loaders import default_roots

ENV_DB_PATH = "AGENT_SEARCH_DB"
ENV_RULES_PATH = "AGENT_SEARCH_RULES"
ENV_WORKERS = "AGENT_SEARCH_WORKERS"


@dataclass(frozen=True)
class Settings:
    db_path: str = ":memory:"
    roots: dict[str, list[Path]] = field(default_factory=dict)
    header_line_limit: int = 64
    preview_line_limit: int = 200
    preview_event_limit: int = 12
    max_workers: int = 4
    total_limit: int = 160
    per_session_limit: int = 3
    rules_path: Path | None = None
    rules: ClassifierRules = DEFAULT_RULES

    @classmethod
    def from_env(cls, **overrides: object) -> "Settings":
        """Build settings from the environment; keyword overrides win."""
        rules_path = os.environ.get(ENV_RULES_PATH)
        workers = os.environ.get(ENV_WORKERS)
        settings = cls(
            db_path=os.environ.get(ENV_DB_PATH, ":memory:"),
            roots=default_roots(),
            max_workers=int(workers) if workers else 4,
            rules_path=Path(rules_path).expanduser() if rules_path else None,
        )
        settings = replace(settings, **overrides)  # type: ignore[arg-type]
        return settings.with_rules_loaded()

    def with_rules_loaded(self) -> "Settings":
        if self.rules_path is None:
            return self
        return replace(self, rules=ClassifierRules.from_file(self.rules_path))

    def with_roots(self, roots: dict[str, list[Path]]) -> "Settings":
        return replace(self, roots=roots)

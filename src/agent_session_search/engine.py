"""The operations exposed to front ends, wired from one explicit Settings value."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

from .classifier import ClassifiedEvent, classify_line
from .config import Settings
from .index import ParseLevel, SearchIndex, Session, SessionFilter
from .indexer import IndexReport, SessionIndexer
from .loaders import StatProvider, stat_path
from .records import iter_file_rows
from .search import RankedMessage, SearchRanker
from .timeline import ConversationTurn, TimelineBuilder, TimelineEvent, group_turns

logger = logging.getLogger(__name__)


class SessionEngine:
    """Owns the store, indexer and ranker for one configuration."""

    def __init__(
        self,
        settings: Settings | None = None,
        stat: StatProvider = stat_path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        self.store = SearchIndex(self.settings.db_path)
        self.indexer = SessionIndexer(self.store, self.settings, stat=stat, clock=clock)
        self.ranker = SearchRanker(self.store, self.settings, stat=stat)

    def __enter__(self) -> "SessionEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def classify(self, raw_line: str) -> ClassifiedEvent | None:
        return classify_line(raw_line, self.settings.rules)

    def index_session(
        self,
        path: Path | str,
        force_full_reparse: bool = False,
        level: ParseLevel = ParseLevel.FULL,
    ) -> Session:
        return self.indexer.index_session(Path(path), force_full_reparse, level)

    def refresh(
        self,
        level: ParseLevel = ParseLevel.FULL,
        source: str = "all",
        force_full_reparse: bool = False,
    ) -> IndexReport:
        return self.indexer.refresh(level, source=source, force_full_reparse=force_full_reparse)

    def list_sessions(self, session_filter: SessionFilter | None = None) -> list[Session]:
        return self.store.list_sessions(session_filter)

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}")
        return session

    def get_events(self, session_id: str) -> list[TimelineEvent]:
        """Every event of a session, re-read from its file.

        If the file can no longer be read the stored preview is returned.
        """
        session = self.get_session(session_id)
        builder = TimelineBuilder(session.session_id, self.settings.rules)
        try:
            builder.extend(iter_file_rows(Path(session.file_path)))
        except OSError as exc:
            logger.warning("Cannot read %s, showing stored preview: %s", session.file_path, exc)
            return self.store.get_preview(session_id)
        return builder.events

    def get_timeline(self, session_id: str) -> list[ConversationTurn]:
        return group_turns(self.get_events(session_id))

    def search(
        self,
        query: str,
        total_limit: int | None = None,
        per_session_limit: int | None = None,
    ) -> list[RankedMessage]:
        return self.ranker.search(query, total_limit, per_session_limit)

    def message_context(
        self, session_id: str, position: int, before: int = 2, after: int = 2
    ) -> dict[str, Any]:
        return self.store.get_message_with_context(session_id, position, before, after)

    def stats(self) -> dict[str, Any]:
        return self.store.get_stats()

    def close(self) -> None:
        self.indexer.shutdown()
        self.store.close()

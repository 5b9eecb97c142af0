# ABOUTME: Incremental session indexing with a forward-only parse-level state machine.
# ABOUTME: One writer per session file, a bounded worker pool across files.

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from .classifier import VisibilityKind
from .config import Settings
from .index import ParseLevel, SearchIndex, Session, StoreWriteError
from .loaders import FileStat, SessionFile, StatProvider, discover_session_files, stat_path
from .records import SessionHeader, iter_file_rows, read_header
from .timeline import TimelineBuilder, TimelineEvent
from .timeutils import epoch_to_iso

logger = logging.getLogger(__name__)

TITLE_LENGTH = 120


class IndexingError(RuntimeError):
    """A session could not be read; its stored parse level is unchanged."""


class SessionVanishedError(IndexingError):
    """The session file disappeared before its rows were committed."""


@dataclass
class IndexReport:
    indexed: list[Session] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)


@dataclass
class _ParseResult:
    session: Session
    messages: list | None
    preview: list[TimelineEvent] | None


class SessionIndexer:
    """Advance sessions through unparsed → metadata → preview → full.

    A session's level only moves forward while its file keeps the same
    modification time and size; any change sends it back to unparsed.
    """

    def __init__(
        self,
        store: SearchIndex,
        settings: Settings,
        stat: StatProvider = stat_path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.stat = stat
        self.clock = clock
        self._locks: dict[Path, threading.Lock] = {}
        self._guard = threading.Lock()
        self._inflight: dict[Path, tuple[Future, ParseLevel, bool]] = {}
        self._executor: ThreadPoolExecutor | None = None

    def effective_level(self, path: Path) -> ParseLevel:
        """The stored level, or UNPARSED if the file changed since it was indexed."""
        info = self.stat(path)
        existing = self.store.get_session_by_path(str(path))
        if info is None or existing is None:
            return ParseLevel.UNPARSED
        return _level_for(existing, info, force=False)

    def index_session(
        self,
        path: Path,
        force_full_reparse: bool = False,
        level: ParseLevel = ParseLevel.FULL,
        source_kind: str | None = None,
    ) -> Session:
        path = Path(path)
        with self._lock_for(path):
            return self._index_locked(path, force_full_reparse, level, source_kind)

    def submit(
        self,
        path: Path,
        force_full_reparse: bool = False,
        level: ParseLevel = ParseLevel.FULL,
        source_kind: str | None = None,
    ) -> Future:
        """Queue a session for background indexing.

        A request for a file that is already queued or running returns the
        pending future when that run covers it: its level is at least the
        requested one and it forces a reparse whenever this request does.
        Otherwise a new run is queued behind the pending one and later
        requests coalesce onto it.
        """
        path = Path(path)
        with self._guard:
            pending = self._inflight.get(path)
            if pending is not None:
                pending_future, pending_level, pending_force = pending
                covered = pending_level >= level and (pending_force or not force_full_reparse)
                if covered and not pending_future.done():
                    return pending_future
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, self.settings.max_workers),
                    thread_name_prefix="session-indexer",
                )
            future = self._executor.submit(
                self.index_session, path, force_full_reparse, level, source_kind
            )
            self._inflight[path] = (future, ParseLevel(level), force_full_reparse)
        future.add_done_callback(lambda done, key=path: self._forget(key, done))
        return future

    def index_all(
        self,
        files: Iterable[SessionFile],
        level: ParseLevel = ParseLevel.FULL,
        force_full_reparse: bool = False,
        on_done: Callable[[Path, Session | None, Exception | None], None] | None = None,
    ) -> IndexReport:
        """Index many sessions in parallel; one failure never stops the rest."""
        report = IndexReport()
        window = max(1, self.settings.max_workers) * 2
        pending: dict[Future, Path] = {}

        def collect(done: Iterable[Future]) -> None:
            for future in done:
                path = pending.pop(future)
                try:
                    session = future.result()
                except (IndexingError, StoreWriteError) as exc:
                    logger.warning("Indexing failed for %s: %s", path, exc)
                    report.failures[str(path)] = str(exc)
                    if on_done:
                        on_done(path, None, exc)
                    continue
                report.indexed.append(session)
                if on_done:
                    on_done(path, session, None)

        for session_file in files:
            if len(pending) >= window:
                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                collect(done)
            future = self.submit(
                session_file.path, force_full_reparse, level, session_file.source_kind
            )
            pending[future] = session_file.path
        if pending:
            done, _ = wait(list(pending))
            collect(done)
        return report

    def refresh(
        self,
        level: ParseLevel = ParseLevel.FULL,
        source: str = "all",
        force_full_reparse: bool = False,
        on_done: Callable[[Path, Session | None, Exception | None], None] | None = None,
    ) -> IndexReport:
        """Discover every configured root, index it, and drop vanished sessions."""
        files = discover_session_files(self.settings.roots, source=source, stat=self.stat)
        report = self.index_all(files, level, force_full_reparse, on_done=on_done)
        for session in self.store.list_sessions():
            if self.stat(Path(session.file_path)) is None:
                self.store.delete_session(session.session_id)
                report.removed.append(session.session_id)
        return report

    def shutdown(self) -> None:
        with self._guard:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _index_locked(
        self,
        path: Path,
        force_full_reparse: bool,
        level: ParseLevel,
        source_kind: str | None,
    ) -> Session:
        info = self.stat(path)
        if info is None:
            raise SessionVanishedError(f"Session file not found: {path}")

        existing = self.store.get_session_by_path(str(path))
        if existing is not None:
            current = _level_for(existing, info, force_full_reparse)
            if current >= level:
                return existing
            source_kind = source_kind or existing.source_kind
            if current == ParseLevel.UNPARSED:
                logger.debug("Session file changed, reparsing from scratch: %s", path)

        try:
            result = self._parse(path, info, level, source_kind)
        except FileNotFoundError as exc:
            raise SessionVanishedError(f"Session file vanished while indexing: {path}") from exc
        except OSError as exc:
            raise IndexingError(f"Cannot read {path}: {exc}") from exc

        if self.stat(path) is None:
            raise SessionVanishedError(f"Session file vanished while indexing: {path}")

        if existing is not None and existing.session_id != result.session.session_id:
            self.store.delete_session(existing.session_id)
        self.store.replace_session(result.session, result.messages, result.preview)
        logger.debug(
            "Indexed %s at %s (%d events)",
            result.session.session_id,
            level.name.lower(),
            result.session.event_count,
        )
        return result.session

    def _parse(
        self, path: Path, info: FileStat, level: ParseLevel, source_kind: str | None
    ) -> _ParseResult:
        header = read_header(path, self.settings.header_line_limit, source_kind)
        session_id = f"{header.source_kind}:{header.native_id or path.stem}"

        events: list[TimelineEvent] = []
        messages: list = []
        if level >= ParseLevel.PREVIEW:
            builder = TimelineBuilder(session_id, self.settings.rules)
            limit = self.settings.preview_line_limit if level == ParseLevel.PREVIEW else None
            builder.extend(iter_file_rows(path, limit=limit))
            events = builder.events
            if level == ParseLevel.FULL:
                messages = builder.messages()

        session = self._build_session(session_id, path, info, level, header, events)
        return _ParseResult(
            session=session,
            messages=messages,
            preview=events[: self.settings.preview_event_limit],
        )

    def _build_session(
        self,
        session_id: str,
        path: Path,
        info: FileStat,
        level: ParseLevel,
        header: SessionHeader,
        events: list[TimelineEvent],
    ) -> Session:
        first_user = next(
            (event for event in events if event.kind is VisibilityKind.USER and event.text), None
        )
        title = header.title
        if not title and first_user is not None and first_user.text:
            title = first_user.text.replace("\n", " ").strip()[:TITLE_LENGTH]
        created_at = header.started_at or next(
            (event.timestamp for event in events if event.timestamp), None
        )
        return Session(
            session_id=session_id,
            source_kind=header.source_kind,
            file_path=str(path),
            parse_level=level,
            user_message_count=sum(1 for event in events if event.kind is VisibilityKind.USER),
            assistant_message_count=sum(
                1 for event in events if event.kind is VisibilityKind.ASSISTANT
            ),
            event_count=len(events),
            model=header.model,
            cwd=header.cwd,
            title=title,
            created_at=created_at or epoch_to_iso(info.mtime),
            last_modified_at=epoch_to_iso(info.mtime),
            file_size=info.size,
            file_mtime=info.mtime,
            indexed_at=epoch_to_iso(self.clock()),
        )

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._locks[path] = lock
            return lock

    def _forget(self, path: Path, future: Future) -> None:
        with self._guard:
            pending = self._inflight.get(path)
            if pending is not None and pending[0] is future:
                del self._inflight[path]


def _level_for(existing: Session, info: FileStat, force: bool) -> ParseLevel:
    if force:
        return ParseLevel.UNPARSED
    if existing.file_size != info.size or existing.file_mtime != info.mtime:
        return ParseLevel.UNPARSED
    return existing.parse_level

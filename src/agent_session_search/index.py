from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable

import duckdb

from .timeline import Message, TimelineEvent

logger = logging.getLogger(__name__)

# Relevance terms shared by match_messages and the search ranker.
OCCURRENCE_CAP = 5
PHRASE_BONUS = 2.0
POSITION_WINDOW = 200

SESSION_COLUMNS = (
    "session_id",
    "source_kind",
    "file_path",
    "parse_level",
    "user_message_count",
    "assistant_message_count",
    "event_count",
    "model",
    "cwd",
    "title",
    "created_at",
    "last_modified_at",
    "file_size",
    "file_mtime",
    "indexed_at",
)


class ParseLevel(enum.IntEnum):
    UNPARSED = 0
    METADATA = 1
    PREVIEW = 2
    FULL = 3

    @classmethod
    def parse(cls, value: str | int) -> "ParseLevel":
        if isinstance(value, int):
            return cls(value)
        return cls[value.strip().upper()]


class StoreWriteError(RuntimeError):
    """A session's rows could not be committed; nothing was written."""


@dataclass(frozen=True)
class Session:
    session_id: str
    source_kind: str
    file_path: str
    parse_level: ParseLevel
    user_message_count: int = 0
    assistant_message_count: int = 0
    event_count: int = 0
    model: str | None = None
    cwd: str | None = None
    title: str | None = None
    created_at: str | None = None
    last_modified_at: str | None = None
    file_size: int = 0
    file_mtime: float = 0.0
    indexed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["parse_level"] = self.parse_level.name.lower()
        return data

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Session":
        values = {column: row.get(column) for column in SESSION_COLUMNS}
        values["parse_level"] = ParseLevel(int(values["parse_level"] or 0))
        return cls(**values)


@dataclass(frozen=True)
class SessionFilter:
    source_kind: str | None = None
    cwd_prefix: str | None = None
    min_level: ParseLevel | None = None
    since: str | None = None
    limit: int | None = None


class SearchIndex:
    """DuckDB-backed store for sessions, messages and timeline previews.

    Writes are serialized and transactional per session. Reads run on their
    own cursor and see the last committed state.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self.fts_enabled = True
        self._write_lock = threading.RLock()
        self._fts_dirty = False
        self._init_schema()

    def _init_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        self.conn.execute(schema_path.read_text())
        self._init_fts()

    def _init_fts(self) -> None:
        try:
            self.conn.execute("INSTALL fts;")
            self.conn.execute("LOAD fts;")
        except duckdb.Error as exc:
            logger.info("Full-text extension unavailable, using term scoring only: %s", exc)
            self.fts_enabled = False
            return
        row = self.conn.execute(
            "SELECT COUNT(*) FROM duckdb_schemas() WHERE schema_name = 'fts_main_messages'"
        ).fetchone()
        self._fts_dirty = not (row and row[0])

    def close(self) -> None:
        self.conn.close()

    def is_empty(self) -> bool:
        row = self._cursor().execute("SELECT COUNT(*) FROM sessions").fetchone()
        return row is not None and row[0] == 0

    def clear(self) -> None:
        with self._write_lock:
            cursor = self._cursor()
            cursor.execute("DELETE FROM timeline_previews")
            cursor.execute("DELETE FROM messages")
            cursor.execute("DELETE FROM sessions")
            self._fts_dirty = True

    def replace_session(
        self,
        session: Session,
        messages: list[Message] | None = None,
        preview: list[TimelineEvent] | None = None,
    ) -> None:
        """Atomically replace every stored row of ``session``.

        ``messages``/``preview`` of None keep the rows already stored (used
        for metadata-only refreshes of a session whose file is unchanged).
        """
        with self._write_lock:
            cursor = self._cursor()
            cursor.execute("BEGIN TRANSACTION")
            try:
                self._write_session(cursor, session, messages, preview)
                cursor.execute("COMMIT")
            except duckdb.Error as exc:
                cursor.execute("ROLLBACK")
                raise StoreWriteError(f"Failed to write session {session.session_id}: {exc}") from exc
            if messages is not None:
                self._fts_dirty = True

    def _write_session(
        self,
        cursor: duckdb.DuckDBPyConnection,
        session: Session,
        messages: list[Message] | None,
        preview: list[TimelineEvent] | None,
    ) -> None:
        session_id = session.session_id
        cursor.execute(
            "DELETE FROM sessions WHERE session_id = ? OR file_path = ?",
            [session_id, session.file_path],
        )
        placeholders = ", ".join("?" for _ in SESSION_COLUMNS)
        cursor.execute(
            f"INSERT INTO sessions ({', '.join(SESSION_COLUMNS)}) VALUES ({placeholders})",
            [
                int(session.parse_level) if column == "parse_level" else getattr(session, column)
                for column in SESSION_COLUMNS
            ],
        )

        if messages is not None:
            cursor.execute("DELETE FROM messages WHERE session_id = ?", [session_id])
            if messages:
                cursor.executemany(
                    """
                    INSERT INTO messages (message_key, session_id, position, role, timestamp, text)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            message_key(session_id, msg.position),
                            session_id,
                            msg.position,
                            msg.role,
                            msg.timestamp,
                            msg.text,
                        )
                        for msg in messages
                    ],
                )

        if preview is not None:
            cursor.execute("DELETE FROM timeline_previews WHERE session_id = ?", [session_id])
            cursor.execute(
                "INSERT INTO timeline_previews (session_id, events_json) VALUES (?, ?)",
                [session_id, json.dumps([event.to_dict() for event in preview])],
            )

    def delete_session(self, session_id: str) -> None:
        with self._write_lock:
            cursor = self._cursor()
            cursor.execute("BEGIN TRANSACTION")
            try:
                cursor.execute("DELETE FROM timeline_previews WHERE session_id = ?", [session_id])
                cursor.execute("DELETE FROM messages WHERE session_id = ?", [session_id])
                cursor.execute("DELETE FROM sessions WHERE session_id = ?", [session_id])
                cursor.execute("COMMIT")
            except duckdb.Error as exc:
                cursor.execute("ROLLBACK")
                raise StoreWriteError(f"Failed to delete session {session_id}: {exc}") from exc
            self._fts_dirty = True

    def refresh_fts(self) -> None:
        """Rebuild the full-text index if messages changed since the last build."""
        if not self.fts_enabled or not self._fts_dirty:
            return
        with self._write_lock:
            if not self._fts_dirty:
                return
            try:
                self._cursor().execute(
                    """
                    PRAGMA create_fts_index(
                        'messages',
                        'message_key',
                        'text',
                        stemmer='english',
                        stopwords='english',
                        overwrite=1
                    );
                    """
                )
            except duckdb.Error as exc:
                logger.warning("Full-text index rebuild failed, disabling it: %s", exc)
                self.fts_enabled = False
                return
            self._fts_dirty = False

    def get_session(self, session_id: str) -> Session | None:
        rows = self._fetchall("SELECT * FROM sessions WHERE session_id = ?", [session_id])
        return Session.from_row(rows[0]) if rows else None

    def get_session_by_path(self, file_path: str) -> Session | None:
        rows = self._fetchall("SELECT * FROM sessions WHERE file_path = ?", [file_path])
        return Session.from_row(rows[0]) if rows else None

    def list_sessions(self, session_filter: SessionFilter | None = None) -> list[Session]:
        session_filter = session_filter or SessionFilter()
        sql = "SELECT * FROM sessions WHERE 1 = 1"
        params: list[Any] = []
        if session_filter.source_kind:
            sql += " AND source_kind = ?"
            params.append(session_filter.source_kind)
        if session_filter.cwd_prefix:
            sql += " AND starts_with(cwd, ?)"
            params.append(session_filter.cwd_prefix)
        if session_filter.min_level is not None:
            sql += " AND parse_level >= ?"
            params.append(int(session_filter.min_level))
        if session_filter.since:
            sql += " AND COALESCE(last_modified_at, created_at) >= ?"
            params.append(session_filter.since)
        sql += " ORDER BY last_modified_at DESC NULLS LAST, session_id"
        if session_filter.limit:
            sql += " LIMIT ?"
            params.append(session_filter.limit)
        return [Session.from_row(row) for row in self._fetchall(sql, params)]

    def get_preview(self, session_id: str) -> list[TimelineEvent]:
        rows = self._fetchall(
            "SELECT events_json FROM timeline_previews WHERE session_id = ?", [session_id]
        )
        if not rows:
            return []
        return [TimelineEvent.from_dict(item) for item in json.loads(rows[0]["events_json"])]

    def list_messages(self, session_id: str) -> list[dict[str, Any]]:
        return self._fetchall(
            """
            SELECT session_id, position, role, timestamp, text
            FROM messages WHERE session_id = ?
            ORDER BY position ASC
            """,
            [session_id],
        )

    def get_message(self, session_id: str, position: int) -> dict[str, Any] | None:
        rows = self._fetchall(
            "SELECT * FROM messages WHERE session_id = ? AND position = ?",
            [session_id, position],
        )
        return rows[0] if rows else None

    def get_message_with_context(
        self, session_id: str, position: int, before: int = 2, after: int = 2
    ) -> dict[str, Any]:
        message = self.get_message(session_id, position)
        if message is None:
            raise KeyError(f"Message not found: {session_id}#{position}")

        before_rows = self._fetchall(
            """
            SELECT * FROM messages
            WHERE session_id = ? AND position < ?
            ORDER BY position DESC
            LIMIT ?
            """,
            [session_id, position, before],
        )
        after_rows = self._fetchall(
            """
            SELECT * FROM messages
            WHERE session_id = ? AND position > ?
            ORDER BY position ASC
            LIMIT ?
            """,
            [session_id, position, after],
        )

        before_rows.reverse()
        return {"message": message, "before": before_rows, "after": after_rows}

    def match_messages(
        self, tokens: list[str], limit: int = 5000, per_file_limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Messages containing every token (case-insensitive), best first.

        Rows are ordered by the same capped occurrence count, phrase bonus,
        position bonus and ``bm25`` score the search ranker uses, then by
        recency, so ``limit`` keeps the strongest matches. ``per_file_limit``
        keeps at most that many rows from each session file.

        Each row carries the session's source and file plus a ``bm25`` score
        when the full-text index is available.
        """
        if not tokens:
            return []
        self.refresh_fts()

        params: list[Any] = []
        if self.fts_enabled:
            bm25_sql = "fts_main_messages.match_bm25(m.message_key, ?, fields := 'text')"
            params.append(" ".join(tokens))
        else:
            bm25_sql = "NULL"
        matched = (
            "SELECT m.session_id, m.position, m.role, m.timestamp, m.text, "
            f"s.source_kind, s.file_path, s.last_modified_at, {bm25_sql} AS bm25, "
            "lower(m.text) AS lowered, "
            "COALESCE(m.timestamp, s.last_modified_at) AS recency "
            "FROM messages m JOIN sessions s ON m.session_id = s.session_id "
            "WHERE " + " AND ".join("contains(lower(m.text), ?)" for _ in tokens)
        )
        params.extend(tokens)

        terms = [
            f"LEAST((length(r.lowered) - length(replace(r.lowered, ?, ''))) // {len(token)}, "
            f"{OCCURRENCE_CAP})"
            for token in tokens
        ]
        params.extend(tokens)
        if len(tokens) > 1:
            terms.append(f"CASE WHEN contains(r.lowered, ?) THEN {PHRASE_BONUS} ELSE 0.0 END")
            params.append(" ".join(tokens))
        first_match = "list_min([" + ", ".join("instr(r.lowered, ?)" for _ in tokens) + "]) - 1"
        terms.append(f"GREATEST(0.0, 1.0 - ({first_match}) / {float(POSITION_WINDOW)})")
        params.extend(tokens)
        terms.append("COALESCE(r.bm25, 0.0)")

        ordering = 'relevance DESC, recency DESC NULLS LAST, session_id, "position"'
        sql = (
            f"WITH matched AS ({matched}), "
            f"scored AS (SELECT r.*, {' + '.join(terms)} AS relevance FROM matched r), "
            f"ranked AS (SELECT *, ROW_NUMBER() OVER (PARTITION BY file_path ORDER BY {ordering}) "
            "AS file_rank FROM scored) "
            "SELECT * EXCLUDE (lowered, recency, relevance, file_rank) FROM ranked"
        )
        if per_file_limit is not None:
            sql += " WHERE file_rank <= ?"
            params.append(per_file_limit)
        sql += f" ORDER BY {ordering} LIMIT ?"
        params.append(limit)
        return self._fetchall(sql, params)

    def get_stats(self) -> dict[str, Any]:
        cursor = self._cursor()
        session_row = cursor.execute("SELECT COUNT(*) FROM sessions").fetchone()
        message_row = cursor.execute("SELECT COUNT(*) FROM messages").fetchone()
        range_row = cursor.execute(
            "SELECT MIN(created_at), MAX(last_modified_at) FROM sessions"
        ).fetchone()
        level_rows = cursor.execute(
            "SELECT parse_level, COUNT(*) FROM sessions GROUP BY parse_level ORDER BY parse_level"
        ).fetchall()
        source_rows = cursor.execute(
            "SELECT source_kind, COUNT(*) FROM sessions GROUP BY source_kind ORDER BY source_kind"
        ).fetchall()

        return {
            "session_count": int(session_row[0]) if session_row else 0,
            "message_count": int(message_row[0]) if message_row else 0,
            "date_range": {
                "start": range_row[0] if range_row else None,
                "end": range_row[1] if range_row else None,
            },
            "parse_levels": {ParseLevel(int(level)).name.lower(): count for level, count in level_rows},
            "sources": {source: count for source, count in source_rows},
            "fts_enabled": self.fts_enabled,
        }

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        return self.conn.cursor()

    def _fetchall(self, sql: str, params: Iterable[Any] | None = None) -> list[dict[str, Any]]:
        cursor = self._cursor().execute(sql, list(params or []))
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]


def message_key(session_id: str, position: int) -> str:
    return f"{session_id}#{position}"

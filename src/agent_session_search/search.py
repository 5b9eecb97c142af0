# ABOUTME: Ranked multi-keyword search over indexed messages.
# ABOUTME: Falls back to scanning raw session files when the index has nothing.

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable

import duckdb

from .config import Settings
from .index import OCCURRENCE_CAP, PHRASE_BONUS, POSITION_WINDOW, SearchIndex
from .loaders import StatProvider, discover_session_files, stat_path
from .records import iter_file_rows, read_header
from .timeline import TimelineBuilder
from .timeutils import epoch_to_iso, iso_to_epoch

logger = logging.getLogger(__name__)

ORIGIN_INDEX = "index"
ORIGIN_RAW_SCAN = "raw_scan"

SNIPPET_RADIUS = 80
MATCH_LIMIT = 5000


@dataclass(frozen=True)
class RankedMessage:
    session_id: str
    source_kind: str
    file_path: str
    role: str
    text: str
    position: int
    timestamp: str | None
    score: float
    snippet: str
    origin: str = ORIGIN_INDEX
    session_timestamp: str | None = None

    @property
    def recency(self) -> float:
        return iso_to_epoch(self.timestamp or self.session_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def tokenize(query: str) -> list[str]:
    """Lowercased whitespace tokens, first occurrence order, no duplicates."""
    tokens: list[str] = []
    for token in query.lower().split():
        if token not in tokens:
            tokens.append(token)
    return tokens


def matches_all(text: str, tokens: Iterable[str]) -> bool:
    lowered = text.lower()
    return all(token in lowered for token in tokens)


def relevance_score(text: str, tokens: list[str]) -> float:
    """Occurrences of each token (capped), plus a bonus for the exact phrase."""
    lowered = text.lower()
    score = float(sum(min(lowered.count(token), OCCURRENCE_CAP) for token in tokens))
    if len(tokens) > 1 and " ".join(tokens) in lowered:
        score += PHRASE_BONUS
    return score


def position_bonus(text: str, tokens: list[str]) -> float:
    """1.0 for a match at the very start, falling to 0 at ``POSITION_WINDOW``."""
    first = _first_match(text.lower(), tokens)
    if first < 0:
        return 0.0
    return max(0.0, 1.0 - first / POSITION_WINDOW)


def make_snippet(text: str, tokens: list[str], radius: int = SNIPPET_RADIUS) -> str:
    flattened = " ".join(text.split())
    first = _first_match(flattened.lower(), tokens)
    if first < 0:
        first = 0
    start = max(0, first - radius)
    end = min(len(flattened), first + radius)
    snippet = flattened[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(flattened):
        snippet = snippet + "..."
    return snippet


def apply_caps(
    candidates: list[RankedMessage], total_limit: int, per_session_limit: int
) -> list[RankedMessage]:
    """Order by score then recency, cap matches per source file, then overall."""
    ordered = sorted(
        candidates,
        key=lambda item: (-item.score, -item.recency, item.session_id, item.position),
    )
    per_file: dict[str, int] = {}
    results: list[RankedMessage] = []
    for item in ordered:
        if len(results) >= total_limit:
            break
        count = per_file.get(item.file_path, 0)
        if count >= per_session_limit:
            continue
        per_file[item.file_path] = count + 1
        results.append(item)
    return results


class SearchRanker:
    def __init__(
        self,
        store: SearchIndex,
        settings: Settings,
        stat: StatProvider = stat_path,
    ) -> None:
        self.store = store
        self.settings = settings
        self.stat = stat

    def search(
        self,
        query: str,
        total_limit: int | None = None,
        per_session_limit: int | None = None,
    ) -> list[RankedMessage]:
        tokens = tokenize(query)
        if not tokens:
            return []
        total_limit = self.settings.total_limit if total_limit is None else total_limit
        per_session_limit = (
            self.settings.per_session_limit if per_session_limit is None else per_session_limit
        )
        if total_limit <= 0 or per_session_limit <= 0:
            return []

        try:
            rows = self.store.match_messages(
                tokens, limit=max(MATCH_LIMIT, total_limit), per_file_limit=per_session_limit
            )
        except duckdb.Error as exc:
            logger.warning("Index search failed, scanning session files instead: %s", exc)
            rows = []

        candidates = [self._rank_row(row, tokens) for row in rows]
        if not candidates:
            logger.debug("No indexed matches for %r, scanning raw session files", query)
            candidates = self.scan_files(tokens)
        return apply_caps(candidates, total_limit, per_session_limit)

    def scan_files(self, tokens: list[str]) -> list[RankedMessage]:
        """Naive conjunctive substring search straight over the session files."""
        candidates: list[RankedMessage] = []
        for session_file in discover_session_files(self.settings.roots, stat=self.stat):
            try:
                candidates.extend(
                    self._scan_file(
                        session_file.path, session_file.source_kind, session_file.mtime, tokens
                    )
                )
            except OSError as exc:
                logger.warning("Skipping unreadable session file %s: %s", session_file.path, exc)
        return candidates

    def _scan_file(
        self, path: Path, source_kind: str, mtime: float, tokens: list[str]
    ) -> list[RankedMessage]:
        header = read_header(path, self.settings.header_line_limit, source_kind)
        session_id = f"{header.source_kind}:{header.native_id or path.stem}"
        builder = TimelineBuilder(session_id, self.settings.rules)
        builder.extend(iter_file_rows(path))
        session_timestamp = epoch_to_iso(mtime)
        return [
            self._ranked(
                session_id=session_id,
                source_kind=header.source_kind,
                file_path=str(path),
                role=message.role,
                text=message.text,
                position=message.position,
                timestamp=message.timestamp,
                session_timestamp=session_timestamp,
                tokens=tokens,
                origin=ORIGIN_RAW_SCAN,
            )
            for message in builder.messages()
            if matches_all(message.text, tokens)
        ]

    def _rank_row(self, row: dict[str, Any], tokens: list[str]) -> RankedMessage:
        return self._ranked(
            session_id=row["session_id"],
            source_kind=row["source_kind"],
            file_path=row["file_path"],
            role=row["role"],
            text=row["text"] or "",
            position=int(row["position"]),
            timestamp=row.get("timestamp"),
            session_timestamp=row.get("last_modified_at"),
            tokens=tokens,
            bm25=row.get("bm25"),
        )

    def _ranked(
        self,
        *,
        session_id: str,
        source_kind: str,
        file_path: str,
        role: str,
        text: str,
        position: int,
        timestamp: str | None,
        session_timestamp: str | None,
        tokens: list[str],
        bm25: float | None = None,
        origin: str = ORIGIN_INDEX,
    ) -> RankedMessage:
        score = relevance_score(text, tokens) + position_bonus(text, tokens)
        if bm25 is not None:
            score += float(bm25)
        return RankedMessage(
            session_id=session_id,
            source_kind=source_kind,
            file_path=file_path,
            role=role,
            text=text,
            position=position,
            timestamp=timestamp,
            score=round(score, 6),
            snippet=make_snippet(text, tokens),
            origin=origin,
            session_timestamp=session_timestamp,
        )


def _first_match(lowered: str, tokens: Iterable[str]) -> int:
    positions = [index for index in (lowered.find(token) for token in tokens) if index >= 0]
    return min(positions) if positions else -1

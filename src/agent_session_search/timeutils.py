"""Timestamp normalization shared by the decoder, indexer and ranker."""
from __future__ import annotations

from datetime import datetime, timezone


def _format_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_iso(value: str | None) -> str | None:
    """Convert an RFC 3339 token into a sortable UTC string; None if unparseable."""
    if not value:
        return None
    token = value.strip()
    if not token:
        return None
    try:
        parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
        return _format_utc(parsed)
    except (ValueError, OverflowError):
        return None


def epoch_to_iso(value: float) -> str:
    return _format_utc(datetime.fromtimestamp(value, tz=timezone.utc))


def iso_to_epoch(value: str | None) -> float:
    token = normalize_iso(value)
    if not token:
        return 0.0
    return datetime.fromisoformat(token.replace("Z", "+00:00")).timestamp()

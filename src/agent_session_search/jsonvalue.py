# ABOUTME: Generic JSON value helpers shared by the decoder and classifier.
# ABOUTME: Rendering of free-form payload fields and the recursive edit-key scan.

from __future__ import annotations

import json
from typing import Any, Iterable, Union

JSONValue = Union[str, int, float, bool, None, list["JSONValue"], dict[str, "JSONValue"]]

PATH_KEYS = frozenset({"file_path", "filepath", "path"})
CONTENT_KEYS = frozenset({"content", "new_content", "text"})
OLD_NEW_KEYS = frozenset({"old_string", "new_string"})
PATCH_KEYS = frozenset({"patch", "diff"})


def string_value(value: JSONValue) -> str | None:
    """Render scalars as text; containers and null have no string form."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return _format_number(value)
    return None


def render_value(value: JSONValue) -> str | None:
    """Render any value as text, pretty-printing containers with sorted keys."""
    if isinstance(value, (list, dict)):
        try:
            return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False)
        except (TypeError, ValueError):
            return None
    return string_value(value)


def parse_embedded(value: JSONValue) -> JSONValue:
    """Decode a string holding a JSON object or array; other values pass through.

    Codex stores function-call arguments as a JSON-encoded string.
    """
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not stripped or stripped[0] not in "[{":
        return value
    try:
        return json.loads(stripped)
    except ValueError:
        return value


def contains_edit_keys(
    value: JSONValue,
    path_keys: Iterable[str] = PATH_KEYS,
    content_keys: Iterable[str] = CONTENT_KEYS,
) -> bool:
    """Return True when a JSON tree shows the key shape of a file edit.

    An object qualifies when it has old_string/new_string or patch/diff keys,
    or a path-like key next to a content-like key. Nested objects and arrays
    are searched recursively.
    """
    path_set = frozenset(path_keys)
    content_set = frozenset(content_keys)
    return _scan(value, path_set, content_set)


def _scan(value: JSONValue, path_keys: frozenset[str], content_keys: frozenset[str]) -> bool:
    if isinstance(value, dict):
        keys = {str(key).lower() for key in value}
        if keys & OLD_NEW_KEYS or keys & PATCH_KEYS:
            return True
        if keys & path_keys and keys & content_keys:
            return True
        return any(_scan(child, path_keys, content_keys) for child in value.values())
    if isinstance(value, list):
        return any(_scan(child, path_keys, content_keys) for child in value)
    return False


def as_text_list(value: Any) -> list[str] | None:
    """Collect the ``text`` of each block in a content/summary array.

    Returns None when the field is absent, so callers can tell "missing"
    from "present but empty".
    """
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        return []
    texts: list[str] = []
    for block in value:
        if isinstance(block, str):
            texts.append(block)
        elif isinstance(block, dict):
            text = block.get("text")
            if isinstance(text, str):
                texts.append(text)
    return texts


def _format_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)

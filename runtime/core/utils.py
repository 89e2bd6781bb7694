"""Small utility helpers used across the core runtime."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_rfc3339(dt: str) -> datetime:
    """Parse RFC3339-ish timestamps as written by `format_rfc3339`.

    Python's datetime.fromisoformat does not accept trailing "Z" on older
    interpreters, so we normalize.
    """
    s = dt.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        raise ValueError("date-time must be timezone-aware (include Z or offset)")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    # Fixed precision keeps stored timestamps lexically ordered.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def json_loads_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    return value if isinstance(value, dict) else {}


def deep_get(d: dict[str, Any], path: list[str], default: Any = None) -> Any:
    cur: Any = d
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur

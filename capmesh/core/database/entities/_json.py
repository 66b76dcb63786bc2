"""JSON column helpers shared by entities.

Structured values are stored as JSON text so the schema works on both
PostgreSQL and SQLite.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def loads(raw: str | None, default: Any) -> Any:
    try:
        return json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default


def utc_now() -> datetime:
    """Current time as timezone-aware UTC."""
    return datetime.now(timezone.utc)

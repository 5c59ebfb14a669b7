"""Shared utility functions used across Karma modules."""
from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | bytes | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def name_key(name: str) -> str:
    """Collapse a display name to lowercase alphanumerics for variant matching."""
    return "".join(ch for ch in name.lower() if ch.isalnum())

"""Shared utility functions for chatrelay."""

from __future__ import annotations

import time
import uuid


def new_id() -> str:
    """Random hex identifier for conversations and turns."""
    return uuid.uuid4().hex


def now_seconds() -> int:
    """Wall-clock epoch seconds, the unit turns are stamped with."""
    return int(time.time())


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated request field; empty input gives []."""
    if not value:
        return []
    return value.split(",")

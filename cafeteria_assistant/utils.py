from __future__ import annotations

import datetime as dt
import json
import re
import sys
import time
from typing import Callable, List, Optional


_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def normalize_message(s: str) -> str:
    """
    Normalize a chat message for keyword matching:
    - None -> ""
    - lowercase (Latin letters only; Japanese text is unaffected)
    """
    if s is None:
        return ""
    return str(s).lower()


def sanitize_text(s: str) -> str:
    """Drop NUL and control characters, keeping newlines and tabs."""
    if not s:
        return ""
    return _CONTROL_CHARS_RE.sub("", str(s))


def _truncate(s: str, max_len: int = 200) -> str:
    s = s or ""
    if len(s) <= max_len:
        return s
    return s[: max_len - 1] + "…"


def _trace(enabled: bool, event: str, payload: dict) -> None:
    """
    Lightweight structured tracing to stderr.
    No-op when disabled.
    """
    if not enabled:
        return
    print(
        f"[trace] {event} {json.dumps(payload, ensure_ascii=False, default=str)}",
        file=sys.stderr,
    )


class DebugLog:
    """
    Per-request debug accumulator.

    Entries are time-stamped ("[HH:MM:SS] message") and only the newest
    `limit` entries are kept. One instance belongs to one request, so
    concurrent requests never share entries.
    """

    def __init__(self, limit: int = 50, clock: Optional[Callable[[], dt.datetime]] = None) -> None:
        self.limit = limit
        self._clock = clock or dt.datetime.now
        self._entries: List[str] = []

    def add(self, message: str) -> None:
        stamp = self._clock().strftime("%H:%M:%S")
        self._entries.append(f"[{stamp}] {message}")
        if len(self._entries) > self.limit:
            del self._entries[: len(self._entries) - self.limit]

    def contains(self, needle: str) -> bool:
        return any(needle in e for e in self._entries)

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class Deadline:
    """Aggregate time budget shared by every provider call in one chain run."""

    def __init__(self, total_ms: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if total_ms is None else clock() + total_ms / 1000.0

    def remaining_s(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining_s()
        return remaining is not None and remaining <= 0.0

"""
Sales ledger reconciliation.

Per-date counters persisted as one JSON document:

    {"2024-05-01": {"reservations": 2, "people": 2, "menuSales": {"カレー": 2}}}

`reservations` counts every booked person (pending or verified); `people`
and `menuSales` count verified people only, so reservations >= people holds
for every date as long as all events go through this module. Counts never
decrease.

Each read-modify-write runs under a lock keyed by the resolved ledger path
and the document is replaced atomically, so concurrent events in one
process never lose increments. Separate processes are not coordinated.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from pydantic import ValidationError

from .models import LedgerEntry

logger = logging.getLogger(__name__)

LEDGER_FILE = "sales-data.json"

PathLike = Union[str, Path]

_locks_guard = threading.Lock()
_locks: Dict[str, threading.Lock] = {}


class LedgerError(Exception):
    pass


class LedgerWriteError(LedgerError):
    """The ledger document could not be persisted."""


def path_lock(path: PathLike) -> threading.Lock:
    """Process-wide lock shared by every caller touching the same file."""
    key = str(Path(path).resolve())
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _locks[key] = lock
        return lock


def write_json_atomic(path: PathLike, data: object) -> None:
    """Write JSON to a temp file beside `path` and rename it into place."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, p)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class SalesLedger:
    def __init__(self, path: PathLike) -> None:
        self.path = Path(path)

    @classmethod
    def in_dir(cls, data_dir: PathLike) -> "SalesLedger":
        return cls(Path(data_dir) / LEDGER_FILE)

    @property
    def lock(self) -> threading.Lock:
        return path_lock(self.path)

    def _read(self) -> Dict[str, LedgerEntry]:
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Could not read sales ledger %s: %s", self.path, e)
            return {}
        if not text.strip():
            return {}
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            logger.error("Sales ledger %s is not valid JSON; treating it as empty", self.path)
            return {}
        if not isinstance(raw, dict):
            logger.error("Sales ledger %s is not a JSON object; treating it as empty", self.path)
            return {}

        out: Dict[str, LedgerEntry] = {}
        for day, entry in raw.items():
            try:
                out[str(day)] = LedgerEntry.model_validate(entry)
            except ValidationError:
                logger.warning("Skipping malformed ledger entry for %s in %s", day, self.path)
        return out

    def _write(self, entries: Dict[str, LedgerEntry]) -> None:
        doc = {day: e.model_dump(by_alias=True) for day, e in sorted(entries.items())}
        try:
            write_json_atomic(self.path, doc)
        except OSError as e:
            raise LedgerWriteError(f"Could not write sales ledger {self.path}: {e}") from e

    def record_creation(self, date: str, food: Optional[str], people: int, verified: bool = False) -> LedgerEntry:
        """
        A reservation was booked. Always adds to `reservations`; when it was
        already verified at creation, also to `people` and `menuSales[food]`.
        """
        with self.lock:
            entries = self._read()
            entry = _add_creation(entries, date, food, people, verified)
            self._write(entries)
            return entry.model_copy(deep=True)

    def record_creations(self, bookings: Iterable[Tuple[str, Optional[str], int, bool]]) -> None:
        """Several creation events applied in one write: all land or none do."""
        with self.lock:
            entries = self._read()
            for date, food, people, verified in bookings:
                _add_creation(entries, date, food, people, verified)
            self._write(entries)

    def record_verification(self, date: str, food: Optional[str], people: int) -> LedgerEntry:
        """A pending reservation was confirmed; the date entry is created if absent."""
        people = int(people)
        with self.lock:
            entries = self._read()
            entry = entries.get(date) or LedgerEntry()
            _add_verified(entry, food, people)
            entries[date] = entry
            self._write(entries)
            return entry.model_copy(deep=True)

    def snapshot(self) -> Dict[str, LedgerEntry]:
        with self.lock:
            return self._read()

    def snapshot_dict(self) -> Dict[str, dict]:
        return {day: e.model_dump(by_alias=True) for day, e in sorted(self.snapshot().items())}


def _add_verified(entry: LedgerEntry, food: Optional[str], people: int) -> None:
    entry.people += people
    if food:
        entry.menu_sales[food] = entry.menu_sales.get(food, 0) + people


def _add_creation(
    entries: Dict[str, LedgerEntry], date: str, food: Optional[str], people: int, verified: bool
) -> LedgerEntry:
    people = int(people)
    entry = entries.get(date) or LedgerEntry()
    entry.reservations += people
    if verified:
        _add_verified(entry, food, people)
    entries[date] = entry
    return entry

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from .knowledge import RESERVATIONS_FILE, read_json_safe
from .ledger import LedgerError, SalesLedger, path_lock, write_json_atomic
from .models import Reservation

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class ReservationError(Exception):
    pass


class ReservationNotFound(ReservationError):
    pass


class DuplicateReservation(ReservationError):
    def __init__(self, date: str, name: str) -> None:
        super().__init__(f"{date}に「{name}」さんは既に予約済みです。")
        self.date = date
        self.name = name


def reservations_path(data_dir: PathLike) -> Path:
    return Path(data_dir) / RESERVATIONS_FILE


def _as_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(str(v).strip())
    except ValueError:
        return None


def load_reservations(path: PathLike) -> List[Reservation]:
    """Valid records only; malformed ones are logged and left out."""
    out: List[Reservation] = []
    for raw in read_json_safe(path, []):
        try:
            out.append(Reservation.model_validate(raw))
        except ValidationError:
            logger.warning("Skipping malformed reservation record in %s", path)
    return out


def _dump(r: Reservation) -> dict:
    return r.model_dump(by_alias=True, exclude_none=True)


def verify_reservation(
    path: PathLike,
    ledger: SalesLedger,
    name: str,
    reservation_number: Any,
) -> Tuple[Reservation, bool]:
    """
    Mark the reservation matching (trimmed name, integer reservation number)
    as verified and record it in the ledger.

    Returns (reservation, changed). Verifying an already verified
    reservation changes nothing. The reservation file is written before the
    ledger and restored if the ledger write fails. Raises ReservationNotFound.
    """
    wanted_name = (name or "").strip()
    wanted_number = _as_int(reservation_number)
    if not wanted_name or wanted_number is None:
        raise ReservationNotFound("name and reservation number are required")

    with path_lock(path):
        docs = read_json_safe(path, [])
        for i, raw in enumerate(docs):
            if not isinstance(raw, dict):
                continue
            if str(raw.get("name") or "").strip() != wanted_name:
                continue
            if _as_int(raw.get("reservationNumber")) != wanted_number:
                continue

            try:
                reservation = Reservation.model_validate(raw)
            except ValidationError as e:
                raise ReservationError(f"Stored reservation is malformed: {e}") from e

            if reservation.verified:
                return reservation, False

            previous = list(docs)
            reservation.verified = True
            docs[i] = _dump(reservation)
            _write_reservations(path, docs)
            try:
                ledger.record_verification(reservation.date, reservation.food, reservation.people)
            except LedgerError as e:
                _restore(path, previous)
                raise ReservationError(f"Could not record verification in the sales ledger: {e}") from e
            return reservation, True

    raise ReservationNotFound(f"No reservation for {wanted_name} #{wanted_number}")


def _check_duplicates(reservations: Sequence[Reservation]) -> None:
    seen: Set[Tuple[str, str]] = set()
    for r in reservations:
        key = (r.date, r.name.strip())
        if key in seen:
            raise DuplicateReservation(r.date, r.name.strip())
        seen.add(key)


def save_reservations(
    path: PathLike,
    ledger: SalesLedger,
    reservations: Sequence[Union[Reservation, dict]],
) -> List[Reservation]:
    """
    Replace the stored reservation list.

    Two reservations with the same trimmed name on the same date are
    rejected. The list is written first; then every reservation whose id was
    not stored before (or that has no id) is recorded as a ledger creation in
    one ledger write. If the ledger write fails the previous list is put back.
    """
    try:
        incoming = [r if isinstance(r, Reservation) else Reservation.model_validate(r) for r in reservations]
    except ValidationError as e:
        raise ReservationError(f"Invalid reservation: {e}") from e

    _check_duplicates(incoming)

    with path_lock(path):
        stored = read_json_safe(path, []) if Path(path).exists() else None
        existing_ids = {
            str(raw["id"])
            for raw in stored or []
            if isinstance(raw, dict) and raw.get("id") is not None
        }
        bookings = [
            (r.date, r.food, r.people, r.verified)
            for r in incoming
            if r.id is None or str(r.id) not in existing_ids
        ]

        _write_reservations(path, [_dump(r) for r in incoming])
        try:
            ledger.record_creations(bookings)
        except LedgerError as e:
            _restore(path, stored)
            raise ReservationError(f"Could not record new reservations in the sales ledger: {e}") from e

    return incoming


def _write_reservations(path: PathLike, docs: List[Any]) -> None:
    try:
        write_json_atomic(path, docs)
    except OSError as e:
        raise ReservationError(f"Could not write reservations {path}: {e}") from e


def _restore(path: PathLike, docs: Optional[List[Any]]) -> None:
    """Put the reservations file back after the ledger refused the matching event."""
    try:
        if docs is None:
            Path(path).unlink()
        else:
            write_json_atomic(path, docs)
    except OSError:
        logger.exception("Could not restore %s; reservations and sales ledger may disagree", path)

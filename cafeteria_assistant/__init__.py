"""Cafeteria Assistant - deterministic knowledge answers, AI provider fallback and sales ledger."""

from .analysis import analyze_month, generate_menu_advice, predict_attendance
from .chat import answer, answer_with_meta
from .ledger import LedgerError, LedgerWriteError, SalesLedger
from .models import ChatResponse, KnowledgeFacts
from .reservations import DuplicateReservation, ReservationNotFound, save_reservations, verify_reservation

__all__ = [
    "answer",
    "answer_with_meta",
    "analyze_month",
    "generate_menu_advice",
    "predict_attendance",
    "ChatResponse",
    "KnowledgeFacts",
    "SalesLedger",
    "LedgerError",
    "LedgerWriteError",
    "DuplicateReservation",
    "ReservationNotFound",
    "save_reservations",
    "verify_reservation",
]

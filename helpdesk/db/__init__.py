"""Database models and utilities."""

from .models import TicketCommentTable, TicketHistoryTable, TicketTable, UserTable

__all__ = [
    "TicketCommentTable",
    "TicketHistoryTable",
    "TicketTable",
    "UserTable",
]

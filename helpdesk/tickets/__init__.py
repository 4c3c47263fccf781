"""Ticket domain: lifecycle, access policy, history and statistics."""

from .errors import (
    CommentNotFoundError,
    FieldError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketServiceError,
    TicketStorageError,
    TicketValidationError,
    UserNotFoundError,
)
from .models import Comment, DeletedTicket, HistoryAction, HistoryEntry, Ticket, TicketFilters, TicketPage, UserSummary
from .policy import Actor
from .repository import TicketRepository
from .service import TicketService
from .state import TicketPriority, TicketStateMachine, TicketStatus
from .statistics import TicketStatistics, TicketStatisticsService, UserTicketStats

__all__ = [
    "Actor",
    "Comment",
    "CommentNotFoundError",
    "DeletedTicket",
    "FieldError",
    "HistoryAction",
    "HistoryEntry",
    "Ticket",
    "TicketConflictError",
    "TicketFilters",
    "TicketForbiddenError",
    "TicketNotFoundError",
    "TicketPage",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatistics",
    "TicketStatisticsService",
    "TicketStatus",
    "TicketStorageError",
    "TicketValidationError",
    "UserNotFoundError",
    "UserSummary",
    "UserTicketStats",
]

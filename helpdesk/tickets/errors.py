from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(slots=True, frozen=True)
class FieldError:
    """A single violated constraint on an input field."""

    field: str
    message: str


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""

    kind = "ticket_error"


class TicketValidationError(TicketServiceError):
    """Raised when input data violates one or more field constraints."""

    kind = "validation_error"

    def __init__(self, errors: Sequence[FieldError], message: str = "Invalid ticket data") -> None:
        self.errors: list[FieldError] = list(errors)
        fields = ", ".join(error.field for error in self.errors)
        super().__init__(f"{message}: {fields}" if fields else message)


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located."""

    kind = "not_found"


class CommentNotFoundError(TicketNotFoundError):
    """Raised when a comment does not exist on the ticket."""


class UserNotFoundError(TicketNotFoundError):
    """Raised when a referenced user is unknown to the identity directory."""


class TicketForbiddenError(TicketServiceError):
    """Raised when the actor lacks permission for the requested operation."""

    kind = "forbidden"


class TicketStorageError(TicketServiceError):
    """Raised when the persistence layer fails."""

    kind = "storage_error"


class TicketConflictError(TicketServiceError):
    """Raised when a concurrent writer changed the ticket first."""

    kind = "conflict"

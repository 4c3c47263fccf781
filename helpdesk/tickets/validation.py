"""Input models enforcing the ticket and comment field constraints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import FieldError, TicketValidationError
from .state import TicketPriority, TicketStatus

TitleText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=5, max_length=200)]
DescriptionText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=2000)]
CommentText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=1000)]
Hours = Annotated[float, Field(ge=0)]

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def normalize_tags(values: Any) -> list[str]:
    """Trim, lowercase and de-duplicate tags; the result is sorted."""

    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    tags = {str(value).strip().lower() for value in values}
    tags.discard("")
    return sorted(tags)


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _TicketFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @field_validator("tags", mode="before", check_fields=False)
    @classmethod
    def _normalize_tags(cls, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, (str, list, tuple, set, frozenset)):
            return normalize_tags(value)
        return value

    @field_validator("due_date", mode="after", check_fields=False)
    @classmethod
    def _due_date_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value)


class TicketCreate(_TicketFields):
    """Data accepted when a ticket is submitted."""

    title: TitleText
    description: DescriptionText
    priority: TicketPriority
    status: TicketStatus | None = None
    tags: list[str] = Field(default_factory=list)
    estimated_time: Hours | None = None
    actual_time: Hours | None = None
    due_date: datetime | None = None

    @field_validator("status")
    @classmethod
    def _status_not_settable(cls, value: TicketStatus | None) -> TicketStatus | None:
        if value is not None and value != TicketStatus.PENDING:
            raise ValueError("new tickets always start as pending")
        return value


class TicketPatch(_TicketFields):
    """Partial update; only the fields present in the payload are applied."""

    title: TitleText | None = None
    description: DescriptionText | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assigned_to: str | None = None
    tags: list[str] | None = None
    estimated_time: Hours | None = None
    actual_time: Hours | None = None
    due_date: datetime | None = None

    @field_validator("title", "description", "status", "priority", "tags", mode="before")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("field may not be null")
        return value

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _strip_assignee(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


class CommentInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: CommentText


class PageRequest(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(gt=0)


class FilterInput(BaseModel):
    """Listing filters as accepted from callers; blank ids and search terms count as unset."""

    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    author_id: str | None = None
    assigned_to: str | None = None
    search: str | None = Field(default=None, max_length=200)
    visible_to: str | None = None

    @field_validator("author_id", "assigned_to", "search", "visible_to", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


def _field_errors(exc: PydanticValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        errors.append(FieldError(field=location, message=message))
    return errors


def validate_model(model: type[_ModelT], data: Mapping[str, Any] | Any) -> _ModelT:
    """Validate ``data`` against ``model`` reporting every violation at once."""

    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise TicketValidationError(_field_errors(exc)) from exc

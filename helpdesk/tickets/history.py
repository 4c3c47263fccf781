"""Derive audit history entries from field-level ticket changes.

The set of tracked attributes is closed: ``TrackedField`` enumerates every
field a patch may touch, so the diff is exhaustive by construction and no
attribute outside it ever reaches the history.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

from .models import HistoryAction, HistoryEntry, Ticket
from .validation import normalize_tags, to_utc


class TrackedField(str, Enum):
    """Ticket attributes whose changes are recorded in the history."""

    TITLE = "title"
    DESCRIPTION = "description"
    STATUS = "status"
    PRIORITY = "priority"
    ASSIGNED_TO = "assigned_to"
    TAGS = "tags"
    ESTIMATED_TIME = "estimated_time"
    ACTUAL_TIME = "actual_time"
    DUE_DATE = "due_date"


@dataclass(slots=True, frozen=True)
class FieldChange:
    """Before and after values of one tracked field."""

    field: TrackedField
    old_value: Any
    new_value: Any


def _comparable(field: TrackedField, value: Any) -> Any:
    if value is None:
        return None
    if field is TrackedField.TAGS:
        return normalize_tags(value)
    if field is TrackedField.ASSIGNED_TO:
        return str(value) or None
    if field is TrackedField.DUE_DATE:
        return to_utc(value)
    if field in (TrackedField.ESTIMATED_TIME, TrackedField.ACTUAL_TIME):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value


def serialize_value(value: Any) -> Any:
    """Render a field value as JSON-compatible data for the audit trail."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_utc(value).isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialize_value(item) for item in value]
    return value


def diff_fields(ticket: Ticket, changes: Mapping[TrackedField, Any]) -> list[FieldChange]:
    """Return the changes that differ from ``ticket``, in ``changes`` order."""

    diffs: list[FieldChange] = []
    for field, new_value in changes.items():
        old_value = getattr(ticket, field.value)
        if _comparable(field, old_value) == _comparable(field, new_value):
            continue
        diffs.append(FieldChange(field=field, old_value=old_value, new_value=new_value))
    return diffs


def action_for(change: FieldChange) -> HistoryAction:
    if change.field is TrackedField.STATUS:
        return HistoryAction.STATUS_CHANGED
    if change.field is TrackedField.PRIORITY:
        return HistoryAction.PRIORITY_CHANGED
    if change.field is TrackedField.ASSIGNED_TO:
        return HistoryAction.ASSIGNED if change.new_value is not None else HistoryAction.UNASSIGNED
    return HistoryAction.UPDATED


def _display(value: Any) -> str:
    rendered = serialize_value(value)
    if rendered is None:
        return "none"
    if isinstance(rendered, list):
        return "[" + ", ".join(str(item) for item in rendered) + "]"
    return str(rendered)


def describe_change(change: FieldChange) -> str:
    return f"{change.field.value} changed from {_display(change.old_value)} to {_display(change.new_value)}"


def _new_entry(
    action: HistoryAction,
    *,
    user_id: str,
    timestamp: datetime,
    description: str,
    field: TrackedField | None = None,
    old_value: Any = None,
    new_value: Any = None,
) -> HistoryEntry:
    return HistoryEntry(
        id=str(uuid.uuid4()),
        action=action,
        field=field.value if field is not None else None,
        old_value=serialize_value(old_value),
        new_value=serialize_value(new_value),
        user_id=user_id,
        timestamp=timestamp,
        description=description,
    )


def entries_for_changes(
    changes: Iterable[FieldChange], *, user_id: str, timestamp: datetime
) -> list[HistoryEntry]:
    return [
        _new_entry(
            action_for(change),
            user_id=user_id,
            timestamp=timestamp,
            description=describe_change(change),
            field=change.field,
            old_value=change.old_value,
            new_value=change.new_value,
        )
        for change in changes
    ]


def created_entry(*, user_id: str, timestamp: datetime) -> HistoryEntry:
    return _new_entry(HistoryAction.CREATED, user_id=user_id, timestamp=timestamp, description="Ticket created")


def commented_entry(*, user_id: str, timestamp: datetime) -> HistoryEntry:
    return _new_entry(HistoryAction.COMMENTED, user_id=user_id, timestamp=timestamp, description="Comment added")


def assigned_entry(
    *,
    user_id: str,
    timestamp: datetime,
    previous: str | None,
    assignee: str,
    assignee_name: str | None = None,
) -> HistoryEntry:
    return _new_entry(
        HistoryAction.ASSIGNED,
        user_id=user_id,
        timestamp=timestamp,
        description=f"Ticket assigned to {assignee_name or assignee}",
        field=TrackedField.ASSIGNED_TO,
        old_value=previous,
        new_value=assignee,
    )


def unassigned_entry(*, user_id: str, timestamp: datetime, previous: str | None) -> HistoryEntry:
    return _new_entry(
        HistoryAction.UNASSIGNED,
        user_id=user_id,
        timestamp=timestamp,
        description="Ticket unassigned",
        field=TrackedField.ASSIGNED_TO,
        old_value=previous,
        new_value=None,
    )


def tracked_changes(values: Mapping[str, Any], order: Iterable[str]) -> dict[TrackedField, Any]:
    """Map validated patch values onto ``TrackedField`` keys, keeping ``order``."""

    result: dict[TrackedField, Any] = {}
    for name in order:
        if name in values:
            result[TrackedField(name)] = values[name]
    return result



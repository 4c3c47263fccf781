from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from helpdesk.tickets import (
    CommentNotFoundError,
    HistoryAction,
    TicketConflictError,
    TicketFilters,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketRepository,
    TicketService,
    TicketStatus,
    TicketValidationError,
    UserNotFoundError,
)
from helpdesk.tickets.history import FieldChange, TrackedField, entries_for_changes
from helpdesk.tickets.repository import TicketChange


def _payload(**overrides) -> dict:
    payload = {
        "title": "Login broken",
        "description": "Cannot log in since update",
        "priority": "high",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_create_ticket_starts_pending_with_created_entry(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)

    assert ticket.status == TicketStatus.PENDING
    assert ticket.author_id == actors.alice.id
    assert ticket.created_at == clock.now
    assert ticket.version == 1
    assert len(ticket.history) == 1
    entry = ticket.history[0]
    assert entry.action == HistoryAction.CREATED
    assert entry.user_id == actors.alice.id


@pytest.mark.asyncio
async def test_create_then_get_round_trips_fields(service, actors, clock):
    due = clock.now + timedelta(days=3)
    created = await service.create_ticket(
        _payload(tags=["Auth", " login ", "auth"], estimated_time=2.5, due_date=due.isoformat()),
        actors.alice,
    )

    loaded = await service.get_ticket(created.id, actors.alice)

    assert loaded.title == "Login broken"
    assert loaded.description == "Cannot log in since update"
    assert loaded.tags == ("auth", "login")
    assert loaded.estimated_time == pytest.approx(2.5)
    assert loaded.due_date == due
    assert loaded.history == created.history


@pytest.mark.asyncio
async def test_create_reports_every_violation(service, actors):
    with pytest.raises(TicketValidationError) as exc:
        await service.create_ticket({"title": "abc", "description": "short"}, actors.alice)

    fields = {error.field for error in exc.value.errors}
    assert fields == {"title", "description", "priority"}


@pytest.mark.asyncio
async def test_create_rejects_non_pending_status(service, actors):
    with pytest.raises(TicketValidationError) as exc:
        await service.create_ticket(_payload(status="resolved"), actors.alice)

    assert [error.field for error in exc.value.errors] == ["status"]


@pytest.mark.asyncio
async def test_title_length_boundary(service, actors):
    with pytest.raises(TicketValidationError):
        await service.create_ticket(_payload(title="abcd"), actors.alice)

    ticket = await service.create_ticket(_payload(title="abcde"), actors.alice)
    assert ticket.title == "abcde"


@pytest.mark.asyncio
async def test_admin_status_change_records_single_entry(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    updated = await service.update_ticket(ticket.id, {"status": "in_progress"}, actors.admin)

    assert updated.status == TicketStatus.IN_PROGRESS
    assert updated.resolved_at is None
    assert len(updated.history) == 2
    entry = updated.history[-1]
    assert entry.action == HistoryAction.STATUS_CHANGED
    assert entry.field == "status"
    assert entry.old_value == "pending"
    assert entry.new_value == "in_progress"
    assert entry.user_id == actors.admin.id


@pytest.mark.asyncio
async def test_resolved_at_keeps_first_resolution(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)

    clock.advance(hours=2)
    first_resolution = clock.now
    resolved = await service.update_ticket(ticket.id, {"status": "resolved"}, actors.admin)
    assert resolved.resolved_at == first_resolution
    assert resolved.time_to_resolve == 2

    clock.advance(hours=1)
    await service.update_ticket(ticket.id, {"status": "in_progress"}, actors.admin)
    clock.advance(hours=1)
    again = await service.update_ticket(ticket.id, {"status": "resolved"}, actors.admin)

    assert again.resolved_at == first_resolution
    assert again.closed_at is None
    statuses = [entry.action for entry in again.history]
    assert statuses.count(HistoryAction.STATUS_CHANGED) == 3


@pytest.mark.asyncio
async def test_closing_stamps_closed_at(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)
    clock.advance(minutes=30)

    closed = await service.update_ticket(ticket.id, {"status": "closed"}, actors.alice)

    assert closed.closed_at == clock.now
    assert closed.resolved_at is None


@pytest.mark.asyncio
async def test_stranger_cannot_view_ticket(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketForbiddenError):
        await service.get_ticket(ticket.id, actors.bob)


@pytest.mark.asyncio
async def test_get_unknown_ticket_raises_not_found(service, actors):
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket("missing", actors.admin)


@pytest.mark.asyncio
async def test_comment_length_is_validated(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketValidationError):
        await service.add_comment(ticket.id, "ab", actors.alice)

    updated = await service.add_comment(ticket.id, "abc", actors.alice)

    assert updated.comments_count == 1
    assert updated.comments[0].author_id == actors.alice.id
    assert updated.history[-1].action == HistoryAction.COMMENTED
    assert updated.history[-1].user_id == actors.alice.id
    assert len(updated.history) == 2


@pytest.mark.asyncio
async def test_noop_patch_writes_nothing(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)
    clock.advance(minutes=5)

    updated = await service.update_ticket(
        ticket.id,
        {"title": "Login broken", "priority": "high", "tags": []},
        actors.alice,
    )

    assert updated.updated_at == ticket.updated_at
    assert updated.version == ticket.version
    assert len(updated.history) == 1


@pytest.mark.asyncio
async def test_history_entries_follow_patch_order(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)
    clock.advance(minutes=1)

    updated = await service.update_ticket(
        ticket.id,
        {"priority": "low", "title": "Login broken again", "tags": ["sso"]},
        actors.alice,
    )

    new_entries = updated.history[1:]
    assert [entry.field for entry in new_entries] == ["priority", "title", "tags"]
    assert [entry.action for entry in new_entries] == [
        HistoryAction.PRIORITY_CHANGED,
        HistoryAction.UPDATED,
        HistoryAction.UPDATED,
    ]
    assert new_entries[1].description == "title changed from Login broken to Login broken again"
    assert updated.updated_at == clock.now
    assert updated.version == 2


@pytest.mark.asyncio
async def test_non_admin_cannot_reassign_through_update(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    updated = await service.update_ticket(ticket.id, {"assigned_to": actors.bob.id}, actors.alice)

    assert updated.assigned_to is None
    assert len(updated.history) == 1


@pytest.mark.asyncio
async def test_admin_update_can_assign(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    updated = await service.update_ticket(ticket.id, {"assigned_to": actors.bob.id}, actors.admin)

    assert updated.assigned_to == actors.bob.id
    assert updated.history[-1].action == HistoryAction.ASSIGNED


@pytest.mark.asyncio
async def test_admin_update_trims_assignee(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    updated = await service.update_ticket(ticket.id, {"assigned_to": f"  {actors.bob.id} "}, actors.admin)

    assert updated.assigned_to == actors.bob.id
    assert len(updated.history) == 2
    viewed = await service.get_ticket(ticket.id, actors.bob)
    assert viewed.id == ticket.id

    again = await service.update_ticket(ticket.id, {"assigned_to": f"{actors.bob.id}  "}, actors.admin)
    assert again.version == updated.version
    assert len(again.history) == 2


@pytest.mark.asyncio
async def test_admin_update_rejects_unknown_assignee(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(UserNotFoundError):
        await service.update_ticket(ticket.id, {"assigned_to": "no-such-user"}, actors.admin)

    stored = await service.get_ticket(ticket.id, actors.admin)
    assert stored.assigned_to is None
    assert stored.version == ticket.version


@pytest.mark.asyncio
async def test_author_cannot_be_changed(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketValidationError):
        await service.update_ticket(ticket.id, {"author_id": actors.bob.id}, actors.admin)

    loaded = await service.get_ticket(ticket.id, actors.admin)
    assert loaded.author_id == actors.alice.id


@pytest.mark.asyncio
async def test_explicit_null_is_rejected(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketValidationError) as exc:
        await service.update_ticket(ticket.id, {"title": None}, actors.alice)

    assert exc.value.errors[0].field == "title"


@pytest.mark.asyncio
async def test_permission_is_checked_before_validation(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketForbiddenError):
        await service.update_ticket(ticket.id, {"title": "x"}, actors.bob)


@pytest.mark.asyncio
async def test_assignee_can_view_but_not_modify(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)
    await service.assign_ticket(ticket.id, actors.bob.id, actors.admin)

    viewed = await service.get_ticket(ticket.id, actors.bob)
    assert viewed.assigned_to == actors.bob.id

    with pytest.raises(TicketForbiddenError):
        await service.update_ticket(ticket.id, {"status": "in_progress"}, actors.bob)


@pytest.mark.asyncio
async def test_assign_always_appends_entry(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    first = await service.assign_ticket(ticket.id, actors.bob.id, actors.admin)
    second = await service.assign_ticket(ticket.id, actors.bob.id, actors.admin)

    assert first.history[-1].description == "Ticket assigned to Bob"
    assert first.history[-1].old_value is None
    assert second.history[-1].old_value == actors.bob.id
    assert [entry.action for entry in second.history].count(HistoryAction.ASSIGNED) == 2


@pytest.mark.asyncio
async def test_assign_requires_admin_and_known_user(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketForbiddenError):
        await service.assign_ticket(ticket.id, actors.bob.id, actors.alice)
    with pytest.raises(UserNotFoundError):
        await service.assign_ticket(ticket.id, "nobody", actors.admin)
    with pytest.raises(TicketValidationError):
        await service.assign_ticket(ticket.id, "  ", actors.admin)


@pytest.mark.asyncio
async def test_unassign_clears_assignee(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)
    await service.assign_ticket(ticket.id, actors.bob.id, actors.admin)

    updated = await service.unassign_ticket(ticket.id, actors.admin)

    assert updated.assigned_to is None
    entry = updated.history[-1]
    assert entry.action == HistoryAction.UNASSIGNED
    assert entry.old_value == actors.bob.id
    with pytest.raises(TicketForbiddenError):
        await service.unassign_ticket(ticket.id, actors.alice)


@pytest.mark.asyncio
async def test_closed_ticket_only_accepts_admin_comments(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)
    await service.update_ticket(ticket.id, {"status": "closed"}, actors.alice)

    with pytest.raises(TicketForbiddenError):
        await service.add_comment(ticket.id, "still broken", actors.alice)

    updated = await service.add_comment(ticket.id, "closing note", actors.admin)
    assert updated.comments[-1].author_id == actors.admin.id


@pytest.mark.asyncio
async def test_update_comment_marks_edited_without_history(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)
    commented = await service.add_comment(ticket.id, "first draft", actors.alice)
    comment_id = commented.comments[0].id
    clock.advance(minutes=10)

    edited = await service.update_comment(ticket.id, comment_id, "final wording", actors.alice)

    assert edited.content == "final wording"
    assert edited.is_edited is True
    assert edited.updated_at == clock.now
    reloaded = await service.get_ticket(ticket.id, actors.alice)
    assert len(reloaded.history) == len(commented.history)


@pytest.mark.asyncio
async def test_comment_management_permissions(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)
    await service.assign_ticket(ticket.id, actors.bob.id, actors.admin)
    commented = await service.add_comment(ticket.id, "looking into it", actors.bob)
    comment_id = commented.comments[0].id

    with pytest.raises(TicketForbiddenError):
        await service.update_comment(ticket.id, comment_id, "hijacked", actors.alice)
    with pytest.raises(CommentNotFoundError):
        await service.delete_comment(ticket.id, "missing", actors.admin)

    updated = await service.delete_comment(ticket.id, comment_id, actors.admin)
    assert updated.comments_count == 0
    assert len(updated.history) == len(commented.history)


@pytest.mark.asyncio
async def test_delete_ticket(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    with pytest.raises(TicketForbiddenError):
        await service.delete_ticket(ticket.id, actors.bob)

    deleted = await service.delete_ticket(ticket.id, actors.alice)

    assert deleted.id == ticket.id
    assert deleted.title == ticket.title
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(ticket.id, actors.alice)


@pytest.mark.asyncio
async def test_list_scopes_non_admins(service, actors, clock):
    own = await service.create_ticket(_payload(title="Alice printer"), actors.alice)
    clock.advance(minutes=1)
    assigned = await service.create_ticket(_payload(title="Carol laptop"), actors.carol)
    await service.assign_ticket(assigned.id, actors.alice.id, actors.admin)
    clock.advance(minutes=1)
    await service.create_ticket(_payload(title="Bob monitor"), actors.bob)

    alice_page = await service.list_tickets(actor=actors.alice)
    admin_page = await service.list_tickets(actor=actors.admin)

    assert [ticket.id for ticket in alice_page.items] == [assigned.id, own.id]
    assert alice_page.total == 2
    assert admin_page.total == 3


@pytest.mark.asyncio
async def test_list_filters_search_and_paginates(service, actors, clock):
    for index in range(5):
        clock.advance(minutes=1)
        title = f"VPN outage {index}" if index % 2 == 0 else f"Mail delay {index}"
        await service.create_ticket(_payload(title=title), actors.alice)

    page = await service.list_tickets(TicketFilters(search="vpn"), actor=actors.admin, page=1, limit=2)

    assert page.total == 3
    assert page.page_count == 2
    assert [ticket.title for ticket in page.items] == ["VPN outage 4", "VPN outage 2"]

    second = await service.list_tickets(TicketFilters(search="vpn"), actor=actors.admin, page=2, limit=2)
    assert [ticket.title for ticket in second.items] == ["VPN outage 0"]

    resolved = await service.list_tickets(TicketFilters(status=TicketStatus.RESOLVED), actor=actors.admin)
    assert resolved.total == 0


@pytest.mark.asyncio
async def test_list_rejects_invalid_page(service, actors):
    with pytest.raises(TicketValidationError):
        await service.list_tickets(actor=actors.admin, page=0)


@pytest.mark.asyncio
async def test_list_rejects_unknown_filter_values(service, actors):
    with pytest.raises(TicketValidationError) as exc:
        await service.list_tickets(TicketFilters(status="bogus", priority="urgent"), actor=actors.admin)

    assert {error.field for error in exc.value.errors} == {"status", "priority"}


@pytest.mark.asyncio
async def test_list_accepts_plain_string_filters(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)

    page = await service.list_tickets(TicketFilters(status="pending", author_id=" "), actor=actors.admin)

    assert [item.id for item in page.items] == [ticket.id]


@pytest.mark.asyncio
async def test_hydration_is_opt_in(service, actors):
    ticket = await service.create_ticket(_payload(), actors.alice)
    await service.assign_ticket(ticket.id, actors.bob.id, actors.admin)

    raw = await service.get_ticket(ticket.id, actors.alice)
    hydrated = await service.get_ticket(ticket.id, actors.alice, hydrate=True)

    assert raw.participants == {}
    assert hydrated.participants[actors.alice.id].name == "Alice"
    assert hydrated.participants[actors.bob.id].email == "bob@example.com"
    assert actors.admin.id in hydrated.participants


@pytest.mark.asyncio
async def test_history_is_newest_first(service, actors, clock):
    ticket = await service.create_ticket(_payload(), actors.alice)
    clock.advance(minutes=1)
    await service.update_ticket(ticket.id, {"priority": "low"}, actors.alice)

    entries = await service.get_history(ticket.id, actors.alice)

    assert [entry.action for entry in entries] == [HistoryAction.PRIORITY_CHANGED, HistoryAction.CREATED]
    with pytest.raises(TicketForbiddenError):
        await service.get_history(ticket.id, actors.bob)


class RacingRepository(TicketRepository):
    """Lets a competing writer win the first write attempt."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.raced = False

    async def apply_change(self, change: TicketChange):
        if not self.raced:
            self.raced = True
            current = await self.get_ticket(change.ticket_id)
            await super().apply_change(
                TicketChange(
                    ticket_id=current.id,
                    expected_version=current.version,
                    updated_at=change.updated_at,
                    values={"title": "Raced title value"},
                    history=entries_for_changes(
                        [FieldChange(TrackedField.TITLE, current.title, "Raced title value")],
                        user_id="racer",
                        timestamp=change.updated_at,
                    ),
                )
            )
        return await super().apply_change(change)


@pytest.mark.asyncio
async def test_lost_race_is_retried_against_fresh_state(session_factory, engine, directory, actors, clock):
    repository = RacingRepository(session_factory, engine=engine)
    service = TicketService(repository, directory, clock=clock)
    ticket = await service.create_ticket(_payload(), actors.alice)

    updated = await service.update_ticket(ticket.id, {"status": "in_progress"}, actors.admin)

    assert updated.title == "Raced title value"
    assert updated.status == TicketStatus.IN_PROGRESS
    assert updated.version == 3
    assert [entry.user_id for entry in updated.history] == [actors.alice.id, "racer", actors.admin.id]


@pytest.mark.asyncio
async def test_conflict_raised_after_retries_exhausted(repository, directory, actors, clock):
    service = TicketService(repository, directory, clock=clock, max_retries=2)
    ticket = await service.create_ticket(_payload(), actors.alice)

    flaky = AsyncMock(spec=TicketRepository)
    flaky.get_ticket = AsyncMock(return_value=ticket)
    flaky.apply_change = AsyncMock(side_effect=TicketConflictError("changed"))
    contested = TicketService(flaky, directory, clock=clock, max_retries=2)

    with pytest.raises(TicketConflictError):
        await contested.update_ticket(ticket.id, {"priority": "low"}, actors.alice)

    assert flaky.apply_change.await_count == 3

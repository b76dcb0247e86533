from __future__ import annotations

import pytest

from core.errors import OrderingError, PermissionDeniedError, TicketStateError, ValidationError
from database.models import Ticket
from fakes import WORKSPACE_ID, make_member
from gateway.base import RatingPrompt
from services.rating_service import RatingTimeoutPolicy, build_pending_close_acl, timeout_close_reason
from utils.constants import (
    CLOSE_NOTICE_TITLE,
    CLOSE_REASON_RATING_TIMEOUT,
    PERM_SEND_MESSAGES,
    PERM_VIEW_CHANNEL,
)
from utils.time import to_iso

OWNER = make_member(1, "Alice")
STAFF_A = make_member(10, "staff-a", staff=True)


async def _pending_ticket(engine, reason: str = "resolved") -> Ticket:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value
    result = await engine.ratings.initiate_close(ticket.id, STAFF_A, reason)
    assert result.ok
    return engine.store.get(ticket.id)


@pytest.mark.asyncio
async def test_initiate_close_locks_channel_and_prompts(engine) -> None:
    ticket = await _pending_ticket(engine)

    assert ticket.pending_close and not ticket.closed
    assert ticket.closed_by == STAFF_A.id
    assert ticket.closed_by_role == "staff"
    assert ticket.close_reason == "resolved"
    assert ticket.rating_started_at == to_iso(engine.clock.now())

    _, acl = engine.gateway.acl_writes[-1]
    owner_entry = next(e for e in acl if e.target_id == OWNER.id)
    assert PERM_SEND_MESSAGES in owner_entry.deny
    assert PERM_VIEW_CHANNEL in owner_entry.allow

    channel = engine.gateway.channels[ticket.channel_id]
    assert channel.name == "closed-0001"
    sent = engine.gateway.messages_in(ticket.channel_id)
    assert any(CLOSE_NOTICE_TITLE in m.content for m in sent)
    prompt = sent[-1]
    assert prompt.prompt == RatingPrompt(kind="service", ticket_id=ticket.id)
    assert ticket.service_rating_message_id == prompt.id


@pytest.mark.asyncio
async def test_initiate_close_twice_is_rejected(engine) -> None:
    ticket = await _pending_ticket(engine)

    again = await engine.ratings.initiate_close(ticket.id, STAFF_A, "resolved")

    assert isinstance(again.error, TicketStateError)


@pytest.mark.asyncio
async def test_staff_close_without_reason_fails_before_state_change(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.ratings.initiate_close(ticket.id, STAFF_A, None)

    assert isinstance(result.error, ValidationError)
    assert engine.gateway.acl_writes == []
    assert not engine.store.get(ticket.id).pending_close


@pytest.mark.asyncio
async def test_full_rating_flow_closes_after_grace_delay(engine) -> None:
    ticket = await _pending_ticket(engine)

    service = await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 4)
    staff = await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 5, "great help")

    assert service.ok and staff.ok
    rated = engine.store.get(ticket.id)
    assert rated.service_rating == 4
    assert rated.staff_rating == 5
    assert rated.staff_rating_comment == "great help"
    assert rated.pending_close and not rated.closed
    assert rated.staff_rating_message_id is not None
    assert engine.notifier.rating_summaries == [ticket.id]

    job = engine.scheduler.job(f"finalize:{ticket.id}")
    assert 3.0 <= job.delay <= 5.0
    await engine.scheduler.run(job.name)

    closed = engine.store.get(ticket.id)
    assert closed.closed and not closed.pending_close
    assert closed.closed_by == STAFF_A.id
    assert closed.closed_by_role == "staff"
    assert closed.close_reason == "resolved"
    [(name, body, _)] = engine.notifier.transcripts
    assert name == "transcript-tkt-0001.html"
    assert "great help" in body
    assert engine.closed_hook_calls == [ticket.id]


@pytest.mark.asyncio
async def test_staff_rating_before_service_rating_is_out_of_order(engine) -> None:
    ticket = await _pending_ticket(engine)

    result = await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 5)

    assert isinstance(result.error, OrderingError)
    assert engine.store.get(ticket.id).staff_rating is None


@pytest.mark.asyncio
async def test_repeated_ratings_are_rejected(engine) -> None:
    ticket = await _pending_ticket(engine)
    await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 3)

    again = await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 1)
    await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 4)
    staff_again = await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 2)

    assert isinstance(again.error, OrderingError)
    assert isinstance(staff_again.error, OrderingError)
    stored = engine.store.get(ticket.id)
    assert (stored.service_rating, stored.staff_rating) == (3, 4)


@pytest.mark.asyncio
async def test_only_owner_can_rate(engine) -> None:
    ticket = await _pending_ticket(engine)

    result = await engine.ratings.submit_service_rating(ticket.id, STAFF_A.id, 5)

    assert isinstance(result.error, PermissionDeniedError)


@pytest.mark.parametrize("value", [0, 6, True, "5"])
@pytest.mark.asyncio
async def test_rating_values_outside_range_are_rejected(engine, value) -> None:
    ticket = await _pending_ticket(engine)

    result = await engine.ratings.submit_service_rating(ticket.id, OWNER.id, value)

    assert isinstance(result.error, ValidationError)


@pytest.mark.asyncio
async def test_rating_an_open_ticket_is_rejected(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 5)

    assert isinstance(result.error, TicketStateError)


@pytest.mark.asyncio
async def test_long_comment_is_truncated(engine) -> None:
    ticket = await _pending_ticket(engine)
    await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 5)

    await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 5, "x" * 1500)

    assert len(engine.store.get(ticket.id).staff_rating_comment) == 1000


@pytest.mark.asyncio
async def test_sweep_defaults_ratings_after_timeout(engine) -> None:
    ticket = await _pending_ticket(engine)

    engine.clock.advance(hours=24, minutes=1)
    closed = await engine.ratings.sweep_expired()

    assert closed == [ticket.id]
    swept = engine.store.get(ticket.id)
    assert swept.closed
    assert (swept.service_rating, swept.staff_rating) == (5, 5)
    assert swept.closed_by_role == "system"
    assert swept.close_reason == f"resolved ({CLOSE_REASON_RATING_TIMEOUT})"
    assert len(engine.notifier.transcripts) == 1


@pytest.mark.asyncio
async def test_sweep_keeps_partial_rating(engine) -> None:
    ticket = await _pending_ticket(engine)
    await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 2)

    engine.clock.advance(hours=25)
    await engine.ratings.sweep_expired()

    swept = engine.store.get(ticket.id)
    assert (swept.service_rating, swept.staff_rating) == (2, 5)
    assert swept.closed


@pytest.mark.asyncio
async def test_sweep_ignores_recent_pending_tickets(engine) -> None:
    ticket = await _pending_ticket(engine)

    engine.clock.advance(hours=23)
    closed = await engine.ratings.sweep_expired()

    assert closed == []
    assert engine.store.get(ticket.id).pending_close


@pytest.mark.asyncio
async def test_sweep_without_default_rating_closes_unrated(engine) -> None:
    engine.ratings.policy = RatingTimeoutPolicy(default_rating=None)
    ticket = await _pending_ticket(engine)

    engine.clock.advance(hours=25)
    await engine.ratings.sweep_expired()

    swept = engine.store.get(ticket.id)
    assert swept.closed
    assert swept.service_rating is None and swept.staff_rating is None


def test_pending_close_acl_keeps_staff_posting() -> None:
    acl = build_pending_close_acl(WORKSPACE_ID, OWNER.id, staff_role_id=5, admin_role_id=None)
    staff = next(e for e in acl if e.target_id == 5)

    assert PERM_SEND_MESSAGES in staff.allow
    assert len(acl) == 3


@pytest.mark.asyncio
async def test_answered_prompts_lose_their_buttons(engine) -> None:
    ticket = await _pending_ticket(engine)

    await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 3)
    rated = engine.store.get(ticket.id)
    service_prompt = next(m for m in engine.gateway.sent if m.id == rated.service_rating_message_id)
    assert service_prompt.prompt is None
    assert "Service rating recorded" in service_prompt.content

    await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 4)
    staff_prompt = next(m for m in engine.gateway.sent if m.id == rated.staff_rating_message_id)
    assert staff_prompt.prompt is None
    assert engine.gateway.edits == [service_prompt.id, staff_prompt.id]


@pytest.mark.asyncio
async def test_rejected_vote_leaves_prompt_untouched(engine) -> None:
    ticket = await _pending_ticket(engine)

    await engine.ratings.submit_service_rating(ticket.id, STAFF_A.id, 5)

    assert engine.gateway.edits == []


@pytest.mark.asyncio
async def test_positive_review_is_announced(engine) -> None:
    ticket = await _pending_ticket(engine)

    await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 4)
    await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 4)

    assert engine.notifier.positive_reviews == [ticket.id]


@pytest.mark.asyncio
async def test_lukewarm_review_is_not_announced(engine) -> None:
    ticket = await _pending_ticket(engine)

    await engine.ratings.submit_service_rating(ticket.id, OWNER.id, 4)
    await engine.ratings.submit_staff_rating(ticket.id, OWNER.id, 3)

    assert engine.notifier.positive_reviews == []
    assert engine.notifier.rating_summaries == [ticket.id]


def test_timeout_reason_keeps_original_reason() -> None:
    assert timeout_close_reason(None) == CLOSE_REASON_RATING_TIMEOUT
    assert timeout_close_reason("refund sent") == f"refund sent ({CLOSE_REASON_RATING_TIMEOUT})"

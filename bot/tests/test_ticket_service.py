from __future__ import annotations

import asyncio

import pytest

from core.errors import (
    AlreadyClaimedError,
    CategoryResolutionError,
    DuplicateOpenTicketError,
    OrderingError,
    PermissionDeniedError,
    TicketStateError,
    ValidationError,
)
from fakes import WORKSPACE_ID, make_member, make_message
from services.ticket_service import build_ticket_acl, channel_name_for
from utils.constants import (
    CLOSE_NOTICE_TITLE,
    CLOSE_REASON_CHANNEL_DELETED,
    CLOSE_REASON_SATISFIED,
    PERM_MANAGE_CHANNELS,
    PERM_SEND_MESSAGES,
    PERM_VIEW_CHANNEL,
)

INVOICE = "2bea7db417ecb-0000008698537"

OWNER = make_member(1, "Alice")
OTHER = make_member(2, "Bob")
STAFF_A = make_member(10, "staff-a", staff=True)
STAFF_B = make_member(11, "staff-b", staff=True)
ADMIN = make_member(20, "boss", administrator=True)


@pytest.mark.asyncio
async def test_create_replaces_ticket_with_invoice(engine) -> None:
    container = engine.gateway.add_container("🔁 Replaces")

    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "replaces", invoice_id=INVOICE)

    assert result.ok
    ticket = result.value
    assert ticket.id == "TKT-0001"
    assert ticket.invoice_id == INVOICE
    assert ticket.category == "Replaces"
    channel = engine.gateway.channels[ticket.channel_id]
    assert channel.parent_id == container.id
    assert channel.name == "replaces-tkt-0001"
    assert engine.notifier.opened == ["TKT-0001"]
    assert INVOICE in engine.gateway.messages_in(ticket.channel_id)[0].content
    assert engine.backend.document["nextId"] == 2
    assert engine.backend.document["tickets"]["TKT-0001"]["invoiceId"] == INVOICE


@pytest.mark.asyncio
async def test_second_open_ticket_is_rejected(engine) -> None:
    engine.gateway.add_container("Replaces")
    await engine.lifecycle.create(OWNER, WORKSPACE_ID, "replaces", invoice_id=INVOICE)

    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert not result.ok
    assert isinstance(result.error, DuplicateOpenTicketError)
    assert result.error.ticket_id == "TKT-0001"
    assert len(engine.store.list_open(WORKSPACE_ID)) == 1


@pytest.mark.asyncio
async def test_other_owner_and_other_workspace_are_independent(engine) -> None:
    engine.gateway.add_container("Support")
    assert (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).ok
    assert (await engine.lifecycle.create(OTHER, WORKSPACE_ID, "support")).ok
    assert (await engine.lifecycle.create(OWNER, WORKSPACE_ID + 1, "support")).ok


@pytest.mark.asyncio
async def test_create_closes_stale_ticket_whose_channel_is_gone(engine) -> None:
    engine.gateway.add_container("Support")
    first = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value
    engine.gateway.remove_channel(first.channel_id)

    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert result.ok
    assert result.value.id == "TKT-0002"
    stale = engine.store.get("TKT-0001")
    assert stale.closed
    assert stale.close_reason == CLOSE_REASON_CHANNEL_DELETED
    assert stale.closed_by_role == "system"
    assert [t.id for t in engine.store.list_open(WORKSPACE_ID)] == ["TKT-0002"]


@pytest.mark.asyncio
async def test_unverifiable_channel_counts_as_open(engine) -> None:
    engine.gateway.add_container("Support")
    await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")
    engine.gateway.fetch_fails = True

    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert isinstance(result.error, DuplicateOpenTicketError)
    assert not engine.store.get("TKT-0001").closed


@pytest.mark.asyncio
async def test_creation_guard_blocks_concurrent_create(engine) -> None:
    engine.gateway.add_container("Support")
    await engine.cache.incr(f"ticket:create:{WORKSPACE_ID}:{OWNER.id}", ttl=30)

    blocked = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert isinstance(blocked.error, DuplicateOpenTicketError)
    assert engine.gateway.channels == {}


@pytest.mark.asyncio
async def test_creation_guard_is_released_after_create(engine) -> None:
    engine.gateway.add_container("Support")
    await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert await engine.cache.get(f"ticket:create:{WORKSPACE_ID}:{OWNER.id}") is None


@pytest.mark.asyncio
async def test_misplaced_channel_is_moved_once(engine) -> None:
    container = engine.gateway.add_container("Support")
    engine.gateway.misplace_channels = True

    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert result.ok
    assert engine.gateway.moves == [(result.value.channel_id, container.id)]


@pytest.mark.asyncio
async def test_unmovable_channel_is_deleted_and_nothing_persisted(engine) -> None:
    engine.gateway.add_container("Support")
    engine.gateway.misplace_channels = True
    engine.gateway.moves_fail = True

    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    assert isinstance(result.error, CategoryResolutionError)
    assert len(engine.gateway.deleted) == 1
    assert engine.gateway.channels == {}
    assert engine.store.list_all() == []


@pytest.mark.asyncio
async def test_missing_container_is_created_hidden(engine) -> None:
    result = await engine.lifecycle.create(OWNER, WORKSPACE_ID, "billing_help")

    assert result.ok
    [container] = engine.gateway.containers.values()
    assert container.name == "Billing help"
    assert engine.gateway.channels[result.value.channel_id].parent_id == container.id


def test_ticket_acl_grants_roles() -> None:
    acl = build_ticket_acl(WORKSPACE_ID, OWNER.id, staff_role_id=5, admin_role_id=6)
    by_target = {e.target_id: e for e in acl}

    assert PERM_VIEW_CHANNEL in by_target[WORKSPACE_ID].deny
    assert PERM_SEND_MESSAGES in by_target[OWNER.id].allow
    assert PERM_MANAGE_CHANNELS not in by_target[5].allow
    assert PERM_MANAGE_CHANNELS in by_target[6].allow


def test_channel_names() -> None:
    assert channel_name_for("replaces", "TKT-0042", OWNER) == "replaces-tkt-0042"
    assert channel_name_for("support", "TKT-0042", make_member(3, "Zoë Smith")) == "support-zo-smith"


@pytest.mark.asyncio
async def test_claim_is_set_once(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    first = await engine.lifecycle.claim(ticket.id, STAFF_A)
    second = await engine.lifecycle.claim(ticket.id, STAFF_B)

    assert first.ok
    assert isinstance(second.error, AlreadyClaimedError)
    assert engine.store.get(ticket.id).claimed_by == STAFF_A.id


@pytest.mark.asyncio
async def test_claim_requires_staff_and_accepts_lenient_ids(engine) -> None:
    engine.gateway.add_container("Support")
    await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")

    denied = await engine.lifecycle.claim("tkt-1", OWNER)
    allowed = await engine.lifecycle.claim("1", ADMIN)

    assert isinstance(denied.error, PermissionDeniedError)
    assert allowed.ok
    assert allowed.value.claimed_by == ADMIN.id


@pytest.mark.asyncio
async def test_admin_close_finalizes_without_ratings(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.lifecycle.close(ticket.id, ADMIN)

    assert result.ok
    closed = engine.store.get(ticket.id)
    assert closed.closed and not closed.pending_close
    assert closed.closed_by_role == "admin"
    assert closed.close_reason is None
    assert engine.closed_hook_calls == [ticket.id]
    assert len(engine.notifier.transcripts) == 1
    assert engine.notifier.closed == [(ticket.id, None)]

    job = engine.scheduler.job(f"delete-channel:{ticket.id}")
    assert job.delay == engine.config.channel_delete_delay_seconds
    await engine.scheduler.run(job.name)
    assert engine.gateway.deleted == [ticket.channel_id]


@pytest.mark.asyncio
async def test_staff_close_without_reason_is_rejected(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.lifecycle.close(ticket.id, STAFF_A, "   ")

    assert isinstance(result.error, ValidationError)
    assert not engine.store.get(ticket.id).pending_close


@pytest.mark.asyncio
async def test_owner_close_enters_rating_gate(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.lifecycle.close(ticket.id, OWNER, "fixed it myself")

    assert result.ok
    stored = engine.store.get(ticket.id)
    assert stored.pending_close and not stored.closed
    assert stored.closed_by_role == "owner"
    assert engine.notifier.transcripts == []


@pytest.mark.asyncio
async def test_outsider_cannot_close(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.lifecycle.close(ticket.id, OTHER, "nope")

    assert isinstance(result.error, PermissionDeniedError)


@pytest.mark.asyncio
async def test_admin_cannot_skip_pending_ratings(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value
    await engine.lifecycle.close(ticket.id, STAFF_A, "resolved")

    admin_close = await engine.lifecycle.close(ticket.id, ADMIN)
    finalize = await engine.lifecycle.finalize(ticket.id, STAFF_A.id, "staff", "resolved")

    assert isinstance(admin_close.error, TicketStateError)
    assert isinstance(finalize.error, OrderingError)
    assert not engine.store.get(ticket.id).closed


@pytest.mark.asyncio
async def test_satisfaction_phrase_from_owner_starts_close(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    result = await engine.lifecycle.handle_channel_message(ticket.channel_id, OWNER, "Thank you so much!")

    assert result.ok and result.value is not None
    stored = engine.store.get(ticket.id)
    assert stored.pending_close
    assert stored.close_reason == CLOSE_REASON_SATISFIED
    assert stored.closed_by_role == "owner"


@pytest.mark.asyncio
async def test_satisfaction_phrase_skipped_when_close_notice_present(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value
    bot = make_member(99, "TicketBot", bot=True)
    engine.gateway.add_history(ticket.channel_id, make_message(1, ticket.channel_id, bot, f"**{CLOSE_NOTICE_TITLE}**"))

    result = await engine.lifecycle.handle_channel_message(ticket.channel_id, STAFF_A, "problem solved")

    assert result.ok and result.value is None
    assert not engine.store.get(ticket.id).pending_close


@pytest.mark.asyncio
async def test_ordinary_messages_do_not_close(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    by_other = await engine.lifecycle.handle_channel_message(ticket.channel_id, OTHER, "thanks")
    unrelated = await engine.lifecycle.handle_channel_message(ticket.channel_id, OWNER, "they thankfully replied")

    assert by_other.value is None
    assert unrelated.value is None
    assert not engine.store.get(ticket.id).pending_close


@pytest.mark.asyncio
async def test_force_close_is_idempotent(engine) -> None:
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    first = await engine.lifecycle.force_close(ticket.id, "cleanup")
    second = await engine.lifecycle.force_close(ticket.id, "again")

    assert first.ok and second.ok
    assert engine.store.get(ticket.id).close_reason == "cleanup"
    assert engine.notifier.closed == [(ticket.id, "cleanup")]
    assert engine.notifier.transcripts == []


@pytest.mark.asyncio
async def test_purge_removes_closed_ticket_after_archive(engine) -> None:
    engine.config.purge_closed_after_archive = True
    engine.gateway.add_container("Support")
    ticket = (await engine.lifecycle.create(OWNER, WORKSPACE_ID, "support")).value

    await engine.lifecycle.close(ticket.id, ADMIN)

    assert engine.store.get(ticket.id) is None
    assert len(engine.notifier.transcripts) == 1
    assert engine.backend.document["nextId"] == 2


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_ids(engine) -> None:
    engine.gateway.add_container("Support")
    create_channel = engine.gateway.create_channel

    async def slow_create_channel(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await create_channel(*args, **kwargs)

    engine.gateway.create_channel = slow_create_channel
    first, second = await asyncio.gather(
        engine.lifecycle.create(OWNER, WORKSPACE_ID, "support"),
        engine.lifecycle.create(OTHER, WORKSPACE_ID, "support"),
    )

    assert first.ok and second.ok
    assert first.value.id != second.value.id
    await engine.store.reload()
    assert {t.id for t in engine.store.list_open(WORKSPACE_ID)} == {first.value.id, second.value.id}
    assert engine.backend.document["nextId"] == 3

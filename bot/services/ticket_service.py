from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from core.config import TicketsConfig
from core.errors import (
    AlreadyClaimedError,
    CategoryResolutionError,
    DuplicateOpenTicketError,
    NotFoundError,
    OrderingError,
    PermissionDeniedError,
    TicketStateError,
)
from database.models import Ticket
from database.repositories import TicketStore
from gateway.base import AclEntry, Channel, GatewayError, Member, PlatformGateway
from services.cache import CacheBackend
from services.category_resolver import CategoryResolver, display_name_for
from services.notification_service import Notifier
from services.satisfaction import SatisfactionDetector, close_in_progress
from services.scheduler import Scheduler
from services.transcript_service import TranscriptGenerator
from utils import messages
from utils.constants import (
    ADMIN_PERMISSIONS,
    CLOSE_REASON_CHANNEL_DELETED,
    CLOSE_REASON_SATISFIED,
    CLOSER_ADMIN,
    CLOSER_OWNER,
    CLOSER_STAFF,
    CLOSER_SYSTEM,
    OWNER_PERMISSIONS,
    PERM_VIEW_CHANNEL,
    REPLACES_CATEGORY,
    STAFF_PERMISSIONS,
)
from utils.decorators import best_effort, returns_result
from utils.rate_limit import DistributedRateLimiter
from utils.time import Clock, to_iso

LOGGER = logging.getLogger(__name__)

RECENT_MESSAGE_WINDOW = 10

CloseHook = Callable[[Ticket], Awaitable[None]]


class RatingGate(Protocol):
    async def start_rating(
        self, ticket: Ticket, closer_id: int, role: str, reason: str | None
    ) -> Ticket: ...


@dataclass(slots=True)
class LifecycleDeps:
    store: TicketStore
    resolver: CategoryResolver
    gateway: PlatformGateway
    notifier: Notifier
    scheduler: Scheduler
    transcripts: TranscriptGenerator
    cache: CacheBackend
    clock: Clock


def build_ticket_acl(
    workspace_id: int,
    owner_id: int,
    *,
    staff_role_id: int | None,
    admin_role_id: int | None,
) -> list[AclEntry]:
    entries = [
        AclEntry.everyone(workspace_id, deny=frozenset({PERM_VIEW_CHANNEL})),
        AclEntry.member(owner_id, allow=OWNER_PERMISSIONS),
    ]
    if staff_role_id:
        entries.append(AclEntry.role(staff_role_id, allow=STAFF_PERMISSIONS))
    if admin_role_id:
        entries.append(AclEntry.role(admin_role_id, allow=ADMIN_PERMISSIONS))
    return entries


def sanitize_channel_fragment(name: str) -> str:
    name = name.strip().lower()
    name = re.sub(r"[^a-z0-9-]+", "-", name)
    name = re.sub(r"-{2,}", "-", name).strip("-")
    return name[:32] or "user"


def channel_name_for(category_key: str, ticket_id: str, owner: Member) -> str:
    if category_key.strip().lower() == REPLACES_CATEGORY:
        return f"{REPLACES_CATEGORY}-{ticket_id.lower()}"
    return f"{sanitize_channel_fragment(category_key)}-{sanitize_channel_fragment(owner.username)}"[:95]


class TicketLifecycle:
    def __init__(
        self,
        config: TicketsConfig,
        deps: LifecycleDeps,
        *,
        close_hooks: Sequence[CloseHook] = (),
    ) -> None:
        self.config = config
        self.deps = deps
        self.close_hooks = list(close_hooks)
        self.rate_limiter = DistributedRateLimiter(deps.cache)
        self.detector = SatisfactionDetector(config.satisfaction_phrases)
        self._rating_gate: RatingGate | None = None

    def bind_rating_gate(self, gate: RatingGate) -> None:
        self._rating_gate = gate

    # Capabilities

    def is_admin(self, member: Member) -> bool:
        return member.is_administrator or (
            self.config.admin_role_id is not None and self.config.admin_role_id in member.role_ids
        )

    def is_staff(self, member: Member) -> bool:
        return self.config.staff_role_id is not None and self.config.staff_role_id in member.role_ids

    def closer_role_for(self, ticket: Ticket, member: Member) -> str:
        if self.is_admin(member):
            return CLOSER_ADMIN
        if self.is_staff(member):
            return CLOSER_STAFF
        if member.id == ticket.owner_id:
            return CLOSER_OWNER
        raise PermissionDeniedError(f"Member {member.id} cannot close {ticket.id}")

    def require(self, ticket_id: str) -> Ticket:
        ticket = self.deps.store.get(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    # Create

    @returns_result
    async def create(
        self,
        owner: Member,
        workspace_id: int,
        category: str,
        invoice_id: str | None = None,
    ) -> Ticket:
        guard_key = f"ticket:create:{workspace_id}:{owner.id}"
        hit = await self.rate_limiter.hit(
            guard_key, limit=1, window_seconds=self.config.creation_guard_seconds
        )
        if not hit.allowed:
            raise DuplicateOpenTicketError(f"A ticket is already being created for {owner.id}")
        try:
            return await self._create(owner, workspace_id, category, invoice_id)
        finally:
            await self.rate_limiter.release(guard_key)

    async def _create(
        self, owner: Member, workspace_id: int, category: str, invoice_id: str | None
    ) -> Ticket:
        store = self.deps.store
        await store.reload()

        for existing in store.get_by_owner(owner.id, workspace_id):
            if await self._channel_exists(existing.channel_id):
                raise DuplicateOpenTicketError(
                    f"{owner.id} already has {existing.id} open", ticket_id=existing.id
                )
            LOGGER.info(
                "Closing stale ticket %s, channel %s is gone",
                existing.id,
                existing.channel_id,
                extra={"ticket_id": existing.id},
            )
            await self._force_close(existing, CLOSE_REASON_CHANNEL_DELETED)

        container_id = await self.deps.resolver.resolve(workspace_id, category)
        ticket_id = await store.reserve_id()
        acl = build_ticket_acl(
            workspace_id,
            owner.id,
            staff_role_id=self.config.staff_role_id,
            admin_role_id=self.config.admin_role_id,
        )
        try:
            channel = await self.deps.gateway.create_channel(
                workspace_id, channel_name_for(category, ticket_id, owner), container_id, acl
            )
        except GatewayError as exc:
            raise CategoryResolutionError(f"Could not create channel for {ticket_id}: {exc}") from exc

        await self._ensure_in_container(channel, container_id, workspace_id, category)

        ticket = Ticket(
            id=ticket_id,
            owner_id=owner.id,
            channel_id=channel.id,
            category=display_name_for(category),
            workspace_id=workspace_id,
            invoice_id=invoice_id,
            created_at=to_iso(self.deps.clock.now()),
        )
        store.upsert(ticket)
        await store.save()

        await best_effort(
            "ticket opened notice",
            self.deps.gateway.send_message(channel.id, messages.ticket_opened(ticket)),
        )
        await self.deps.notifier.notify_open(ticket)
        LOGGER.info(
            "Ticket %s opened by %s in channel %s",
            ticket.id,
            owner.id,
            channel.id,
            extra={"ticket_id": ticket.id},
        )
        return ticket

    async def _channel_exists(self, channel_id: int) -> bool:
        try:
            return await self.deps.gateway.fetch_channel(channel_id) is not None
        except GatewayError as exc:
            # Unknown is treated as present; reconciliation heals it later.
            LOGGER.warning("Could not verify channel %s: %s", channel_id, exc)
            return True

    async def _ensure_in_container(
        self, channel: Channel, container_id: int, workspace_id: int, category: str
    ) -> Channel:
        gateway = self.deps.gateway
        try:
            fetched = await gateway.fetch_channel(channel.id)
        except GatewayError:
            fetched = None
        if fetched is not None and fetched.parent_id == container_id:
            return fetched

        LOGGER.warning(
            "Channel %s landed outside container %s, moving it", channel.id, container_id
        )
        try:
            await gateway.move_channel(channel.id, container_id)
            fetched = await gateway.fetch_channel(channel.id)
        except GatewayError as exc:
            LOGGER.warning("Corrective move of channel %s failed: %s", channel.id, exc)
            fetched = None
        if fetched is not None and fetched.parent_id == container_id:
            return fetched

        self.deps.resolver.invalidate(workspace_id, category)
        await best_effort(
            "delete orphaned channel",
            gateway.delete_channel(channel.id, reason="Ticket channel outside its category"),
        )
        raise CategoryResolutionError(
            f"Channel {channel.id} could not be placed in container {container_id}"
        )

    # Claim

    @returns_result
    async def claim(self, ticket_id: str, staff: Member) -> Ticket:
        await self.deps.store.reload()
        ticket = self.require(ticket_id)
        if ticket.closed:
            raise TicketStateError(f"Ticket {ticket.id} is closed")
        if not (self.is_staff(staff) or self.is_admin(staff)):
            raise PermissionDeniedError(f"Member {staff.id} cannot claim tickets")
        if ticket.claimed_by is not None:
            raise AlreadyClaimedError(f"Ticket {ticket.id} already claimed by {ticket.claimed_by}")

        ticket.claimed_by = staff.id
        ticket.claimed_at = to_iso(self.deps.clock.now())
        self.deps.store.upsert(ticket)
        await self.deps.store.save()
        await best_effort(
            "ticket claimed notice",
            self.deps.gateway.send_message(ticket.channel_id, messages.ticket_claimed(ticket)),
        )
        LOGGER.info("Ticket %s claimed by %s", ticket.id, staff.id, extra={"ticket_id": ticket.id})
        return ticket

    # Close

    @returns_result
    async def close(self, ticket_id: str, closer: Member, reason: str | None = None) -> Ticket:
        await self.deps.store.reload()
        ticket = self.require(ticket_id)
        if ticket.closed:
            raise TicketStateError(f"Ticket {ticket.id} is already closed")
        role = self.closer_role_for(ticket, closer)
        return await self._close_as(ticket, closer.id, role, reason)

    async def _close_as(
        self, ticket: Ticket, closer_id: int, role: str, reason: str | None
    ) -> Ticket:
        reason = (reason or "").strip() or None
        if ticket.pending_close:
            raise TicketStateError(f"Ticket {ticket.id} is already waiting for ratings")
        if role == CLOSER_ADMIN:
            return await self._finalize(ticket, closer_id, role, reason)
        if self._rating_gate is None:
            raise TicketStateError("Rating workflow is not available")
        return await self._rating_gate.start_rating(ticket, closer_id, role, reason)

    @returns_result
    async def finalize(
        self, ticket_id: str, closed_by: int | None, role: str, reason: str | None
    ) -> Ticket:
        await self.deps.store.reload()
        return await self._finalize(self.require(ticket_id), closed_by, role, reason)

    async def _finalize(
        self, ticket: Ticket, closed_by: int | None, role: str, reason: str | None
    ) -> Ticket:
        if ticket.closed:
            raise TicketStateError(f"Ticket {ticket.id} is already closed")
        if ticket.pending_close and not ticket.has_both_ratings and role != CLOSER_SYSTEM:
            raise OrderingError(f"Ticket {ticket.id} is still waiting for ratings")

        ticket.closed = True
        ticket.closed_at = to_iso(self.deps.clock.now())
        ticket.closed_by = closed_by
        ticket.closed_by_role = role
        ticket.close_reason = reason
        ticket.pending_close = False
        self.deps.store.upsert(ticket)
        await self.deps.store.save()

        for hook in self.close_hooks:
            await best_effort(f"close hook {getattr(hook, '__name__', hook)}", hook(ticket))
        await best_effort("transcript archive", self.deps.transcripts.archive(ticket))
        await self.deps.notifier.notify_close(ticket, reason)

        channel_id = ticket.channel_id
        self.deps.scheduler.call_later(
            f"delete-channel:{ticket.id}",
            self.config.channel_delete_delay_seconds,
            lambda: self.deps.gateway.delete_channel(channel_id, reason=f"Ticket {ticket.id} closed"),
        )

        if self.config.purge_closed_after_archive:
            self.deps.store.remove(ticket.id)
            await self.deps.store.save()

        LOGGER.info(
            "Ticket %s closed by %s (%s)",
            ticket.id,
            closed_by,
            role,
            extra={"ticket_id": ticket.id},
        )
        return ticket

    @returns_result
    async def force_close(self, ticket_id: str, reason: str) -> Ticket:
        await self.deps.store.reload()
        ticket = self.require(ticket_id)
        if ticket.closed:
            return ticket
        return await self._force_close(ticket, reason)

    async def _force_close(self, ticket: Ticket, reason: str) -> Ticket:
        ticket.closed = True
        ticket.closed_at = to_iso(self.deps.clock.now())
        ticket.closed_by = None
        ticket.closed_by_role = CLOSER_SYSTEM
        ticket.close_reason = reason
        ticket.pending_close = False
        self.deps.store.upsert(ticket)
        await self.deps.store.save()
        await self.deps.notifier.notify_close(ticket, reason)
        LOGGER.info("Ticket %s force-closed: %s", ticket.id, reason, extra={"ticket_id": ticket.id})
        return ticket

    # Channel messages

    @returns_result
    async def handle_channel_message(
        self, channel_id: int, author: Member, content: str
    ) -> Ticket | None:
        if author.is_bot or not self.detector.matches(content):
            return None
        await self.deps.store.reload()
        ticket = self.deps.store.get_by_channel(channel_id)
        if ticket is None or ticket.closed or ticket.pending_close:
            return None
        try:
            role = self.closer_role_for(ticket, author)
        except PermissionDeniedError:
            return None

        try:
            recent = await self.deps.gateway.fetch_messages(channel_id, limit=RECENT_MESSAGE_WINDOW)
        except GatewayError as exc:
            LOGGER.warning("Could not read recent messages in %s: %s", channel_id, exc)
            return None
        if close_in_progress(recent):
            return None

        LOGGER.info(
            "Satisfaction phrase from %s (%s) in %s", author.id, role, ticket.id,
            extra={"ticket_id": ticket.id},
        )
        return await self._close_as(ticket, author.id, role, CLOSE_REASON_SATISFIED)

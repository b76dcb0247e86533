from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from core.config import TicketsConfig
from core.errors import (
    OrderingError,
    PermissionDeniedError,
    TicketStateError,
    ValidationError,
)
from database.models import Ticket
from gateway.base import AclEntry, GatewayError, Member, RatingPrompt
from services.ticket_service import TicketLifecycle
from utils import messages
from utils.constants import (
    ADMIN_PERMISSIONS,
    CLOSE_REASON_RATING_TIMEOUT,
    CLOSER_SYSTEM,
    POSITIVE_REVIEW_MIN_AVERAGE,
    PERM_READ_HISTORY,
    PERM_SEND_MESSAGES,
    PERM_VIEW_CHANNEL,
    RATING_KIND_SERVICE,
    RATING_KIND_STAFF,
    RATING_MAX,
    RATING_MIN,
    REASON_REQUIRED_ROLES,
    STAFF_PERMISSIONS,
)
from utils.decorators import best_effort, returns_result
from utils.time import parse_iso, to_iso

LOGGER = logging.getLogger(__name__)

COMMENT_MAX_CHARS = 1000


def build_pending_close_acl(
    workspace_id: int,
    owner_id: int,
    *,
    staff_role_id: int | None,
    admin_role_id: int | None,
) -> list[AclEntry]:
    """Owner keeps read access but can no longer post; staff and admin keep posting."""
    entries = [
        AclEntry.everyone(workspace_id, deny=frozenset({PERM_VIEW_CHANNEL})),
        AclEntry.member(
            owner_id,
            allow=frozenset({PERM_VIEW_CHANNEL, PERM_READ_HISTORY}),
            deny=frozenset({PERM_SEND_MESSAGES}),
        ),
    ]
    if staff_role_id:
        entries.append(AclEntry.role(staff_role_id, allow=STAFF_PERMISSIONS))
    if admin_role_id:
        entries.append(AclEntry.role(admin_role_id, allow=ADMIN_PERMISSIONS))
    return entries


@dataclass(slots=True)
class RatingTimeoutPolicy:
    timeout: timedelta = timedelta(hours=24)
    # None leaves unanswered ratings empty instead of defaulting them.
    default_rating: int | None = RATING_MAX

    @classmethod
    def from_config(cls, config: TicketsConfig) -> RatingTimeoutPolicy:
        return cls(
            timeout=timedelta(hours=config.rating_timeout_hours),
            default_rating=config.timeout_default_rating,
        )

    def is_expired(self, ticket: Ticket, now: datetime) -> bool:
        if ticket.closed or not ticket.pending_close:
            return False
        started = parse_iso(ticket.rating_started_at)
        if started is None:
            return False
        return now - started >= self.timeout

    def apply_defaults(self, ticket: Ticket) -> list[str]:
        if self.default_rating is None:
            return []
        applied: list[str] = []
        if ticket.service_rating is None:
            ticket.service_rating = self.default_rating
            applied.append(RATING_KIND_SERVICE)
        if ticket.staff_rating is None:
            ticket.staff_rating = self.default_rating
            applied.append(RATING_KIND_STAFF)
        return applied


def timeout_close_reason(original: str | None) -> str:
    """Keep the reason given at close time next to the timeout marker."""
    if not original:
        return CLOSE_REASON_RATING_TIMEOUT
    return f"{original} ({CLOSE_REASON_RATING_TIMEOUT})"


class RatingWorkflow:
    """Two-step rating gate between a staff/owner close and the final archive.

    Constructing the workflow registers it as the lifecycle's rating gate.
    """

    def __init__(
        self,
        config: TicketsConfig,
        lifecycle: TicketLifecycle,
        *,
        policy: RatingTimeoutPolicy | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.lifecycle = lifecycle
        self.store = lifecycle.deps.store
        self.gateway = lifecycle.deps.gateway
        self.notifier = lifecycle.deps.notifier
        self.scheduler = lifecycle.deps.scheduler
        self.clock = lifecycle.deps.clock
        self.policy = policy or RatingTimeoutPolicy.from_config(config)
        self.rng = rng or random.Random()
        lifecycle.bind_rating_gate(self)

    async def _throttle(self) -> None:
        if self.config.operation_throttle_seconds > 0:
            await asyncio.sleep(self.config.operation_throttle_seconds)

    @returns_result
    async def initiate_close(self, ticket_id: str, closer: Member, reason: str | None = None) -> Ticket:
        await self.store.reload()
        ticket = self.lifecycle.require(ticket_id)
        if ticket.closed:
            raise TicketStateError(f"Ticket {ticket.id} is already closed")
        role = self.lifecycle.closer_role_for(ticket, closer)
        return await self.start_rating(ticket, closer.id, role, (reason or "").strip() or None)

    async def start_rating(
        self, ticket: Ticket, closer_id: int, role: str, reason: str | None
    ) -> Ticket:
        if role in REASON_REQUIRED_ROLES and not reason:
            raise ValidationError(f"A close reason is required when closing as {role}")
        if ticket.closed:
            raise TicketStateError(f"Ticket {ticket.id} is already closed")
        if ticket.pending_close:
            raise TicketStateError(f"Ticket {ticket.id} is already waiting for ratings")

        ticket.pending_close = True
        ticket.closed_by = closer_id
        ticket.closed_by_role = role
        ticket.close_reason = reason
        ticket.rating_started_at = to_iso(self.clock.now())
        self.store.upsert(ticket)
        await self.store.save()

        await self._lock_channel(ticket)
        await self._throttle()
        await best_effort(
            "rename closed channel",
            self.gateway.rename_channel(ticket.channel_id, f"closed-{ticket.number}"),
        )
        await best_effort(
            "close notice", self.gateway.send_message(ticket.channel_id, messages.close_notice(ticket))
        )
        ref = await best_effort(
            "service rating prompt",
            self.gateway.send_message(
                ticket.channel_id,
                messages.service_rating_prompt(ticket),
                prompt=RatingPrompt(kind=RATING_KIND_SERVICE, ticket_id=ticket.id),
            ),
        )
        if ref is not None:
            ticket.service_rating_message_id = ref.id
            await self.store.save()

        LOGGER.info(
            "Ticket %s waiting for ratings (closed by %s as %s)",
            ticket.id,
            closer_id,
            role,
            extra={"ticket_id": ticket.id},
        )
        return ticket

    async def _lock_channel(self, ticket: Ticket) -> None:
        acl = build_pending_close_acl(
            ticket.workspace_id or 0,
            ticket.owner_id,
            staff_role_id=self.config.staff_role_id,
            admin_role_id=self.config.admin_role_id,
        )
        try:
            await self.gateway.set_channel_acl(ticket.channel_id, acl)
        except GatewayError as exc:
            LOGGER.warning("Could not lock channel for %s: %s", ticket.id, exc)

    def _check_submission(self, ticket: Ticket, user_id: int, rating: int) -> None:
        if user_id != ticket.owner_id:
            raise PermissionDeniedError(f"Only the ticket owner can rate {ticket.id}")
        if isinstance(rating, bool) or not isinstance(rating, int) or not RATING_MIN <= rating <= RATING_MAX:
            raise ValidationError(f"Rating must be between {RATING_MIN} and {RATING_MAX}")
        if ticket.closed or not ticket.pending_close:
            raise TicketStateError(f"Ticket {ticket.id} is not collecting ratings")

    @returns_result
    async def submit_service_rating(self, ticket_id: str, user_id: int, rating: int) -> Ticket:
        await self.store.reload()
        ticket = self.lifecycle.require(ticket_id)
        self._check_submission(ticket, user_id, rating)
        if ticket.service_rating is not None:
            raise OrderingError(f"Service rating for {ticket.id} was already submitted")

        ticket.service_rating = rating
        self.store.upsert(ticket)
        await self.store.save()
        await self._retire_prompt(ticket, ticket.service_rating_message_id, "Service", rating)

        ref = await best_effort(
            "staff rating prompt",
            self.gateway.send_message(
                ticket.channel_id,
                messages.staff_rating_prompt(ticket),
                prompt=RatingPrompt(kind=RATING_KIND_STAFF, ticket_id=ticket.id),
            ),
        )
        if ref is not None:
            ticket.staff_rating_message_id = ref.id
            await self.store.save()
        LOGGER.info("Service rating %s recorded for %s", rating, ticket.id, extra={"ticket_id": ticket.id})
        return ticket

    @returns_result
    async def submit_staff_rating(
        self, ticket_id: str, user_id: int, rating: int, comment: str | None = None
    ) -> Ticket:
        await self.store.reload()
        ticket = self.lifecycle.require(ticket_id)
        self._check_submission(ticket, user_id, rating)
        if ticket.service_rating is None:
            raise OrderingError(f"Service rating for {ticket.id} must come first")
        if ticket.staff_rating is not None:
            raise OrderingError(f"Staff rating for {ticket.id} was already submitted")

        ticket.staff_rating = rating
        cleaned = (comment or "").strip()
        ticket.staff_rating_comment = cleaned[:COMMENT_MAX_CHARS] or None
        self.store.upsert(ticket)
        await self.store.save()
        await self._retire_prompt(ticket, ticket.staff_rating_message_id, "Staff", rating)
        LOGGER.info("Staff rating %s recorded for %s", rating, ticket.id, extra={"ticket_id": ticket.id})

        if ticket.has_both_ratings:
            await self._complete(ticket)
        return ticket

    async def _retire_prompt(
        self, ticket: Ticket, message_id: int | None, label: str, rating: int
    ) -> None:
        """Replace an answered prompt with the chosen score and drop its buttons."""
        if message_id is None:
            return
        await best_effort(
            f"retire {label.lower()} rating prompt",
            self.gateway.edit_message(
                ticket.channel_id, message_id, messages.rating_recorded(label, rating), clear_prompt=True
            ),
        )

    async def _complete(self, ticket: Ticket) -> None:
        await self.notifier.deliver_rating_summary(ticket)
        if (ticket.service_rating + ticket.staff_rating) / 2 >= POSITIVE_REVIEW_MIN_AVERAGE:
            await self.notifier.notify_positive_review(ticket)
        await best_effort(
            "reviews completed notice",
            self.gateway.send_message(ticket.channel_id, messages.reviews_completed(ticket)),
        )
        delay = self.rng.uniform(self.config.close_grace_min_seconds, self.config.close_grace_max_seconds)
        ticket_id = ticket.id
        self.scheduler.call_later(
            f"finalize:{ticket_id}", delay, lambda: self._finalize_rated(ticket_id)
        )

    async def _finalize_rated(self, ticket_id: str) -> None:
        await self.store.reload()
        ticket = self.store.get(ticket_id)
        if ticket is None or ticket.closed:
            return
        await self.lifecycle.finalize(
            ticket.id,
            ticket.closed_by,
            ticket.closed_by_role or CLOSER_SYSTEM,
            ticket.close_reason,
        )

    async def sweep_expired(self) -> list[str]:
        """Default missing ratings on expired pending tickets and close them as system."""
        await self.store.reload()
        now = self.clock.now()
        closed: list[str] = []
        for ticket in self.store.list_pending_close():
            if not self.policy.is_expired(ticket, now):
                continue
            try:
                defaulted = self.policy.apply_defaults(ticket)
                if defaulted:
                    self.store.upsert(ticket)
                    await self.store.save()
                    LOGGER.info(
                        "Rating window expired for %s, defaulted %s",
                        ticket.id,
                        ", ".join(defaulted),
                        extra={"ticket_id": ticket.id},
                    )
                result = await self.lifecycle.finalize(
                    ticket.id, None, CLOSER_SYSTEM, timeout_close_reason(ticket.close_reason)
                )
                if result.ok:
                    closed.append(ticket.id)
            except Exception:
                LOGGER.exception("Rating timeout sweep failed for %s", ticket.id)
            await self._throttle()
        if closed:
            LOGGER.info("Rating timeout sweep closed %s tickets", len(closed))
        return closed

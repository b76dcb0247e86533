from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from core.errors import PersistenceError
from database.base import DocumentBackend
from database.models import Ticket
from utils.constants import TICKET_ID_FORMAT

LOGGER = logging.getLogger(__name__)

_TICKET_ID_RE = re.compile(r"^(?:TKT-?)?(\d+)$", re.IGNORECASE)


def normalize_ticket_id(value: str | int) -> str:
    """Accept ``TKT-0001``, ``tkt-1`` or ``1`` and return the canonical id."""
    text = str(value).strip()
    match = _TICKET_ID_RE.match(text)
    if not match:
        return text
    return TICKET_ID_FORMAT.format(int(match.group(1)))


class TicketStore:
    """In-memory view of the ticket document with explicit load/save.

    Every check-and-mutate path must call ``reload()`` first; the document is a
    single read-modify-write unit with no row locking.
    """

    def __init__(
        self,
        backend: DocumentBackend,
        *,
        write_retries: int = 3,
        retry_delay_seconds: float = 0.05,
    ) -> None:
        self.backend = backend
        self.write_retries = max(1, write_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self.degraded = False
        self._tickets: dict[str, Ticket] = {}
        self._next_id = 1

    async def open(self) -> None:
        await self.backend.open()
        await self.load()

    async def close(self) -> None:
        await self.backend.close()

    async def load(self) -> None:
        try:
            document = await self.backend.read()
        except PersistenceError as exc:
            LOGGER.warning("Ticket document unreadable, starting empty: %s", exc)
            self._tickets = {}
            return
        self._apply_document(document or {})

    async def reload(self) -> None:
        if self.degraded:
            # Disk is behind memory until a write succeeds again.
            LOGGER.debug("Skipping reload while persistence is degraded")
            return
        await self.load()

    async def save(self) -> bool:
        document = self.to_document()
        last_error: PersistenceError | None = None
        for attempt in range(1, self.write_retries + 1):
            try:
                await self.backend.write(document)
            except PersistenceError as exc:
                last_error = exc
                LOGGER.warning(
                    "Ticket document write failed (attempt %s/%s): %s",
                    attempt,
                    self.write_retries,
                    exc,
                )
                if attempt < self.write_retries:
                    await asyncio.sleep(self.retry_delay_seconds)
                continue
            if self.degraded:
                LOGGER.info("Ticket persistence recovered")
            self.degraded = False
            return True

        self.degraded = True
        LOGGER.error("Ticket persistence degraded, serving from memory: %s", last_error)
        return False

    def to_document(self) -> dict[str, Any]:
        return {
            "tickets": {ticket_id: t.to_document() for ticket_id, t in self._tickets.items()},
            "nextId": self._next_id,
        }

    def _apply_document(self, document: dict[str, Any]) -> None:
        raw_tickets = document.get("tickets") or {}
        if not isinstance(raw_tickets, dict):
            LOGGER.warning("Ticket document has no ticket mapping, starting empty")
            raw_tickets = {}

        tickets: dict[str, Ticket] = {}
        for key, raw in raw_tickets.items():
            if not isinstance(raw, dict):
                LOGGER.warning("Skipping malformed ticket record %s", key)
                continue
            try:
                ticket = Ticket.from_document(str(key), raw)
            except ValueError as exc:
                LOGGER.warning("Skipping ticket record %s: %s", key, exc)
                continue
            tickets[ticket.id] = ticket

        try:
            next_id = int(document.get("nextId") or 1)
        except (TypeError, ValueError):
            next_id = 1
        highest = max((_number_of(t.id) for t in tickets.values()), default=0)
        self._tickets = tickets
        # Ids reserved in this process but not yet written must survive a reload.
        self._next_id = max(self._next_id, next_id, highest + 1)

    def get(self, ticket_id: str | int) -> Ticket | None:
        return self._tickets.get(normalize_ticket_id(ticket_id))

    def get_by_channel(self, channel_id: int) -> Ticket | None:
        for ticket in self._tickets.values():
            if ticket.channel_id == channel_id:
                return ticket
        return None

    def get_by_owner(
        self, owner_id: int, workspace_id: int, *, open_only: bool = True
    ) -> list[Ticket]:
        return [
            t
            for t in self._tickets.values()
            if t.owner_id == owner_id
            and t.workspace_id == workspace_id
            and (t.is_open or not open_only)
        ]

    def list_all(self) -> list[Ticket]:
        return sorted(self._tickets.values(), key=lambda t: _number_of(t.id))

    def list_open(self, workspace_id: int | None = None) -> list[Ticket]:
        return [
            t
            for t in self.list_all()
            if t.is_open and (workspace_id is None or t.workspace_id == workspace_id)
        ]

    def list_pending_close(self) -> list[Ticket]:
        return [t for t in self.list_all() if t.is_open and t.pending_close]

    def upsert(self, ticket: Ticket) -> Ticket:
        self._tickets[ticket.id] = ticket
        return ticket

    def remove(self, ticket_id: str) -> Ticket | None:
        return self._tickets.pop(normalize_ticket_id(ticket_id), None)

    def next_id(self) -> str:
        """Reserve the next sequential id; gaps appear if the reservation is abandoned."""
        ticket_id = TICKET_ID_FORMAT.format(self._next_id)
        self._next_id += 1
        return ticket_id

    async def reserve_id(self) -> str:
        """Reserve an id and persist the counter before the caller awaits anything else."""
        ticket_id = self.next_id()
        await self.save()
        return ticket_id


def _number_of(ticket_id: str) -> int:
    match = _TICKET_ID_RE.match(ticket_id)
    return int(match.group(1)) if match else 0

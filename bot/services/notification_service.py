from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from core.config import TicketsConfig
from database.models import Ticket
from gateway.base import PlatformGateway
from utils import messages
from utils.decorators import best_effort

LOGGER = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify_open(self, ticket: Ticket) -> None: ...
    async def notify_close(self, ticket: Ticket, reason: str | None) -> None: ...
    async def deliver_transcript(self, document: Path, summary: str) -> None: ...
    async def deliver_rating_summary(self, ticket: Ticket) -> None: ...
    async def notify_positive_review(self, ticket: Ticket) -> None: ...

class TicketNotifier:
    """Posts lifecycle events to the configured log, transcript and rating channels.

    Every method is best-effort: a missing channel id is a no-op and platform
    failures are logged, never raised.
    """

    def __init__(self, gateway: PlatformGateway, config: TicketsConfig) -> None:
        self.gateway = gateway
        self.config = config

    async def _post(
        self, label: str, channel_id: int | None, content: str, file: Path | None = None
    ) -> None:
        if not channel_id:
            LOGGER.debug("No channel configured for %s", label)
            return
        await best_effort(label, self.gateway.send_message(channel_id, content, file=file))

    async def notify_open(self, ticket: Ticket) -> None:
        await self._post("notify_open", self.config.log_channel_id, messages.open_log(ticket))

    async def notify_close(self, ticket: Ticket, reason: str | None) -> None:
        await self._post("notify_close", self.config.log_channel_id, messages.close_log(ticket, reason))

    async def deliver_transcript(self, document: Path, summary: str) -> None:
        channel_id = self.config.transcript_channel_id or self.config.log_channel_id
        await self._post("deliver_transcript", channel_id, summary, file=document)

    async def deliver_rating_summary(self, ticket: Ticket) -> None:
        channel_id = self.config.rating_channel_id or self.config.log_channel_id
        await self._post("deliver_rating_summary", channel_id, messages.rating_summary(ticket))

    async def notify_positive_review(self, ticket: Ticket) -> None:
        # Unlike the other notices this one never falls back to the log channel.
        await self._post(
            "notify_positive_review", self.config.vouch_channel_id, messages.positive_review(ticket)
        )

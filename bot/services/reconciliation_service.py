from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from core.config import TicketsConfig
from database.models import Ticket
from gateway.base import AclEntry, Channel, GatewayError
from services.rating_service import RatingWorkflow
from services.ticket_service import TicketLifecycle
from utils.constants import (
    ADMIN_PERMISSIONS,
    CLOSE_REASON_RECONCILED,
    OWNER_PERMISSIONS,
    PERM_SEND_MESSAGES,
    STAFF_PERMISSIONS,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconciliationReport:
    workspace_id: int
    checked: int = 0
    skipped: int = 0
    backfilled: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "workspace_id": self.workspace_id,
            "checked": self.checked,
            "skipped": self.skipped,
            "backfilled": list(self.backfilled),
            "closed": list(self.closed),
            "repaired": list(self.repaired),
            "errors": list(self.errors),
        }


def _merge(existing: AclEntry | None, wanted: AclEntry) -> AclEntry | None:
    """Return the entry to write, or None when ``existing`` already covers ``wanted``."""
    if existing is None:
        return wanted
    if wanted.allow <= existing.allow and wanted.deny <= existing.deny and not (wanted.allow & existing.deny):
        return None
    return AclEntry(
        target_id=wanted.target_id,
        target_type=wanted.target_type,
        allow=(existing.allow - wanted.deny) | wanted.allow,
        deny=(existing.deny - wanted.allow) | wanted.deny,
    )


class ReconciliationService:
    """Heals persisted tickets against live channels at startup and on a schedule."""

    def __init__(
        self, config: TicketsConfig, lifecycle: TicketLifecycle, ratings: RatingWorkflow
    ) -> None:
        self.config = config
        self.lifecycle = lifecycle
        self.ratings = ratings
        self.store = lifecycle.deps.store
        self.gateway = lifecycle.deps.gateway

    async def _throttle(self) -> None:
        if self.config.operation_throttle_seconds > 0:
            await asyncio.sleep(self.config.operation_throttle_seconds)

    async def reconcile_workspace(self, workspace_id: int) -> ReconciliationReport:
        report = ReconciliationReport(workspace_id=workspace_id)
        await self.store.reload()
        try:
            live_ids = await self.gateway.list_channel_ids(workspace_id)
        except GatewayError as exc:
            LOGGER.error("Cannot list channels for workspace %s, skipping reconciliation: %s", workspace_id, exc)
            report.errors.append(f"workspace:{workspace_id}")
            return report

        for ticket in self.store.list_all():
            if ticket.closed:
                report.skipped += 1
                continue
            if ticket.workspace_id is not None and ticket.workspace_id != workspace_id:
                report.skipped += 1
                continue
            if ticket.workspace_id is None and ticket.channel_id not in live_ids:
                # Could belong to another workspace; leave it for that pass.
                report.skipped += 1
                continue

            report.checked += 1
            try:
                await self._reconcile_ticket(ticket, workspace_id, report)
            except Exception:
                LOGGER.exception("Reconciliation failed for %s", ticket.id)
                report.errors.append(ticket.id)
            await self._throttle()

        LOGGER.info(
            "Reconciled workspace %s: checked=%s closed=%s repaired=%s backfilled=%s errors=%s",
            workspace_id,
            report.checked,
            len(report.closed),
            len(report.repaired),
            len(report.backfilled),
            len(report.errors),
        )
        return report

    async def _reconcile_ticket(
        self, ticket: Ticket, workspace_id: int, report: ReconciliationReport
    ) -> None:
        if ticket.workspace_id is None:
            ticket.workspace_id = workspace_id
            self.store.upsert(ticket)
            await self.store.save()
            report.backfilled.append(ticket.id)
            LOGGER.info("Backfilled workspace for %s", ticket.id, extra={"ticket_id": ticket.id})

        channel = await self.gateway.fetch_channel(ticket.channel_id)
        if channel is None:
            result = await self.lifecycle.force_close(ticket.id, CLOSE_REASON_RECONCILED)
            if result.ok:
                report.closed.append(ticket.id)
            else:
                report.errors.append(ticket.id)
            return

        if await self.repair_acl(ticket, channel):
            report.repaired.append(ticket.id)

    async def _wanted_entries(self, ticket: Ticket, workspace_id: int) -> Iterable[AclEntry]:
        wanted: list[AclEntry] = []
        if await self.gateway.fetch_member(workspace_id, ticket.owner_id) is not None:
            if ticket.pending_close:
                wanted.append(
                    AclEntry.member(
                        ticket.owner_id,
                        allow=OWNER_PERMISSIONS - {PERM_SEND_MESSAGES},
                        deny=frozenset({PERM_SEND_MESSAGES}),
                    )
                )
            else:
                wanted.append(AclEntry.member(ticket.owner_id, allow=OWNER_PERMISSIONS))
        else:
            LOGGER.info("Owner %s of %s left the workspace", ticket.owner_id, ticket.id)

        for role_id, perms in (
            (self.config.staff_role_id, STAFF_PERMISSIONS),
            (self.config.admin_role_id, ADMIN_PERMISSIONS),
        ):
            if not role_id:
                continue
            if await self.gateway.fetch_role(workspace_id, role_id) is None:
                LOGGER.warning("Configured role %s no longer exists", role_id)
                continue
            wanted.append(AclEntry.role(role_id, allow=perms))
        return wanted

    async def repair_acl(self, ticket: Ticket, channel: Channel) -> bool:
        """Grant missing permissions without touching unrelated entries."""
        workspace_id = ticket.workspace_id or channel.workspace_id
        changed = False
        for wanted in await self._wanted_entries(ticket, workspace_id):
            entry = _merge(channel.acl_for(wanted.target_id), wanted)
            if entry is None:
                continue
            await self.gateway.upsert_acl_entry(channel.id, entry)
            changed = True
            await self._throttle()
        if changed:
            LOGGER.info("Repaired permissions on %s", ticket.id, extra={"ticket_id": ticket.id})
        return changed

    async def auto_close_sweep(self) -> list[str]:
        return await self.ratings.sweep_expired()

    async def run_periodic(self, workspace_ids: Iterable[int]) -> list[ReconciliationReport]:
        reports: list[ReconciliationReport] = []
        for workspace_id in workspace_ids:
            try:
                reports.append(await self.reconcile_workspace(workspace_id))
            except Exception:
                LOGGER.exception("Reconciliation of workspace %s failed", workspace_id)
        await self.auto_close_sweep()
        return reports

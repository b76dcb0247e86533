from __future__ import annotations

from typing import Any, Protocol

from fastapi import FastAPI, Header, HTTPException, Response

from database.models import Ticket
from database.repositories import TicketStore
from services.reconciliation_service import ReconciliationService


class ApiContext(Protocol):
    """Anything exposing the store and reconciliation service, normally the bot."""

    store: TicketStore
    reconciliation: ReconciliationService


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _ticket_summary(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "owner_id": ticket.owner_id,
        "channel_id": ticket.channel_id,
        "category": ticket.category,
        "claimed_by": ticket.claimed_by,
        "pending_close": ticket.pending_close,
        "created_at": ticket.created_at,
    }


def create_api_app(context: ApiContext, *, api_key: str = "") -> FastAPI:
    app = FastAPI(title="Ticket Lifecycle API", version="1.0.0")

    @app.get("/health")
    async def health(response: Response) -> dict[str, Any]:
        degraded = context.store.degraded
        if degraded:
            response.status_code = 503
        return {"status": "degraded" if degraded else "ok", "persistence_degraded": degraded}

    @app.get("/workspaces/{workspace_id}/tickets/open")
    async def open_tickets(workspace_id: int, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        await context.store.reload()
        return {"items": [_ticket_summary(t) for t in context.store.list_open(workspace_id)]}

    @app.get("/tickets/{ticket_id}")
    async def ticket_detail(ticket_id: str, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        await context.store.reload()
        ticket = context.store.get(ticket_id)
        if ticket is None:
            raise HTTPException(status_code=404, detail="Ticket not found")
        return ticket.to_document()

    @app.post("/workspaces/{workspace_id}/reconcile")
    async def reconcile(workspace_id: int, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        service = getattr(context, "reconciliation", None)
        if service is None:
            raise HTTPException(status_code=503, detail="Bot is still starting")
        report = await service.reconcile_workspace(workspace_id)
        return report.as_dict()

    return app

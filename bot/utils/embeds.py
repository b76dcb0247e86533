from __future__ import annotations

from datetime import UTC, datetime

import discord

from database.models import Ticket
from utils import messages

SUCCESS = discord.Color.green()
FAILURE = discord.Color.red()
NEUTRAL = discord.Color.blurple()
PENDING = discord.Color.gold()


def make_embed(
    title: str,
    description: str,
    color: discord.Color | None = None,
    *,
    fields: list[tuple[str, str, bool]] | None = None,
) -> discord.Embed:
    embed = discord.Embed(
        title=title,
        description=description,
        color=color or NEUTRAL,
        timestamp=datetime.now(UTC),
    )
    for name, value, inline in fields or []:
        embed.add_field(name=name, value=value, inline=inline)
    return embed


def success_embed(message: str) -> discord.Embed:
    return make_embed("Done", message, SUCCESS)


def error_embed(message: str) -> discord.Embed:
    return make_embed("Not possible", message, FAILURE)


def ticket_status(ticket: Ticket) -> str:
    if ticket.pending_close:
        return "waiting for ratings"
    return "closed" if ticket.closed else "open"


def ticket_embed(ticket: Ticket) -> discord.Embed:
    """Read-only summary of a ticket for staff and the owner."""
    fields = [
        ("Owner", messages.mention(ticket.owner_id), True),
        ("Claimed By", messages.mention(ticket.claimed_by), True),
        ("Status", ticket_status(ticket), True),
    ]
    if ticket.invoice_id:
        fields.append(("Invoice", f"`{ticket.invoice_id}`", False))
    fields.append(("Service rating", messages.stars(ticket.service_rating), True))
    fields.append(("Staff rating", messages.stars(ticket.staff_rating), True))
    color = PENDING if ticket.pending_close else (FAILURE if ticket.closed else NEUTRAL)
    embed = make_embed(f"Ticket {ticket.id}", f"Category: {ticket.category}", color, fields=fields)
    if ticket.created_at:
        embed.set_footer(text=f"Opened {ticket.created_at}")
    return embed

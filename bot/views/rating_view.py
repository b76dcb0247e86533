from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from utils.constants import RATING_KIND_SERVICE, RATING_KIND_STAFF, RATING_MAX, RATING_MIN
from utils.embeds import error_embed, success_embed

if TYPE_CHECKING:
    from core.bot import TicketBot

CUSTOM_ID_PREFIX = "rating"


def rating_custom_id(kind: str, rating: int, ticket_id: str) -> str:
    return f"{CUSTOM_ID_PREFIX}:{kind}:{rating}:{ticket_id}"


def parse_rating_custom_id(custom_id: str) -> tuple[str, int, str] | None:
    parts = custom_id.split(":", 3)
    if len(parts) != 4 or parts[0] != CUSTOM_ID_PREFIX:
        return None
    _, kind, raw_rating, ticket_id = parts
    if kind not in {RATING_KIND_SERVICE, RATING_KIND_STAFF} or not raw_rating.isdigit():
        return None
    return kind, int(raw_rating), ticket_id


class RatingView(discord.ui.View):
    """Score buttons; clicks are routed by custom_id so they survive restarts."""

    def __init__(self, kind: str, ticket_id: str) -> None:
        super().__init__(timeout=None)
        for score in range(RATING_MIN, RATING_MAX + 1):
            self.add_item(
                discord.ui.Button(
                    label=str(score),
                    emoji="⭐",
                    style=discord.ButtonStyle.success if score >= 4 else discord.ButtonStyle.secondary,
                    custom_id=rating_custom_id(kind, score, ticket_id),
                )
            )


class StaffCommentModal(discord.ui.Modal, title="Rate the staff member"):
    comment = discord.ui.TextInput(
        label="Comment (optional)",
        placeholder="Anything you want to tell us about the help you got",
        style=discord.TextStyle.long,
        max_length=1000,
        required=False,
    )

    def __init__(self, bot: TicketBot, ticket_id: str, rating: int) -> None:
        super().__init__(timeout=300)
        self.bot = bot
        self.ticket_id = ticket_id
        self.rating = rating

    async def on_submit(self, interaction: discord.Interaction) -> None:
        result = await self.bot.ratings.submit_staff_rating(
            self.ticket_id, interaction.user.id, self.rating, str(self.comment).strip() or None
        )
        if not result.ok:
            await interaction.response.send_message(
                embed=error_embed(result.error.user_message), ephemeral=True
            )
            return
        await interaction.response.send_message(
            embed=success_embed(f"Thanks! You rated the staff {self.rating}/{RATING_MAX}."),
            ephemeral=True,
        )


async def handle_rating_interaction(bot: TicketBot, interaction: discord.Interaction) -> bool:
    """Route a rating button click. Returns False when the interaction is not ours."""
    custom_id = str((interaction.data or {}).get("custom_id", ""))
    parsed = parse_rating_custom_id(custom_id)
    if parsed is None:
        return False
    kind, rating, ticket_id = parsed

    if kind == RATING_KIND_STAFF:
        await interaction.response.send_modal(StaffCommentModal(bot, ticket_id, rating))
        return True

    result = await bot.ratings.submit_service_rating(ticket_id, interaction.user.id, rating)
    if not result.ok:
        await interaction.response.send_message(embed=error_embed(result.error.user_message), ephemeral=True)
        return True
    await interaction.response.send_message(
        embed=success_embed(f"Thanks! You rated the service {rating}/{RATING_MAX}."),
        ephemeral=True,
    )
    return True

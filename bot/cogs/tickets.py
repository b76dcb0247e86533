from __future__ import annotations

from discord.ext import commands

from core.bot import TicketBot
from core.errors import OperationResult
from database.models import Ticket
from gateway.discord_gateway import to_member
from utils.embeds import error_embed, make_embed, success_embed, ticket_embed


class TicketsCog(commands.Cog):
    """Thin command surface; every decision is made by the lifecycle services."""

    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    async def _fail(self, ctx: commands.Context[TicketBot], result: OperationResult[Ticket]) -> bool:
        if result.ok:
            return False
        message = result.error.user_message if result.error else "Something went wrong."
        await ctx.reply(embed=error_embed(message), ephemeral=True, mention_author=False)
        return True

    async def _current_ticket(self, ctx: commands.Context[TicketBot]) -> Ticket | None:
        await self.bot.store.reload()
        ticket = self.bot.store.get_by_channel(ctx.channel.id)
        if ticket is None:
            await ctx.reply(
                embed=error_embed("This channel is not a ticket."), ephemeral=True, mention_author=False
            )
        return ticket

    @commands.hybrid_group(name="ticket", with_app_command=True, description="Ticket command group.")
    @commands.guild_only()
    async def ticket(self, ctx: commands.Context[TicketBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Ticket Commands",
                    "`/ticket open <category> [invoice]` to open\n"
                    "`/ticket claim` to claim\n"
                    "`/ticket close [reason]` to close\n"
                    "`/ticket info` for details",
                ),
                mention_author=False,
            )

    @ticket.command(name="open", description="Open a support ticket.")
    async def ticket_open(
        self, ctx: commands.Context[TicketBot], category: str, invoice: str | None = None
    ) -> None:
        assert ctx.guild is not None
        result = await self.bot.lifecycle.create(
            to_member(ctx.author), ctx.guild.id, category.strip().lower(), invoice_id=invoice
        )
        if await self._fail(ctx, result):
            return
        await ctx.reply(
            embed=success_embed(f"Ticket created: <#{result.value.channel_id}>"),
            ephemeral=True,
            mention_author=False,
        )

    @ticket.command(name="claim", description="Claim the current ticket.")
    async def ticket_claim(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        if ticket is None:
            return
        result = await self.bot.lifecycle.claim(ticket.id, to_member(ctx.author))
        if await self._fail(ctx, result):
            return
        await ctx.reply(embed=success_embed(f"You claimed {ticket.id}."), ephemeral=True, mention_author=False)

    @ticket.command(name="close", description="Close the current ticket.")
    async def ticket_close(self, ctx: commands.Context[TicketBot], *, reason: str | None = None) -> None:
        ticket = await self._current_ticket(ctx)
        if ticket is None:
            return
        result = await self.bot.lifecycle.close(ticket.id, to_member(ctx.author), reason)
        if await self._fail(ctx, result):
            return
        text = (
            "Waiting for the owner's ratings before archiving."
            if result.value.pending_close
            else "Ticket closed, the channel will be deleted shortly."
        )
        await ctx.reply(embed=success_embed(text), ephemeral=True, mention_author=False)

    @ticket.command(name="info", description="Show ticket info.")
    async def ticket_info(self, ctx: commands.Context[TicketBot]) -> None:
        ticket = await self._current_ticket(ctx)
        if ticket is None:
            return
        await ctx.reply(embed=ticket_embed(ticket), ephemeral=True, mention_author=False)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(TicketsCog(bot))

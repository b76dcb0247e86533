from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import TicketBot
from gateway.discord_gateway import to_member
from views.rating_view import handle_rating_interaction

LOGGER = logging.getLogger(__name__)


class EventsCog(commands.Cog):
    def __init__(self, bot: TicketBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_guild_join(self, guild: discord.Guild) -> None:
        report = await self.bot.reconciliation.reconcile_workspace(guild.id)
        LOGGER.info("Joined guild %s, reconciled %s tickets", guild.id, report.checked)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not message.guild or not isinstance(message.channel, discord.TextChannel):
            return
        if self.bot.store.get_by_channel(message.channel.id) is None:
            return
        result = await self.bot.lifecycle.handle_channel_message(
            message.channel.id, to_member(message.author), message.content
        )
        if result.ok and result.value is not None:
            LOGGER.info("Close started for %s from a satisfaction message", result.value.id)

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type is not discord.InteractionType.component:
            return
        await handle_rating_interaction(self.bot, interaction)


async def setup(bot: TicketBot) -> None:
    await bot.add_cog(EventsCog(bot))

from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.config import AppConfig
from database.base import build_backend
from database.repositories import TicketStore
from gateway.discord_gateway import DiscordGateway
from services.cache import CacheBackend, build_cache
from services.category_resolver import CategoryResolver
from services.notification_service import TicketNotifier
from services.rating_service import RatingWorkflow
from services.reconciliation_service import ReconciliationService
from services.scheduler import TaskScheduler
from services.ticket_service import CloseHook, LifecycleDeps, TicketLifecycle
from services.transcript_service import TranscriptGenerator
from utils.embeds import error_embed
from utils.time import SystemClock

LOGGER = logging.getLogger(__name__)

EXTENSIONS = ("cogs.events", "cogs.tickets")


class TicketBot(commands.Bot):
    def __init__(self, config: AppConfig, *, close_hooks: tuple[CloseHook, ...] = ()) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            application_id=config.discord.application_id,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=True),
            help_command=None,
        )
        self.config = config
        self.close_hooks = close_hooks
        self.store = TicketStore(
            build_backend(config.storage),
            write_retries=config.storage.write_retries,
            retry_delay_seconds=config.storage.retry_delay_seconds,
        )
        self.scheduler = TaskScheduler()
        self.gateway = DiscordGateway(self)
        self.cache: CacheBackend | None = None

        # Services are initialized during setup_hook.
        self.lifecycle: TicketLifecycle
        self.ratings: RatingWorkflow
        self.reconciliation: ReconciliationService
        self._reconciled_once = False

    async def setup_hook(self) -> None:
        await self.store.open()
        self.cache = await build_cache(self.config.redis)

        tickets_cfg = self.config.tickets
        notifier = TicketNotifier(self.gateway, tickets_cfg)
        deps = LifecycleDeps(
            store=self.store,
            resolver=CategoryResolver(self.gateway, overrides=tickets_cfg.category_map),
            gateway=self.gateway,
            notifier=notifier,
            scheduler=self.scheduler,
            transcripts=TranscriptGenerator(self.gateway, notifier, self.config.transcripts),
            cache=self.cache,
            clock=SystemClock(),
        )
        self.lifecycle = TicketLifecycle(tickets_cfg, deps, close_hooks=self.close_hooks)
        self.ratings = RatingWorkflow(tickets_cfg, self.lifecycle)
        self.reconciliation = ReconciliationService(tickets_cfg, self.lifecycle, self.ratings)

        for extension in EXTENSIONS:
            await self.load_extension(extension)
            LOGGER.info("Loaded extension %s", extension)

        if self.config.discord.sync_commands_on_start:
            synced = await self.tree.sync()
            LOGGER.info("Synced %s application commands", len(synced))

    def workspace_ids(self) -> list[int]:
        configured = self.config.discord.workspace_ids
        return list(configured) if configured else [guild.id for guild in self.guilds]

    async def reconcile_all(self) -> None:
        await self.reconciliation.run_periodic(self.workspace_ids())

    async def on_ready(self) -> None:
        LOGGER.info("Bot ready as %s (%s)", self.user, self.user.id if self.user else "n/a")
        await self.change_presence(
            status=discord.Status.online,
            activity=discord.Activity(
                type=discord.ActivityType.watching, name=self.config.discord.status_text
            ),
        )
        # on_ready fires again after reconnects; the startup pass and sweep run once.
        if self._reconciled_once:
            return
        self._reconciled_once = True
        await self.reconcile_all()
        self.scheduler.every(
            "reconcile-and-sweep",
            self.config.tickets.sweep_interval_seconds,
            self.reconcile_all,
        )

    async def on_command_error(self, ctx: commands.Context[commands.Bot], error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            return
        if isinstance(error, commands.UserInputError | commands.CheckFailure):
            message = str(error)
        else:
            LOGGER.error("Command %s failed", ctx.command, exc_info=error)
            message = "Something went wrong while running this command."
        await ctx.reply(embed=error_embed(message), ephemeral=True, mention_author=False)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await super().close()
        await self.store.close()
        if self.cache:
            await self.cache.close()

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.bot import TicketBot
from core.config import AppConfig, load_config
from core.logging import configure_logging

LOGGER = logging.getLogger("ticket-bot")

DEFAULT_CONFIG = Path(__file__).resolve().parent / "config" / "config.yaml"


def _config_path() -> Path:
    override = os.getenv("TICKET_BOT_CONFIG", "").strip()
    return Path(override) if override else DEFAULT_CONFIG


def _api_server(bot: TicketBot, config: AppConfig) -> uvicorn.Server:
    app = create_api_app(bot, api_key=config.fastapi.api_key)
    return uvicorn.Server(
        uvicorn.Config(
            app=app,
            host=config.fastapi.host,
            port=config.fastapi.port,
            log_level=config.logging.level.lower(),
            # Logging is owned by configure_logging; keep uvicorn from replacing it.
            log_config=None,
        )
    )


async def _serve(config: AppConfig) -> None:
    bot = TicketBot(config=config)
    server: uvicorn.Server | None = None
    serving: asyncio.Task[None] | None = None
    async with bot:
        if config.fastapi.enabled:
            server = _api_server(bot, config)
            serving = asyncio.create_task(server.serve(), name="ticket-api")
            LOGGER.info("Ticket API listening on %s:%s", config.fastapi.host, config.fastapi.port)
        try:
            await bot.start(config.discord.token)
        finally:
            if server and serving:
                server.should_exit = True
                await asyncio.gather(serving, return_exceptions=True)


def main() -> None:
    config = load_config(_config_path())
    configure_logging(config.logging)
    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()

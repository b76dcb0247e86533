from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from core.config import LoggingConfig

PLAIN_FORMAT = "%(asctime)s | %(levelname)-7s | %(ticket_id)-9s | %(name)s | %(message)s"
NO_TICKET = "-"

# Third-party loggers that are too chatty at the root level.
QUIET_LOGGERS = {
    "discord": logging.INFO,
    "discord.http": logging.WARNING,
    "discord.gateway": logging.WARNING,
    "aiohttp": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


class TicketContextFilter(logging.Filter):
    """Guarantees every record carries ``ticket_id`` so formats can reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "ticket_id", None):
            record.ticket_id = NO_TICKET
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; the ticket id is only emitted when a record has one."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ticket_id = getattr(record, "ticket_id", NO_TICKET)
        if ticket_id != NO_TICKET:
            entry["ticket_id"] = ticket_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=True)


def _file_handler(config: LoggingConfig) -> logging.Handler:
    directory = Path(config.directory)
    directory.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        filename=directory / config.file_name,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )


def configure_logging(config: LoggingConfig, *, to_file: bool = True) -> logging.Logger:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(getattr(logging, (config.level or "INFO").upper(), logging.INFO))

    plain = logging.Formatter(fmt=PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    handlers[0].setFormatter(JsonFormatter() if config.json_console else plain)
    if to_file:
        file_handler = _file_handler(config)
        file_handler.setFormatter(plain)
        handlers.append(file_handler)

    context = TicketContextFilter()
    for handler in handlers:
        handler.addFilter(context)
        root.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    return root

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from utils.constants import DEFAULT_SATISFACTION_PHRASES


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DiscordConfig:
    token: str
    application_id: int | None = None
    workspace_ids: list[int] = field(default_factory=list)
    status_text: str = "Watching support tickets"
    sync_commands_on_start: bool = True


@dataclass(slots=True)
class StorageConfig:
    url: str = "json:///./data/tickets.json"
    write_retries: int = 3
    retry_delay_seconds: float = 0.05
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "tickets:"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "tickets.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class TicketsConfig:
    staff_role_id: int | None = None
    admin_role_id: int | None = None
    log_channel_id: int | None = None
    transcript_channel_id: int | None = None
    rating_channel_id: int | None = None
    vouch_channel_id: int | None = None
    category_map: dict[str, int] = field(default_factory=dict)
    rating_timeout_hours: float = 24.0
    timeout_default_rating: int | None = 5
    sweep_interval_seconds: int = 3600
    close_grace_min_seconds: float = 3.0
    close_grace_max_seconds: float = 5.0
    channel_delete_delay_seconds: float = 5.0
    operation_throttle_seconds: float = 0.3
    creation_guard_seconds: int = 30
    purge_closed_after_archive: bool = False
    satisfaction_phrases: list[str] = field(
        default_factory=lambda: list(DEFAULT_SATISFACTION_PHRASES)
    )


@dataclass(slots=True)
class TranscriptConfig:
    html_enabled: bool = True
    txt_enabled: bool = False
    inline_images: bool = True


@dataclass(slots=True)
class FastApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class AppConfig:
    discord: DiscordConfig
    storage: StorageConfig = field(default_factory=StorageConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tickets: TicketsConfig = field(default_factory=TicketsConfig)
    transcripts: TranscriptConfig = field(default_factory=TranscriptConfig)
    fastapi: FastApiConfig = field(default_factory=FastApiConfig)


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_optional_int(value: Any) -> int | None:
    if value is None or str(value).strip().lower() in {"", "none", "null"}:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def _load_tickets_config(raw: dict[str, Any]) -> TicketsConfig:
    def opt(key: str) -> int | None:
        return _as_optional_int(_deep_get(raw, "tickets", key))

    section = raw.get("tickets") if isinstance(raw.get("tickets"), dict) else {}
    # An explicit null disables defaulting, so _deep_get's fallback can't be used here.
    timeout_default = (
        _as_optional_int(section["timeout_default_rating"])
        if "timeout_default_rating" in section
        else 5
    )
    if timeout_default is not None and not 1 <= timeout_default <= 5:
        raise ConfigError("tickets.timeout_default_rating must be between 1 and 5 or null")

    grace_min = _as_float(_deep_get(raw, "tickets", "close_grace_min_seconds"), 3.0)
    grace_max = _as_float(_deep_get(raw, "tickets", "close_grace_max_seconds"), 5.0)
    if grace_max < grace_min:
        raise ConfigError("tickets.close_grace_max_seconds must be >= close_grace_min_seconds")

    phrases = _deep_get(raw, "tickets", "satisfaction_phrases")
    return TicketsConfig(
        staff_role_id=opt("staff_role_id"),
        admin_role_id=opt("admin_role_id"),
        log_channel_id=opt("log_channel_id"),
        transcript_channel_id=opt("transcript_channel_id"),
        rating_channel_id=opt("rating_channel_id"),
        vouch_channel_id=opt("vouch_channel_id"),
        category_map={
            str(key).lower(): int(val)
            for key, val in dict(_deep_get(raw, "tickets", "category_map", default={})).items()
        },
        rating_timeout_hours=_as_float(_deep_get(raw, "tickets", "rating_timeout_hours"), 24.0),
        timeout_default_rating=timeout_default,
        sweep_interval_seconds=_as_int(_deep_get(raw, "tickets", "sweep_interval_seconds"), 3600),
        close_grace_min_seconds=grace_min,
        close_grace_max_seconds=grace_max,
        channel_delete_delay_seconds=_as_float(
            _deep_get(raw, "tickets", "channel_delete_delay_seconds"), 5.0
        ),
        operation_throttle_seconds=_as_float(
            _deep_get(raw, "tickets", "operation_throttle_seconds"), 0.3
        ),
        creation_guard_seconds=_as_int(_deep_get(raw, "tickets", "creation_guard_seconds"), 30),
        purge_closed_after_archive=_as_bool(
            _deep_get(raw, "tickets", "purge_closed_after_archive"), False
        ),
        satisfaction_phrases=(
            [str(p).lower() for p in phrases]
            if isinstance(phrases, list)
            else list(DEFAULT_SATISFACTION_PHRASES)
        ),
    )


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    discord_token = _get_env_str("DISCORD_TOKEN", _deep_get(raw, "discord", "token"))
    if not discord_token or "${" in discord_token:
        raise ConfigError("DISCORD_TOKEN is required")

    discord_cfg = DiscordConfig(
        token=discord_token,
        application_id=(
            int(_get_env_str("DISCORD_APPLICATION_ID"))
            if _get_env_str("DISCORD_APPLICATION_ID")
            else _as_optional_int(_deep_get(raw, "discord", "application_id"))
        ),
        workspace_ids=[int(x) for x in list(_deep_get(raw, "discord", "workspace_ids", default=[]))],
        status_text=str(_deep_get(raw, "discord", "status_text", default="Watching support tickets")),
        sync_commands_on_start=_as_bool(_deep_get(raw, "discord", "sync_commands_on_start"), True),
    )

    storage_cfg = StorageConfig(
        url=str(
            _get_env_str(
                "STORAGE_URL",
                _deep_get(raw, "storage", "url", default="json:///./data/tickets.json"),
            )
        ),
        write_retries=max(1, _as_int(_deep_get(raw, "storage", "write_retries"), 3)),
        retry_delay_seconds=_as_float(_deep_get(raw, "storage", "retry_delay_seconds"), 0.05),
        timeout_seconds=_as_int(_deep_get(raw, "storage", "timeout_seconds"), 30),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
        key_prefix=str(_deep_get(raw, "redis", "key_prefix", default="tickets:")),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="tickets.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    transcript_cfg = TranscriptConfig(
        html_enabled=_as_bool(_deep_get(raw, "transcripts", "html_enabled"), True),
        txt_enabled=_as_bool(_deep_get(raw, "transcripts", "txt_enabled"), False),
        inline_images=_as_bool(_deep_get(raw, "transcripts", "inline_images"), True),
    )

    fastapi_cfg = FastApiConfig(
        enabled=_as_bool(_deep_get(raw, "fastapi", "enabled"), False),
        host=str(_deep_get(raw, "fastapi", "host", default="0.0.0.0")),
        port=_as_int(_deep_get(raw, "fastapi", "port"), 8000),
        api_key=str(_get_env_str("API_KEY", _deep_get(raw, "fastapi", "api_key", default=""))),
    )

    return AppConfig(
        discord=discord_cfg,
        storage=storage_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        tickets=_load_tickets_config(raw),
        transcripts=transcript_cfg,
        fastapi=fastapi_cfg,
    )

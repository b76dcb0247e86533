from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import aiosqlite
import asyncpg

from core.config import StorageConfig
from core.errors import PersistenceError

LOGGER = logging.getLogger(__name__)

DOCUMENT_NAME = "tickets"


@dataclass(slots=True)
class StorageDsn:
    driver: str
    value: str


def parse_storage_dsn(url: str) -> StorageDsn:
    if url.startswith("json:///"):
        return StorageDsn(driver="json", value=url.replace("json:///", "", 1))
    if url.startswith("sqlite:///"):
        return StorageDsn(driver="sqlite", value=url.replace("sqlite:///", "", 1))
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        return StorageDsn(driver="postgresql", value=url)
    raise ValueError("Unsupported storage URL. Use json:///, sqlite:/// or postgresql://")


def _qmark_to_dollar(query: str) -> str:
    idx = 1
    out: list[str] = []
    for char in query:
        if char == "?":
            out.append(f"${idx}")
            idx += 1
        else:
            out.append(char)
    return "".join(out)


class DocumentBackend(Protocol):
    async def open(self) -> None: ...
    async def read(self) -> dict[str, Any] | None: ...
    async def write(self, document: dict[str, Any]) -> None: ...
    async def close(self) -> None: ...


class JsonFileBackend:
    """Single JSON file, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
            if not raw:
                return None
            payload = json.loads(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Unreadable ticket document {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError(f"Ticket document {self.path} is not a mapping")
        return payload

    async def write(self, document: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as exc:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write ticket document {self.path}: {exc}") from exc

    async def close(self) -> None:
        return None


class Database:
    def __init__(self, dsn: StorageDsn, timeout_seconds: int = 30) -> None:
        self._dsn = dsn
        self._timeout_seconds = timeout_seconds
        self._sqlite: aiosqlite.Connection | None = None
        self._pg_pool: asyncpg.Pool | None = None
        self._sqlite_lock = asyncio.Lock()

    @property
    def driver(self) -> str:
        return self._dsn.driver

    async def connect(self) -> None:
        if self.driver == "sqlite":
            sqlite_path = Path(self._dsn.value)
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite = await aiosqlite.connect(sqlite_path)
            self._sqlite.row_factory = aiosqlite.Row
            await self._sqlite.execute("PRAGMA journal_mode = WAL;")
            await self._sqlite.commit()
            LOGGER.info("Connected to SQLite: %s", sqlite_path)
            return
        self._pg_pool = await asyncpg.create_pool(
            dsn=self._dsn.value,
            min_size=1,
            max_size=2,
            timeout=self._timeout_seconds,
        )
        LOGGER.info("Connected to PostgreSQL")

    async def close(self) -> None:
        if self._sqlite:
            await self._sqlite.close()
            self._sqlite = None
        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> None:
        params = params or []
        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                await self._sqlite.execute(query, tuple(params))
                await self._sqlite.commit()
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            await conn.execute(_qmark_to_dollar(query), *params)

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        params = params or []
        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                cursor = await self._sqlite.execute(query, tuple(params))
                row = await cursor.fetchone()
            return dict(row) if row is not None else None

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            row = await conn.fetchrow(_qmark_to_dollar(query), *params)
        return dict(row) if row is not None else None


class SqlDocumentBackend:
    """Stores the ticket document as one JSON row in SQLite or PostgreSQL."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_documents (
        name TEXT PRIMARY KEY,
        body TEXT NOT NULL,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    async def open(self) -> None:
        await self.database.connect()
        await self.database.execute(self.CREATE_TABLE_SQL)

    async def read(self) -> dict[str, Any] | None:
        try:
            row = await self.database.fetchone(
                "SELECT body FROM ticket_documents WHERE name = ?;", [DOCUMENT_NAME]
            )
        except (aiosqlite.Error, asyncpg.PostgresError, OSError) as exc:
            raise PersistenceError(f"Failed to read ticket document: {exc}") from exc
        if row is None:
            return None
        try:
            payload = json.loads(row["body"])
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Stored ticket document is corrupt: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError("Stored ticket document is not a mapping")
        return payload

    async def write(self, document: dict[str, Any]) -> None:
        try:
            await self.database.execute(
                """
                INSERT INTO ticket_documents(name, body, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(name) DO UPDATE SET
                    body = excluded.body,
                    updated_at = CURRENT_TIMESTAMP;
                """,
                [DOCUMENT_NAME, json.dumps(document, ensure_ascii=False)],
            )
        except (aiosqlite.Error, asyncpg.PostgresError, OSError) as exc:
            raise PersistenceError(f"Failed to write ticket document: {exc}") from exc

    async def close(self) -> None:
        await self.database.close()


def build_backend(config: StorageConfig) -> DocumentBackend:
    dsn = parse_storage_dsn(config.url)
    if dsn.driver == "json":
        return JsonFileBackend(Path(dsn.value))
    return SqlDocumentBackend(Database(dsn, timeout_seconds=config.timeout_seconds))

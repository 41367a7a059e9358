"""Credential persistence — a small key-value vault keyed by identity."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class VaultError(Exception):
    """Raised when the backing store cannot be read or written."""


@dataclass(frozen=True)
class CredentialRecord:
    """One stored credential. ``expires_at`` is always timezone-aware UTC."""

    identity: str
    secret_hash: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CredentialVault(Protocol):
    """Persistence collaborator used by ``CredentialStore``.

    ``put`` is an upsert: it atomically replaces any record for the same
    identity. ``delete`` returns whether a record existed.
    """

    async def get(self, identity: str) -> CredentialRecord | None: ...

    async def put(self, record: CredentialRecord) -> None: ...

    async def delete(self, identity: str) -> bool: ...

    async def scan(
        self, predicate: Callable[[CredentialRecord], bool]
    ) -> list[CredentialRecord]: ...


class MemoryVault:
    """Dict-backed vault. Process-local; used for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._records: dict[str, CredentialRecord] = {}

    async def get(self, identity: str) -> CredentialRecord | None:
        return self._records.get(identity)

    async def put(self, record: CredentialRecord) -> None:
        self._records[record.identity] = record

    async def delete(self, identity: str) -> bool:
        return self._records.pop(identity, None) is not None

    async def scan(
        self, predicate: Callable[[CredentialRecord], bool]
    ) -> list[CredentialRecord]:
        return [r for r in list(self._records.values()) if predicate(r)]

    def __len__(self) -> int:
        return len(self._records)


_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS credentials("
    "identity TEXT PRIMARY KEY, secret_hash TEXT NOT NULL, expires_at TEXT NOT NULL)"
)


class SQLiteVault:
    """SQLite-backed vault.

    A single connection is shared behind a lock; queries run in a worker
    thread so the event loop is never blocked on disk I/O. Timestamps are
    stored as ISO-8601 UTC strings.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            with self._conn:
                self._conn.execute(_SCHEMA)
        except sqlite3.Error as e:
            raise VaultError(f"Could not open credential database {path}: {e}") from e
        logger.info("Credential database ready at %s", path)

    async def get(self, identity: str) -> CredentialRecord | None:
        row = await self._run(
            "SELECT identity, secret_hash, expires_at FROM credentials WHERE identity = ?",
            (identity,),
            fetch=True,
        )
        return _row_to_record(row[0]) if row else None

    async def put(self, record: CredentialRecord) -> None:
        await self._run(
            "INSERT INTO credentials(identity, secret_hash, expires_at) VALUES(?, ?, ?) "
            "ON CONFLICT(identity) DO UPDATE SET "
            "secret_hash = excluded.secret_hash, expires_at = excluded.expires_at",
            (record.identity, record.secret_hash, _to_text(record.expires_at)),
        )

    async def delete(self, identity: str) -> bool:
        removed = await self._run(
            "DELETE FROM credentials WHERE identity = ?", (identity,)
        )
        return bool(removed)

    async def scan(
        self, predicate: Callable[[CredentialRecord], bool]
    ) -> list[CredentialRecord]:
        rows = await self._run(
            "SELECT identity, secret_hash, expires_at FROM credentials", (), fetch=True
        )
        records = [_row_to_record(row) for row in rows]
        return [r for r in records if predicate(r)]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, sql: str, params: tuple, fetch: bool = False):
        return await asyncio.to_thread(self._execute, sql, params, fetch)

    def _execute(self, sql: str, params: tuple, fetch: bool):
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(sql, params)
                    if fetch:
                        return cursor.fetchall()
                    return cursor.rowcount
            except sqlite3.Error as e:
                raise VaultError(f"Credential database error: {e}") from e


def _to_text(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


def _row_to_record(row: tuple) -> CredentialRecord:
    identity, secret_hash, expires_at = row
    moment = datetime.fromisoformat(expires_at)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return CredentialRecord(identity=identity, secret_hash=secret_hash, expires_at=moment)

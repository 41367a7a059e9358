"""Credential lifecycle: issue, validate, revoke and sweep expired records."""

from __future__ import annotations

import asyncio
import secrets
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from presence_alarm.artifacts import ArtifactStore, QRCodeRenderer, is_safe_name
from presence_alarm.hashing import SecretHasher
from presence_alarm.vault import CredentialRecord, CredentialVault, VaultError


class CredentialError(Exception):
    """Base class for credential store failures."""


class InvalidInputError(CredentialError, ValueError):
    """Caller supplied a malformed identity or ttl."""


class StorageError(CredentialError):
    """Persistence or artifact I/O failed; the operation was aborted."""


@dataclass(frozen=True)
class IssuedCredential:
    """Result of ``issue``. ``secret`` is the only copy of the plaintext."""

    identity: str
    secret: str
    expires_at: datetime
    artifact_ref: str


@dataclass
class SweepReport:
    """Identities whose expired credentials were removed by one sweep."""

    swept_at: datetime
    removed: list[str] = field(default_factory=list)
    artifact_failures: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.removed)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStore:
    """Owns identity -> {secret hash, expiry}.

    Mutations of a single identity (issue, revoke, the delete step of a
    sweep) are serialized by a per-identity lock; different identities
    proceed concurrently. Hashing runs in a worker thread.
    """

    def __init__(
        self,
        vault: CredentialVault,
        artifacts: ArtifactStore,
        renderer: QRCodeRenderer,
        hasher: SecretHasher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._vault = vault
        self._artifacts = artifacts
        self._renderer = renderer
        self._hasher = hasher or SecretHasher()
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    async def issue(self, identity: str, ttl: timedelta) -> IssuedCredential:
        """Create a credential for *identity*, superseding any existing one.

        The new hash is computed before anything is written and stored with a
        single upsert, so if the write fails the previous credential (if any)
        is still in place. The artifact is rendered only after the record is
        stored.

        Raises:
            InvalidInputError: empty/unsafe identity or non-positive ttl.
            StorageError: the vault or artifact write failed.
        """
        if not identity or not is_safe_name(identity):
            raise InvalidInputError(f"Invalid identity: {identity!r}")
        if ttl <= timedelta(0):
            raise InvalidInputError("ttl must be positive.")

        secret = secrets.token_urlsafe(24)
        secret_hash = await asyncio.to_thread(self._hasher.hash, secret)

        async with self._lock_for(identity):
            expires_at = self._clock() + ttl
            record = CredentialRecord(
                identity=identity, secret_hash=secret_hash, expires_at=expires_at
            )
            try:
                await self._vault.put(record)
            except VaultError as e:
                raise StorageError(f"Could not store credential for {identity}: {e}") from e

            try:
                png = await asyncio.to_thread(self._renderer.render, identity, secret)
                ref = self._artifacts.save(identity, png)
            except (OSError, ValueError) as e:
                # A previous artifact now carries a secret that no longer validates
                try:
                    self._artifacts.delete(identity)
                except OSError:
                    pass
                raise StorageError(f"Could not store artifact for {identity}: {e}") from e

        return IssuedCredential(
            identity=identity, secret=secret, expires_at=expires_at, artifact_ref=ref
        )

    async def validate(
        self, identity: str, secret: str, now: datetime | None = None
    ) -> bool:
        """Return True only for a live credential whose hash matches *secret*.

        Raises:
            StorageError: the vault could not be read.
        """
        if not secret:
            return False
        try:
            record = await self._vault.get(identity)
        except VaultError as e:
            raise StorageError(f"Could not read credential for {identity}: {e}") from e
        if record is None:
            return False
        if record.is_expired(now or self._clock()):
            return False
        return await asyncio.to_thread(self._hasher.verify, secret, record.secret_hash)

    async def revoke(self, identity: str) -> bool:
        """Delete the credential and its artifact. Idempotent: True if absent.

        Raises:
            StorageError: the vault delete failed.
        """
        async with self._lock_for(identity):
            try:
                await self._vault.delete(identity)
            except VaultError as e:
                raise StorageError(f"Could not revoke credential for {identity}: {e}") from e
            try:
                self._artifacts.delete(identity)
            except OSError as e:
                raise StorageError(f"Could not remove artifact for {identity}: {e}") from e
        return True

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Remove every credential with ``expires_at <= now`` and its artifact.

        Each candidate is re-read under its identity lock, so a credential
        re-issued while the sweep is running survives.

        Raises:
            StorageError: the vault scan or a delete failed.
        """
        now = now or self._clock()
        report = SweepReport(swept_at=now)
        try:
            expired = await self._vault.scan(lambda r: r.is_expired(now))
        except VaultError as e:
            raise StorageError(f"Could not scan credentials: {e}") from e

        for candidate in expired:
            identity = candidate.identity
            async with self._lock_for(identity):
                try:
                    current = await self._vault.get(identity)
                    if current is None or not current.is_expired(now):
                        continue
                    await self._vault.delete(identity)
                except VaultError as e:
                    raise StorageError(f"Could not sweep credential for {identity}: {e}") from e
                report.removed.append(identity)
                try:
                    self._artifacts.delete(identity)
                except OSError:
                    report.artifact_failures.append(identity)
        return report

    async def fetch_artifact(self, identity: str) -> bytes | None:
        """Return the rendered artifact for *identity*, or None if absent."""
        try:
            return self._artifacts.load(identity)
        except OSError as e:
            raise StorageError(f"Could not read artifact for {identity}: {e}") from e

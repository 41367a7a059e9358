"""FastMCP app — presence alarm service: credentials, authentication, occupancy."""

from __future__ import annotations

import asyncio
import base64
import logging
import signal
import sys
from datetime import timedelta
from typing import Annotated, Any

from pydantic import Field

logger = logging.getLogger(__name__)

from fastmcp import FastMCP

from presence_alarm.artifacts import ArtifactStore, QRCodeRenderer
from presence_alarm.config import PresenceAlarmSettings
from presence_alarm.credentials import CredentialStore, InvalidInputError, StorageError
from presence_alarm.gate import AccessGate
from presence_alarm.hashing import SecretHasher
from presence_alarm.notifier import AlarmNotifier
from presence_alarm.occupancy import OccupancyTracker
from presence_alarm.sweeper import Sweeper
from presence_alarm.vault import SQLiteVault, VaultError

# ---------------------------------------------------------------------------
# FastMCP app
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "presence-alarm",
    instructions=(
        "Presence Alarm — time-limited entry credentials that arm and disarm "
        "a home alarm.\n\n"
        "Each person gets a credential with an expiry, distributed as a QR code "
        "that encodes a login URL. Scanning it calls `authenticate`. The first "
        "successful authentication marks the person as present; the next one "
        "marks them as gone. When the first person arrives the alarm is "
        "disarmed; when the last person leaves it is armed.\n\n"
        "## Tool Overview\n\n"
        "- `issue_credential` — Create or replace a credential. Returns the QR code reference.\n"
        "- `fetch_artifact` — Download the QR code PNG (base64) for an identity.\n"
        "- `revoke_credential` — Delete a credential and its QR code. Idempotent.\n"
        "- `authenticate` — Check a credential and toggle presence.\n"
        "- `occupancy_status` — Who is currently recorded as present.\n"
        "- `reset_occupancy` — Admin tool. Forgets everyone recorded as present.\n"
        "- `trigger_sweep` — Admin tool. Removes expired credentials now.\n"
        "- `refresh_config` — Admin tool. Hot-reloads env vars without redeploy.\n\n"
        "## Cold Start\n\n"
        "Presence is held in memory and starts empty. After a restart, a person "
        "who is physically present is not known until they authenticate again, "
        "which is then counted as an arrival.\n"
    ),
)

# ---------------------------------------------------------------------------
# Settings (deferred — never at import time)
# ---------------------------------------------------------------------------

_settings: PresenceAlarmSettings | None = None
_settings_loaded = False


def _ensure_settings_loaded() -> None:
    global _settings, _settings_loaded
    if not _settings_loaded:
        try:
            _settings = PresenceAlarmSettings()
            _settings_loaded = True
        except Exception as e:
            print(f"Error: Failed to load settings: {e}", file=sys.stderr)
            sys.exit(1)


def _get_settings() -> PresenceAlarmSettings:
    _ensure_settings_loaded()
    assert _settings is not None
    return _settings


# ---------------------------------------------------------------------------
# Singletons (lazy)
# ---------------------------------------------------------------------------

_vault: SQLiteVault | None = None
_store: CredentialStore | None = None
_tracker: OccupancyTracker | None = None
_notifier: AlarmNotifier | None = None
_sweeper: Sweeper | None = None
_gate: AccessGate | None = None


def _get_vault() -> SQLiteVault:
    global _vault
    if _vault is not None:
        return _vault
    s = _get_settings()
    try:
        _vault = SQLiteVault(s.database_path)
    except VaultError as e:
        raise StorageError(str(e)) from e
    return _vault


def _get_store() -> CredentialStore:
    global _store
    if _store is not None:
        return _store
    s = _get_settings()
    if not s.public_base_url:
        raise ValueError("PUBLIC_BASE_URL is required to render credential QR codes.")
    _store = CredentialStore(
        vault=_get_vault(),
        artifacts=ArtifactStore(s.artifact_dir),
        renderer=QRCodeRenderer(s.public_base_url),
        hasher=SecretHasher(n=s.scrypt_n),
    )
    _get_sweeper()
    logger.info("Credential store initialized.")
    return _store


def _get_tracker() -> OccupancyTracker:
    global _tracker
    if _tracker is None:
        _tracker = OccupancyTracker()
    return _tracker


def _get_notifier() -> AlarmNotifier:
    global _notifier
    if _notifier is not None:
        return _notifier
    s = _get_settings()
    if not s.notifications_enabled:
        raise ValueError(
            "Alarm webhooks not configured. Set HOME_ASSISTANT_URL, ARM_WEBHOOK_ID, DISARM_WEBHOOK_ID."
        )
    _notifier = AlarmNotifier(
        s.home_assistant_url,
        arm_webhook_id=s.arm_webhook_id,
        disarm_webhook_id=s.disarm_webhook_id,
        timeout_seconds=s.notify_timeout_seconds,
    )
    logger.info("Alarm notifier initialized for %s.", s.home_assistant_url)
    return _notifier


def _get_sweeper() -> Sweeper:
    global _sweeper
    if _sweeper is not None:
        return _sweeper
    s = _get_settings()
    assert _store is not None
    _sweeper = Sweeper(_store, interval_seconds=s.sweep_interval_seconds)
    try:
        _sweeper.start()
    except RuntimeError:
        pass
    _register_shutdown_handlers()
    return _sweeper


def _get_gate() -> AccessGate:
    global _gate
    if _gate is None:
        _gate = AccessGate(_get_store(), _get_tracker(), _get_notifier())
    return _gate


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------

_shutdown_triggered = False


async def _graceful_shutdown() -> None:
    global _shutdown_triggered
    if _shutdown_triggered:
        return
    _shutdown_triggered = True
    logger.info("Graceful shutdown: stopping sweeper and draining webhooks...")
    try:
        await asyncio.wait_for(_teardown(), timeout=8.0)
    except asyncio.TimeoutError:
        logger.error("Graceful shutdown timed out after 8s.")


async def _teardown() -> None:
    """Stop the sweeper, close the notifier and vault, reset singletons."""
    global _vault, _store, _notifier, _sweeper, _gate

    if _sweeper is not None:
        await _sweeper.stop()
        _sweeper = None

    if _notifier is not None:
        await _notifier.close()
        _notifier = None

    if _vault is not None:
        _vault.close()
        _vault = None

    _store = None
    _gate = None


def _register_shutdown_handlers() -> None:
    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig, lambda: asyncio.ensure_future(_graceful_shutdown())
            )
    except (RuntimeError, NotImplementedError):
        pass


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def issue_credential(
    identity: Annotated[
        str,
        Field(
            description=(
                "The person's identity (case-sensitive). Letters, digits and "
                "'.', '_', '@', '+', '-' only; it also names the QR code file."
            ),
        ),
    ],
    ttl_hours: Annotated[
        int,
        Field(description="Hours until the credential expires. Must be positive."),
    ],
) -> dict[str, Any]:
    """Issue a credential for an identity, replacing any existing one.

    The previous secret for this identity stops working immediately. The new
    secret is encoded in a QR code; fetch it with fetch_artifact and share
    it with the person. The plaintext secret is never returned again.

    Returns:
        success: True if the credential and QR code were stored.
        identity: The identity the credential was issued for.
        artifact_ref: Name of the rendered QR code.
        expires_at: ISO-8601 UTC expiry.

    Errors: Fails on a non-positive or too large ttl_hours, an invalid
    identity, or a storage failure.
    """
    s = _get_settings()
    if ttl_hours <= 0:
        return {"success": False, "error": "ttl_hours must be positive."}
    if ttl_hours > s.max_ttl_hours:
        return {"success": False, "error": f"ttl_hours must be at most {s.max_ttl_hours}."}

    try:
        issued = await _get_store().issue(identity, timedelta(hours=ttl_hours))
    except InvalidInputError as e:
        return {"success": False, "error": str(e)}
    except StorageError as e:
        logger.error("Credential for %s could not be issued: %s", identity, e)
        return {"success": False, "error": "Issuing the credential failed."}

    logger.info("Credential issued for %s until %s", identity, issued.expires_at.isoformat())
    return {
        "success": True,
        "identity": identity,
        "artifact_ref": issued.artifact_ref,
        "expires_at": issued.expires_at.isoformat(),
    }


@mcp.tool()
async def revoke_credential(identity: str) -> dict[str, Any]:
    """Delete the credential and QR code for an identity.

    Idempotent — succeeds when no credential exists. Does not change
    presence: a person recorded as present stays present until restart.

    Returns:
        success: True when the credential no longer exists.
    """
    try:
        await _get_store().revoke(identity)
    except StorageError as e:
        logger.error("Credential for %s could not be revoked: %s", identity, e)
        return {"success": False, "error": "Revoking the credential failed."}

    logger.info("Credential revoked for %s", identity)
    return {"success": True, "identity": identity}


@mcp.tool()
async def authenticate(
    identity: str,
    password: Annotated[
        str,
        Field(description="The secret from the credential's QR code login URL."),
    ],
) -> dict[str, Any]:
    """Check a credential and toggle the identity's presence.

    The first successful call marks the identity present; the next marks it
    gone. The alarm is disarmed when the first person arrives and armed when
    the last one leaves; the webhook is sent in the background and its
    outcome never affects this result.

    Returns:
        success: True if the call completed (even when unauthorized).
        authorized: Whether the credential is valid and unexpired.
        transition: none, first-arrival, last-departure or interior-change.
        present: Whether the identity is now recorded as present.
    """
    try:
        result = await _get_gate().authenticate(identity, password)
    except StorageError as e:
        logger.error("Authentication for %s could not be checked: %s", identity, e)
        return {"success": False, "error": "Credential storage unavailable."}

    if not result.authorized:
        logger.warning("User %s tried to log in, was unsuccessful", identity)
        return {"success": True, "authorized": False, "transition": result.transition.value}

    logger.info(
        "User %s authenticated (%s, present=%s)",
        identity, result.transition.value, result.present,
    )
    return {
        "success": True,
        "authorized": True,
        "transition": result.transition.value,
        "present": result.present,
    }


@mcp.tool()
async def fetch_artifact(identity: str) -> dict[str, Any]:
    """Return the QR code PNG for an identity, base64-encoded.

    Returns:
        success: True if a QR code exists for the identity.
        png_base64: The PNG image bytes, base64-encoded.
    """
    try:
        data = await _get_store().fetch_artifact(identity)
    except StorageError as e:
        logger.error("Artifact for %s could not be read: %s", identity, e)
        return {"success": False, "error": "Reading the QR code failed."}
    if data is None:
        return {"success": False, "error": f"No QR code found for {identity}."}
    return {
        "success": True,
        "identity": identity,
        "png_base64": base64.b64encode(data).decode(),
    }


@mcp.tool()
async def occupancy_status() -> dict[str, Any]:
    """List the identities currently recorded as present.

    Read-only. Presence is in-memory and empty after a restart.
    """
    tracker = _get_tracker()
    occupants = sorted(tracker.occupants())
    return {"occupants": occupants, "count": len(occupants)}


@mcp.tool()
async def trigger_sweep() -> dict[str, Any]:
    """Remove all expired credentials and their QR codes now.

    Admin tool. Fire-and-forget: the sweep runs in the background and
    shares the periodic sweep's single-flight guard.
    """
    try:
        _get_store()
    except StorageError as e:
        logger.error("Sweep could not be scheduled: %s", e)
        return {"success": False, "error": "Credential storage unavailable."}
    _get_sweeper().trigger()
    return {"success": True, "message": "Sweep scheduled."}


@mcp.tool()
async def reset_occupancy() -> dict[str, Any]:
    """Forget everyone currently recorded as present.

    Admin tool. Use when presence drifted from reality (someone left
    without authenticating). No webhook is sent; the next successful
    authentication counts as a first arrival and disarms the alarm.

    Returns:
        success: Always True.
        cleared: Whether anyone was recorded as present before the reset.
    """
    cleared = _get_tracker().clear()
    if cleared:
        logger.info("Occupancy reset by administrator.")
    return {"success": True, "cleared": cleared}


@mcp.tool()
async def refresh_config() -> dict[str, Any]:
    """Hot-reload environment variables without redeploying the service.

    Admin-only tool. Stops the sweeper, drains pending webhooks, closes the
    database, then resets singletons so they pick up new env vars on next
    use. Presence is kept.

    Returns:
        success: True if reload completed.
    """
    global _settings, _settings_loaded

    await _teardown()

    _settings = None
    _settings_loaded = False
    _ensure_settings_loaded()

    return {
        "success": True,
        "message": "Configuration reloaded. Singletons will be re-created on next use.",
    }


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()

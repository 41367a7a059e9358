"""Configuration via pydantic-settings. Loaded at runtime, never at import time."""

from __future__ import annotations

from datetime import timedelta

from pydantic_settings import BaseSettings


class PresenceAlarmSettings(BaseSettings):
    """All env vars for the presence alarm service."""

    # Home Assistant instance receiving the alarm webhooks
    home_assistant_url: str = ""
    arm_webhook_id: str = ""
    disarm_webhook_id: str = ""
    notify_timeout_seconds: float = 5.0

    # Persistence: SQLite credential table + directory of QR code PNGs
    database_path: str = "/mnt/persistence/user_data.db"
    artifact_dir: str = "/mnt/persistence"

    # Encoded into each QR code as {public_base_url}/{identity}?password=...
    public_base_url: str = ""

    # Expired-credential sweep
    sweep_interval_seconds: float = 3600.0

    # scrypt cost (power of two)
    scrypt_n: int = 2**14

    # Upper bound accepted by issue_credential
    max_ttl_hours: int = 24 * 365

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def notifications_enabled(self) -> bool:
        """True when the webhook base URL and both webhook IDs are set."""
        return bool(self.home_assistant_url and self.arm_webhook_id and self.disarm_webhook_id)

    @property
    def max_ttl(self) -> timedelta:
        return timedelta(hours=self.max_ttl_hours)

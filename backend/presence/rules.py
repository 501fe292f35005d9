"""Presence rules — centralized presence and dispatch timing policy."""
from typing import Optional

from config.settings import Settings, get_settings


def get_heartbeat_interval_s(settings: Optional[Settings] = None) -> float:
    """Sweep / ping period in seconds."""
    settings = settings or get_settings()
    return settings.HEARTBEAT_INTERVAL_MS / 1000


def get_heartbeat_timeout_ms(settings: Optional[Settings] = None) -> int:
    """Stale threshold in milliseconds. Defaults to twice the heartbeat interval."""
    settings = settings or get_settings()
    if settings.HEARTBEAT_TIMEOUT_MS > 0:
        return settings.HEARTBEAT_TIMEOUT_MS
    return settings.HEARTBEAT_INTERVAL_MS * 2


def get_request_timeout_s(settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    return settings.REQUEST_TIMEOUT_MS / 1000

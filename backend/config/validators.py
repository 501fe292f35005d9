"""Startup configuration validation guardrails."""

import logging


logger = logging.getLogger(__name__)


def _require_positive_timings(settings) -> None:
    """Fail closed if any timing or capacity knob is non-positive."""
    for key in ("HEARTBEAT_INTERVAL_MS", "REQUEST_TIMEOUT_MS", "MAX_SESSIONS_PER_KEY"):
        if getattr(settings, key) <= 0:
            raise RuntimeError(f"STARTUP FAILED — {key} must be a positive integer.")


def validate_startup_config(settings) -> None:
    """Centralized startup guardrails for required and warning-level config."""
    _require_positive_timings(settings)

    timeout_ms = settings.HEARTBEAT_TIMEOUT_MS
    if timeout_ms < 0:
        raise RuntimeError("STARTUP FAILED — HEARTBEAT_TIMEOUT_MS cannot be negative.")
    if timeout_ms and timeout_ms < settings.HEARTBEAT_INTERVAL_MS:
        raise RuntimeError(
            "STARTUP FAILED — HEARTBEAT_TIMEOUT_MS must not be shorter than HEARTBEAT_INTERVAL_MS, "
            "otherwise every device is evicted between two heartbeats."
        )

    if settings.ENV == "prod" and not settings.API_KEYS.strip():
        raise RuntimeError(
            "STARTUP FAILED — missing required env vars: API_KEYS\n"
            "Set them in .env or container environment and restart the server."
        )

    if not settings.API_KEYS.strip():
        logger.warning("CONFIG WARNING: API_KEYS is not set — every device auth will be rejected")

"""Centralized settings module — single source of truth for all config.

Values are loaded from env vars (or backend/.env). API keys are never logged.
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # ── Environment ──────────────────────────────────────────────
    ENV: Literal["dev", "staging", "prod"] = Field(default="dev")

    # ── HTTP / WebSocket ─────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3000)
    WS_PATH: str = Field(default="/wa-ext-ws")

    # ── Presence ─────────────────────────────────────────────────
    HEARTBEAT_INTERVAL_MS: int = Field(default=30000)
    HEARTBEAT_TIMEOUT_MS: int = Field(default=0)  # 0 → 2x heartbeat interval

    # ── Dispatch ─────────────────────────────────────────────────
    REQUEST_TIMEOUT_MS: int = Field(default=30000)
    MAX_SESSIONS_PER_KEY: int = Field(default=10)
    DEVICE_SELECTION_STRATEGY: Literal["round-robin", "random"] = Field(default="round-robin")

    # ── Auth ─────────────────────────────────────────────────────
    # Comma-separated keys accepted by the bundled static validator
    API_KEYS: str = Field(default="")

    # ── Media fetch ──────────────────────────────────────────────
    MEDIA_MAX_BYTES: int = Field(default=10 * 1024 * 1024)
    MEDIA_FETCH_TIMEOUT_S: float = Field(default=30.0)

    # ── Observability ────────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    LOG_REDACTION_ENABLED: bool = Field(default=True)

    model_config = {
        "env_file": str(_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def api_key_list(self) -> List[str]:
        return [k.strip() for k in self.API_KEYS.split(",") if k.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

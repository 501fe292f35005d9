"""Static API key validation.

The gateway takes any async ``validate_api_key(key)`` callable; this is the
default one, backed by the comma-separated API_KEYS setting. Hosts with a
real key store pass their own.
"""
import hmac
import logging
from typing import Iterable, Optional

from pydantic import BaseModel

from config.settings import Settings, get_settings
from observability.redaction import sanitize_api_key

logger = logging.getLogger(__name__)


class ApiKeyValidation(BaseModel):
    valid: bool
    key_hint: str = "***"


class StaticApiKeyValidator:
    """Accepts exactly the configured keys (constant-time compare)."""

    def __init__(self, keys: Iterable[str]):
        self._keys = [k for k in keys if k]

    async def __call__(self, api_key: str) -> ApiKeyValidation:
        valid = any(hmac.compare_digest(api_key.encode(), k.encode()) for k in self._keys)
        if not valid:
            logger.warning("API key rejected: key=%s", sanitize_api_key(api_key))
        return ApiKeyValidation(valid=valid, key_hint=sanitize_api_key(api_key))


def build_api_key_validator(settings: Optional[Settings] = None) -> StaticApiKeyValidator:
    settings = settings or get_settings()
    return StaticApiKeyValidator(settings.api_key_list)

"""PII / secrets redaction engine.

Patterns: phone numbers, API keys, bearer tokens, embedded data URLs.
"""
import re
from typing import List, Tuple

# (pattern, replacement_label)
_PATTERNS: List[Tuple[re.Pattern, str]] = [
    # Embedded media payloads (huge and private)
    (re.compile(r"data:[\w.+-]+/[\w.+-]+;base64,[A-Za-z0-9+/=]+"), "[REDACTED_DATA_URL]"),
    # Phone (international)
    (re.compile(r"\+\d{6,15}\b"), "[REDACTED_PHONE]"),
    # API key patterns
    (re.compile(r"(?:api[_-]?key|apiKey|token|secret)[\"']?[\s:=]+[\"']?[A-Za-z0-9_\-\.]{8,}[\"']?", re.IGNORECASE), "[REDACTED_SECRET]"),
    # Generic bearer token
    (re.compile(r"Bearer\s+[A-Za-z0-9_\-\.]+", re.IGNORECASE), "[REDACTED_BEARER]"),
]


def redact(text: str) -> str:
    """Apply all redaction patterns to text."""
    result = text
    for pattern, replacement in _PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def redact_dict(data: dict, sensitive_keys: set | None = None) -> dict:
    """Redact values of sensitive keys in a dictionary."""
    if sensitive_keys is None:
        sensitive_keys = {"apikey", "api_key", "token", "secret", "credential"}
    result = {}
    for k, v in data.items():
        if k.lower() in sensitive_keys:
            result[k] = sanitize_api_key(v) if isinstance(v, str) else "[REDACTED]"
        elif isinstance(v, dict):
            result[k] = redact_dict(v, sensitive_keys)
        elif isinstance(v, str):
            result[k] = redact(v)
        else:
            result[k] = v
    return result


def sanitize_api_key(api_key: str | None) -> str:
    """Show only the first 8 chars of a credential."""
    if not api_key or len(api_key) < 8:
        return "***"
    return api_key[:8] + "***"

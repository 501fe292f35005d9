"""Audit logging — structured gateway lifecycle events.

Events are emitted on the ``audit`` logger only; the gateway keeps no
persistent store.
"""
import logging
from typing import Any, Dict, Optional

from schemas.audit import AuditEvent, AuditEventType
from observability.redaction import redact_dict, sanitize_api_key

logger = logging.getLogger("audit")


def log_audit_event(
    event_type: AuditEventType,
    session_id: Optional[str] = None,
    credential: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    """Create and log an audit event. Returns the event."""
    event = AuditEvent(
        event_type=event_type,
        session_id=session_id,
        credential=sanitize_api_key(credential) if credential else None,
        details=redact_dict(details or {}),
    )
    logger.info(
        "AUDIT event=%s session=%s key=%s details=%s",
        event_type.value,
        session_id,
        event.credential,
        event.details,
    )
    return event

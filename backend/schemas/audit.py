"""Audit event schemas."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import uuid


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    SESSION_REJECTED = "session_rejected"
    SESSION_TERMINATED = "session_terminated"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    COMMAND_DISPATCHED = "command_dispatched"
    COMMAND_COMPLETED = "command_completed"
    COMMAND_FAILED = "command_failed"


class AuditEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuditEventType
    session_id: Optional[str] = None
    credential: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = Field(default_factory=dict)

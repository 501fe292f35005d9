"""Session schemas — device session state and read-only snapshots."""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from schemas.ws_messages import CommandKind

if TYPE_CHECKING:
    from gateway.transport import Transport


def now_ms() -> float:
    return time.time() * 1000


class SessionState(str, Enum):
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"


@dataclass
class PendingRequest:
    """One in-flight command awaiting its message-result."""
    request_id: str
    kind: CommandKind
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    created_at: float = field(default_factory=now_ms)


@dataclass(eq=False)
class DeviceSession:
    """Represents one authenticated device connection.

    ``state`` moves between AUTHENTICATED and ACTIVE as the device reports
    its status; unauthenticated connections never get a session.
    """
    credential: str
    transport: "Transport"
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ip: str = "unknown"
    extension_version: str = "unknown"
    browser: str = "unknown"
    state: SessionState = SessionState.AUTHENTICATED
    connected_at: float = field(default_factory=now_ms)
    last_heartbeat_at: float = field(default_factory=now_ms)
    pending: Dict[str, PendingRequest] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def snapshot(self) -> "SessionInfo":
        return SessionInfo(
            session_id=self.session_id,
            active=self.active,
            connected_at=self.connected_at,
            last_heartbeat_at=self.last_heartbeat_at,
            extension_version=self.extension_version,
            browser=self.browser,
            ip=self.ip,
            pending_requests=len(self.pending),
        )


class SessionInfo(BaseModel):
    """Session info for API responses (no transport, no credential)."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_id: str = Field(alias="sessionId")
    active: bool
    connected_at: float = Field(alias="connectedAt")
    last_heartbeat_at: float = Field(alias="lastHeartbeatAt")
    extension_version: str = Field(alias="extensionVersion")
    browser: str
    ip: str
    pending_requests: int = Field(default=0, alias="pendingRequests")

"""Device registry — in-memory bookkeeping of device sessions per API key.

A credential maps to an insertion-ordered list of sessions plus a round-robin
cursor. The credential entry and its cursor disappear as soon as the list
empties.
"""
import logging
import random
from typing import Callable, Dict, List, Literal, Optional

from core.exceptions import ConnectionLostError, SessionLimitError
from observability.redaction import sanitize_api_key
from presence.correlator import ErrorFactory, fail_pending
from schemas.session import DeviceSession, SessionInfo, SessionState, now_ms

logger = logging.getLogger(__name__)

SelectionStrategy = Literal["round-robin", "random"]


class DeviceRegistry:
    def __init__(
        self,
        max_sessions_per_key: int = 10,
        strategy: SelectionStrategy = "round-robin",
        clock: Callable[[], float] = now_ms,
        rng: Optional[random.Random] = None,
    ):
        self.max_sessions_per_key = max_sessions_per_key
        self.strategy = strategy
        self._clock = clock
        self._rng = rng or random.Random()
        self._sessions: Dict[str, List[DeviceSession]] = {}
        self._cursors: Dict[str, int] = {}
        self._by_id: Dict[str, DeviceSession] = {}

    # ---- mutation ----

    def register(
        self,
        credential: str,
        transport,
        ip: str = "unknown",
        extension_version: str = "unknown",
        browser: str = "unknown",
    ) -> DeviceSession:
        """Create a session under ``credential``. Raises SessionLimitError at capacity."""
        existing = self._sessions.get(credential, [])
        if len(existing) >= self.max_sessions_per_key:
            logger.warning(
                "Session cap reached: key=%s sessions=%d",
                sanitize_api_key(credential), len(existing),
            )
            raise SessionLimitError(self.max_sessions_per_key)

        now = self._clock()
        session = DeviceSession(
            credential=credential,
            transport=transport,
            ip=ip,
            extension_version=extension_version,
            browser=browser,
            connected_at=now,
            last_heartbeat_at=now,
        )
        self._sessions.setdefault(credential, []).append(session)
        self._by_id[session.session_id] = session
        logger.info(
            "Session registered: session=%s key=%s ip=%s version=%s browser=%s",
            session.session_id, sanitize_api_key(credential), ip, extension_version, browser,
        )
        return session

    def unregister(self, session_id: str, error_factory: ErrorFactory = ConnectionLostError) -> bool:
        """Remove a session, failing everything it still has pending."""
        session = self._by_id.pop(session_id, None)
        if session is None:
            return False

        fail_pending(session, error_factory)

        bucket = self._sessions.get(session.credential, [])
        if session in bucket:
            bucket.remove(session)
        if not bucket:
            self._sessions.pop(session.credential, None)
            self._cursors.pop(session.credential, None)

        logger.info("Session unregistered: session=%s", session_id)
        return True

    def set_active(self, session_id: str, logged_in: bool, ready: bool) -> bool:
        session = self._by_id.get(session_id)
        if session is None:
            return False
        session.state = SessionState.ACTIVE if (logged_in and ready) else SessionState.AUTHENTICATED
        return True

    def touch_heartbeat(self, session_id: str) -> bool:
        session = self._by_id.get(session_id)
        if session is None:
            return False
        session.last_heartbeat_at = self._clock()
        return True

    def clear(self, error_factory: ErrorFactory) -> int:
        """Drop every session, failing all pending requests. Returns session count."""
        sessions = list(self._by_id.values())
        for session in sessions:
            fail_pending(session, error_factory)
        self._sessions.clear()
        self._cursors.clear()
        self._by_id.clear()
        return len(sessions)

    # ---- selection ----

    def select_for_sending(self, credential: str) -> Optional[DeviceSession]:
        """Pick an active session for ``credential`` using the configured strategy.

        The round-robin cursor keeps counting across membership changes, so
        fairness is best-effort while sessions come and go.
        """
        active = [s for s in self._sessions.get(credential, []) if s.active]
        if not active:
            return None
        if len(active) == 1:
            return active[0]

        if self.strategy == "random":
            return self._rng.choice(active)

        cursor = self._cursors.get(credential, 0)
        self._cursors[credential] = cursor + 1
        return active[cursor % len(active)]

    # ---- reads ----

    def get_session(self, session_id: str) -> Optional[DeviceSession]:
        return self._by_id.get(session_id)

    def has_credential(self, credential: str) -> bool:
        return credential in self._sessions

    def list_sessions(self, credential: str) -> List[SessionInfo]:
        return [s.snapshot() for s in self._sessions.get(credential, [])]

    def list_active_sessions(self, credential: str) -> List[SessionInfo]:
        return [s.snapshot() for s in self._sessions.get(credential, []) if s.active]

    def all_sessions(self) -> List[DeviceSession]:
        return [s for bucket in self._sessions.values() for s in bucket]

    def credentials(self) -> List[str]:
        return list(self._sessions.keys())

    def total_session_count(self) -> int:
        return len(self._by_id)

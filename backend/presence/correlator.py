"""Request correlation — outbound commands awaiting a device message-result.

Each pending entry lives in its session's ``pending`` table, keyed by request
id, with exactly one armed timer. Presence in that table is the only "still
pending" check: acknowledgment, timeout, explicit cancel and session teardown
all pop the entry first and act only if they got it, so whichever path
arrives second is a no-op.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from core.exceptions import GatewayError, RequestTimeoutError
from schemas.session import DeviceSession, PendingRequest
from schemas.ws_messages import CommandKind

if TYPE_CHECKING:
    from presence.registry import DeviceRegistry

logger = logging.getLogger(__name__)

ErrorFactory = Callable[[], GatewayError]


def _settle(entry: PendingRequest, result: Any = None, error: Optional[GatewayError] = None) -> None:
    if entry.timer is not None:
        entry.timer.cancel()
        entry.timer = None
    if entry.future.done():
        # Caller stopped waiting (task cancelled)
        return
    if error is not None:
        entry.future.set_exception(error)
    else:
        entry.future.set_result(result)


def fail_pending(session: DeviceSession, error_factory: ErrorFactory) -> int:
    """Fail every pending request owned by ``session``. Returns how many."""
    entries = list(session.pending.values())
    session.pending.clear()
    for entry in entries:
        _settle(entry, error=error_factory())
    if entries:
        logger.info(
            "Failed %d pending request(s): session=%s code=%s",
            len(entries), session.session_id, error_factory().code,
        )
    return len(entries)


class RequestCorrelator:
    """Registers, resolves and expires pending requests."""

    def __init__(self, registry: "DeviceRegistry"):
        self._registry = registry

    def register(
        self,
        session: DeviceSession,
        request_id: str,
        kind: CommandKind,
        timeout_s: float,
    ) -> asyncio.Future:
        """Store a pending entry under ``session`` and arm its timeout."""
        loop = asyncio.get_running_loop()
        entry = PendingRequest(request_id=request_id, kind=kind, future=loop.create_future())
        entry.timer = loop.call_later(timeout_s, self._expire, session, request_id, timeout_s)
        session.pending[request_id] = entry
        logger.debug(
            "Pending registered: session=%s request=%s kind=%s timeout=%.1fs",
            session.session_id, request_id, kind.value, timeout_s,
        )
        return entry.future

    def _expire(self, session: DeviceSession, request_id: str, timeout_s: float) -> None:
        entry = session.pending.pop(request_id, None)
        if entry is None:
            return
        entry.timer = None
        logger.warning(
            "Request timed out: session=%s request=%s kind=%s after=%.1fs",
            session.session_id, request_id, entry.kind.value, timeout_s,
        )
        _settle(entry, error=RequestTimeoutError(request_id, timeout_s))

    def _take(self, session_id: str, request_id: str) -> Optional[PendingRequest]:
        session = self._registry.get_session(session_id)
        if session is None:
            return None
        return session.pending.pop(request_id, None)

    def resolve(self, session_id: str, request_id: str, result: Any) -> bool:
        """Complete a pending request. False if it already resolved by any path."""
        entry = self._take(session_id, request_id)
        if entry is None:
            logger.debug("Resolve ignored (not pending): session=%s request=%s", session_id, request_id)
            return False
        _settle(entry, result=result)
        return True

    def cancel(self, session_id: str, request_id: str, error: GatewayError) -> bool:
        """Fail a pending request early. False if it already resolved."""
        entry = self._take(session_id, request_id)
        if entry is None:
            return False
        _settle(entry, error=error)
        return True

    def pending_count(self, session_id: str) -> int:
        session = self._registry.get_session(session_id)
        return len(session.pending) if session else 0

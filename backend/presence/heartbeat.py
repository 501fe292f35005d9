"""Heartbeat tracking — liveness sweep.

Devices answer each ping with a heartbeat. Every heartbeat interval the sweeper
scans all sessions and evicts those whose last heartbeat is older than the
stale threshold (2x the interval by default).
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from presence.registry import DeviceRegistry
from schemas.session import DeviceSession, now_ms

logger = logging.getLogger(__name__)

StaleHook = Callable[[DeviceSession], Union[Awaitable[Any], Any]]


class LivenessSweeper:
    def __init__(
        self,
        registry: DeviceRegistry,
        interval_s: float,
        timeout_ms: float,
        on_stale: Optional[StaleHook] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.registry = registry
        self.interval_s = interval_s
        self.timeout_ms = timeout_ms
        self.on_stale = on_stale
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stale_sessions(self, now: Optional[float] = None) -> List[DeviceSession]:
        """Snapshot of sessions whose heartbeat age exceeds the threshold."""
        now = self._clock() if now is None else now
        stale = []
        for session in self.registry.all_sessions():
            age_ms = now - session.last_heartbeat_at
            if age_ms > self.timeout_ms:
                logger.warning(
                    "Presence STALE: session=%s age=%.1fs threshold=%.1fs",
                    session.session_id, age_ms / 1000, self.timeout_ms / 1000,
                )
                stale.append(session)
        return stale

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Evict every stale session. Returns the evicted session ids."""
        evicted = []
        for session in self.stale_sessions(now):
            if self.registry.get_session(session.session_id) is None:
                continue
            if self.on_stale is not None:
                try:
                    result = self.on_stale(session)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        "Stale hook failed: session=%s error=%s", session.session_id, str(e), exc_info=True,
                    )
            self.registry.unregister(session.session_id)
            evicted.append(session.session_id)
        return evicted

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Liveness sweep failed: error=%s", str(e), exc_info=True)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Liveness sweeper started: interval=%.1fs threshold=%.1fs",
            self.interval_s, self.timeout_ms / 1000,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Liveness sweeper stopped")

"""Shared test doubles: an in-memory transport and a fake clock."""
from pathlib import Path
import asyncio
import json
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

VALID_KEY = "test-api-key-123"


class FakeTransport:
    """Records frames the gateway sends; behaves like an open WebSocket."""

    def __init__(self, fail_sends: bool = False):
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self.open = True
        self.fail_sends = fail_sends

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_text(self, data: str) -> None:
        if self.fail_sends:
            raise RuntimeError("socket write failed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.open:
            return
        self.open = False
        self.close_code = code
        self.close_reason = reason

    def of_type(self, msg_type: str) -> list:
        return [m for m in self.sent if m.get("type") == msg_type]

    @property
    def last(self) -> dict:
        return self.sent[-1]


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


async def accept_key(api_key: str) -> dict:
    return {"valid": api_key == VALID_KEY}


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0)

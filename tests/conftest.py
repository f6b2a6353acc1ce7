"""Shared fixtures: an in-memory transport and fast configs."""

import asyncio
from typing import Any

import pytest

from chatrelay.core.config import DedupConfig, QueueConfig, SessionConfig
from chatrelay.core.metrics import metrics
from chatrelay.transport.base import Transport
from chatrelay.transport.events import TransportEvent


class FakeTransport(Transport):
    """Transport that records sends and lets tests inject events and failures."""

    name = "fake"

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.connect_calls = 0
        self.close_calls = 0
        self.stale_cleared = 0
        self.session_resets = 0
        # Exceptions raised by successive connect() calls (None = succeed)
        self.connect_failures: list[Exception | None] = []
        # Exceptions raised by successive send_message() calls (None = succeed)
        self.send_failures: list[Exception | None] = []
        self.send_delay = 0.0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_failures:
            failure = self.connect_failures.pop(0)
            if failure is not None:
                raise failure
        self._connected = True

    async def close(self) -> None:
        self.close_calls += 1
        self._connected = False

    async def send_message(self, recipient_id: str, text: str) -> dict[str, Any]:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_failures:
            failure = self.send_failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append((recipient_id, text))
        return {"ok": True, "id": f"msg-{len(self.sent)}"}

    async def clear_stale_state(self):
        self.stale_cleared += 1
        return []

    async def reset_session(self) -> None:
        self.session_resets += 1

    def push(self, event: TransportEvent) -> None:
        self._emit(event)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fast_queue_config():
    return QueueConfig(max_depth=50, send_attempts=3, send_backoff=0.01)


@pytest.fixture
def fast_session_config():
    return SessionConfig(
        init_retry_delay=0.01,
        reconnect_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_grace=0.1,
    )


@pytest.fixture
def dedup_config():
    return DedupConfig(capacity=100, ttl=60.0, coalesce_window=2.0)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)



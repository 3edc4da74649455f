from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from peerlink.errors import TransportClosedError, TransportError
from peerlink.manager import NetworkClientManager


class FakeTransport:
    """In-memory Transport: tests push events and drop the connection by hand."""

    def __init__(self) -> None:
        self.handlers: dict[str, list[Callable[..., None]]] = {}
        self.closed_callbacks: list[Callable[[BaseException | None], None]] = []
        self.invocations: list[tuple] = []
        self.log: list[str] = []
        self.open_times: list[float] = []
        self.open_calls = 0
        self.close_calls = 0
        self.is_open = False
        self.always_fail = False
        self.failures_left = 0
        self.invoke_error: Exception | None = None
        self.open_gate: asyncio.Event | None = None

    async def open(self) -> None:
        self.open_calls += 1
        self.open_times.append(asyncio.get_running_loop().time())
        self.log.append("open")
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.always_fail:
            raise TransportError("connection refused")
        if self.failures_left > 0:
            self.failures_left -= 1
            raise TransportError("connection refused")
        self.is_open = True

    async def close(self) -> None:
        self.close_calls += 1
        self.log.append("close")
        self.is_open = False

    def on(self, event_name: str, callback: Callable[..., None]) -> None:
        self.handlers.setdefault(event_name.lower(), []).append(callback)

    def off(self, event_name: str) -> None:
        self.handlers.pop(event_name.lower(), None)

    async def invoke(self, method: str, *args: object) -> object:
        if not self.is_open:
            raise TransportClosedError("not open")
        self.invocations.append((method, *args))
        if self.invoke_error is not None:
            raise self.invoke_error
        return None

    def on_closed(self, callback: Callable[[BaseException | None], None]) -> None:
        self.closed_callbacks.append(callback)

    def emit(self, event_name: str, *args: object) -> None:
        for callback in list(self.handlers.get(event_name.lower(), [])):
            callback(*args)

    def drop(self, error: BaseException | None = None) -> None:
        self.is_open = False
        self.log.append("dropped")
        for callback in list(self.closed_callbacks):
            callback(error)


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def manager(transport: FakeTransport) -> NetworkClientManager:
    return NetworkClientManager(transport, retry_delay_ms=20)


@pytest.fixture
def eventually():
    return _eventually

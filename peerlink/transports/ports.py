"""Ports (interfaces) for transports.

The manager depends only on these contracts; concrete transports (hub
websocket, XMPP room) live beside this module.
"""

from __future__ import annotations

from typing import Callable, Protocol

from aiohttp.abc import AbstractCookieJar


EventCallback = Callable[..., None]
ClosedCallback = Callable[[BaseException | None], None]


class CookieProvider(Protocol):
    """Externally managed cookie/session context."""

    def get_cookie_jar(self) -> AbstractCookieJar: ...


class Transport(Protocol):
    """Bidirectional RPC/event channel to the presence server.

    Event names are matched case-insensitively by on(), off() and dispatch.
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    def on(self, event_name: str, callback: EventCallback) -> None: ...

    def off(self, event_name: str) -> None: ...

    async def invoke(self, method: str, *args: object) -> object: ...

    def on_closed(self, callback: ClosedCallback) -> None: ...

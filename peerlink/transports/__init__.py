"""Transports for the presence server.

`create_transport` maps a configured transport name to its implementation.
Callers should depend on the `Transport` port.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from peerlink.cookies import SessionCookies
from peerlink.transports.ports import CookieProvider, Transport

if TYPE_CHECKING:
    from peerlink.config import ClientConfig


def create_transport(
    config: ClientConfig,
    *,
    cookies: CookieProvider | None = None,
) -> Transport:
    name = (config.transport or "").strip().lower()

    if name == "hub":
        from peerlink.transports.hub import HubTransport

        if cookies is None:
            cookies = SessionCookies(config.cookies, url=config.base_url)
        return HubTransport(
            config.url,
            cookies=cookies,
            skip_negotiation=config.skip_negotiation,
            invoke_timeout_s=config.invoke_timeout_s,
            keepalive_s=config.keepalive_s,
        )

    raise ValueError(f"Unknown transport: {config.transport}")


__all__ = ["CookieProvider", "Transport", "create_transport"]

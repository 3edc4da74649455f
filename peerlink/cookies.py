"""Cookie/session provider backed by an aiohttp cookie jar."""

from __future__ import annotations

from http.cookies import SimpleCookie

import aiohttp
from yarl import URL


class SessionCookies:
    """Holds the cookies shared with the presence server.

    The jar is created lazily because aiohttp binds cookie jars to the running
    event loop.
    """

    def __init__(self, cookies: dict[str, str] | None = None, *, url: str | None = None):
        self._initial = dict(cookies or {})
        self._url = url
        self._jar: aiohttp.CookieJar | None = None

    def get_cookie_jar(self) -> aiohttp.CookieJar:
        if self._jar is None:
            # unsafe=True so IP-address hosts (local dev servers) keep cookies.
            self._jar = aiohttp.CookieJar(unsafe=True)
            if self._initial:
                self._jar.update_cookies(
                    self._initial, URL(self._url) if self._url else URL()
                )
        return self._jar

    def set(self, name: str, value: str) -> None:
        self._initial[name] = value
        if self._jar is not None:
            self._jar.update_cookies(
                {name: value}, URL(self._url) if self._url else URL()
            )


def parse_cookie_header(raw: str) -> dict[str, str]:
    """Parse `name=value; name2=value2` into a mapping."""
    raw = (raw or "").strip()
    if not raw:
        return {}
    parsed = SimpleCookie()
    parsed.load(raw)
    return {key: morsel.value for key, morsel in parsed.items()}

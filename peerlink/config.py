"""Client configuration loaded from the environment (call load_env() first)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from peerlink.cookies import parse_cookie_header

log = logging.getLogger("peerlink")

_PREFIX = "PEERLINK_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_number(name: str, default: str, kind: type = int):
    raw = (os.getenv(name) or "").strip() or default
    try:
        value = kind(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


@dataclass(frozen=True)
class ClientConfig:
    base_url: str
    socket_path: str
    retry_delay_ms: int
    transport: str = "hub"
    invoke_timeout_s: float = 30.0
    keepalive_s: float = 15.0
    skip_negotiation: bool = False
    cookies: dict[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.socket_path}"


def load_env(env_path: Path | None = None) -> int:
    """Load a .env file into os.environ and return how many PEERLINK_* keys it set.

    Accepts `KEY=value`, `export KEY=value` and quoted values; comments and
    malformed lines are skipped. Values in the file override the process
    environment.
    """
    if env_path is None:
        env_path = Path.cwd() / ".env"

    if not env_path.exists():
        log.debug("No env file at %s", env_path)
        return 0

    loaded = 0
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip().removeprefix("export ").strip()
        if not key:
            continue
        os.environ[key] = val.strip().strip('"').strip("'")
        if key.startswith(_PREFIX):
            loaded += 1

    log.info("Loaded %d %s* setting(s) from %s", loaded, _PREFIX, env_path)
    return loaded


def get_client_config() -> ClientConfig:
    """Get client configuration from environment."""
    base_url = (os.getenv("PEERLINK_BASE_URL") or "http://127.0.0.1:5000").strip()
    socket_path = (os.getenv("PEERLINK_SOCKET_PATH") or "/hub").strip()
    transport = (os.getenv("PEERLINK_TRANSPORT") or "hub").strip().lower()

    return ClientConfig(
        base_url=base_url.rstrip("/"),
        socket_path=socket_path,
        retry_delay_ms=_env_number("PEERLINK_RETRY_DELAY_MS", "5000"),
        transport=transport,
        invoke_timeout_s=_env_number("PEERLINK_INVOKE_TIMEOUT_S", "30", float),
        keepalive_s=_env_number("PEERLINK_KEEPALIVE_S", "15", float),
        skip_negotiation=_env_flag("PEERLINK_SKIP_NEGOTIATION"),
        cookies=parse_cookie_header(os.getenv("PEERLINK_COOKIES", "")),
    )

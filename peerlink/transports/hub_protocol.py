"""JSON hub protocol framing.

Every frame is a JSON object terminated by the ASCII record separator. A
websocket text message may carry several frames.
"""

from __future__ import annotations

import json
from typing import Iterator

RECORD_SEPARATOR = "\x1e"

INVOCATION = 1
STREAM_ITEM = 2
COMPLETION = 3
STREAM_INVOCATION = 4
CANCEL_INVOCATION = 5
PING = 6
CLOSE = 7

HANDSHAKE_REQUEST = {"protocol": "json", "version": 1}


def encode_frame(message: dict) -> str:
    return json.dumps(message, ensure_ascii=True, separators=(",", ":")) + RECORD_SEPARATOR


def iter_frames(data: str) -> Iterator[dict]:
    """Yield each JSON frame in `data`.

    Raises ValueError for a frame that is not a JSON object.
    """
    for raw in data.split(RECORD_SEPARATOR):
        if not raw.strip():
            continue
        frame = json.loads(raw)
        if not isinstance(frame, dict):
            raise ValueError(f"hub frame is not an object: {raw[:80]!r}")
        yield frame


def invocation(target: str, arguments: list, invocation_id: str | None = None) -> dict:
    message: dict[str, object] = {
        "type": INVOCATION,
        "target": target,
        "arguments": arguments,
    }
    if invocation_id is not None:
        message["invocationId"] = invocation_id
    return message


def ping() -> dict:
    return {"type": PING}


def close(error: str | None = None) -> dict:
    message: dict[str, object] = {"type": CLOSE}
    if error:
        message["error"] = error
    return message


def websocket_url(http_url: str, token: str | None) -> str:
    """Rewrite an http(s) hub URL to its ws(s) form, adding the connection id."""
    if http_url.startswith("https://"):
        url = "wss://" + http_url[len("https://"):]
    elif http_url.startswith("http://"):
        url = "ws://" + http_url[len("http://"):]
    else:
        url = http_url
    if token:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}id={token}"
    return url

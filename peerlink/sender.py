"""Outbound dispatcher: best-effort broadcast of typed payloads to all peers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Callable

from peerlink.handlers import CorrelationId, encode_json, normalize_id
from peerlink.transports.ports import Transport

log = logging.getLogger("peerlink")

SEND_TO_ALL = "SendToAll"


class OutboundDispatcher:
    """Relays payloads through the server's fan-out procedure.

    Sends are fire-and-forget: the request runs in a background task and any
    failure is logged, never raised to the caller.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        is_connected: Callable[[], bool],
        procedure: str = SEND_TO_ALL,
    ):
        self._transport = transport
        self._is_connected = is_connected
        self.procedure = procedure
        self._tasks: set[asyncio.Task] = set()

    def send_to_all(
        self,
        event_name: str,
        correlation_id: CorrelationId,
        payload: object,
        *,
        encode: Callable[[object], str] = encode_json,
    ) -> asyncio.Task | None:
        if not self._is_connected():
            log.debug("Not connected; dropping %s", event_name)
            return None

        try:
            body = encode(payload)
        except Exception:
            log.exception("Failed to serialize payload for %s", event_name)
            return None

        task = asyncio.create_task(
            self._send(event_name, normalize_id(correlation_id), body)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, event_name: str, correlation_id: str, body: str) -> None:
        try:
            await self._transport.invoke(self.procedure, event_name, correlation_id, body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"{self.procedure} {event_name} failed: {e}")

    async def drain(self) -> None:
        """Wait for every in-flight send to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

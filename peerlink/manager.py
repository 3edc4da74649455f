"""Network client manager - one resilient session with the presence server."""

from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, Callable

from peerlink.handlers import CorrelationId, Decoder, HandlerRegistry, encode_json
from peerlink.roster import Peer, PeerRoster
from peerlink.sender import OutboundDispatcher
from peerlink.transports import create_transport
from peerlink.transports.ports import CookieProvider, Transport

if TYPE_CHECKING:
    from peerlink.config import ClientConfig

log = logging.getLogger("peerlink")

# Server-pushed presence events, both carrying (display_name, connection_id).
PEER_JOINED = "OnConnected"
PEER_LEFT = "OnDisconnected"


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    DISPOSED = "disposed"


class NetworkClientManager:
    """Keeps a single logical connection alive and tracks who else is present.

    - connect() retries forever at a fixed delay until connected or disposed.
    - A transport closure while connected emits on_disconnected once, clears
      the roster, then re-enters the same retry loop.
    - Join/leave events for the local identity are ignored.
    - dispose() stops everything; afterwards every public call is a no-op.

    All transport callbacks run on the event loop, so the roster has a single
    writer.
    """

    def __init__(self, transport: Transport, *, retry_delay_ms: int):
        if retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must not be negative")
        self._transport = transport
        self.retry_delay_ms = retry_delay_ms

        self.on_connected: Callable[[], None] | None = None
        self.on_disconnected: Callable[[], None] | None = None
        self.on_peer_connected: Callable[[Peer], None] | None = None
        self.on_peer_disconnected: Callable[[Peer], None] | None = None

        self._state = ConnectionState.IDLE
        self._user_name: str | None = None
        self.roster = PeerRoster()
        self.handlers = HandlerRegistry(transport)
        self._sender = OutboundDispatcher(transport, is_connected=lambda: self.connected)

        self._connect_lock = asyncio.Lock()
        self._connected_event = asyncio.Event()
        self._disposed_event = asyncio.Event()
        self._reconnect_task: asyncio.Task | None = None

        transport.on(PEER_JOINED, self._client_connected)
        transport.on(PEER_LEFT, self._client_disconnected)
        transport.on_closed(self._on_transport_closed)

    @classmethod
    def from_config(
        cls, config: ClientConfig, *, cookies: CookieProvider | None = None
    ) -> NetworkClientManager:
        transport = create_transport(config, cookies=cookies)
        return cls(transport, retry_delay_ms=config.retry_delay_ms)

    # -------------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def disposed(self) -> bool:
        return self._state is ConnectionState.DISPOSED

    @property
    def user_name(self) -> str | None:
        return self._user_name

    @property
    def peers(self) -> list[Peer]:
        return self.roster.snapshot()

    def _set_state(self, state: ConnectionState) -> None:
        if self.disposed:
            return
        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _emit(self, callback: Callable[..., None] | None, *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            log.exception("Observer %r failed", callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, user_name: str) -> None:
        """Connect as `user_name`.

        Returns once connected or disposed. While the server is unreachable
        this keeps retrying every `retry_delay_ms` and does not return.
        """
        self._user_name = user_name
        if self.disposed:
            return

        async with self._connect_lock:
            while not self.disposed and not self.connected:
                self._set_state(ConnectionState.CONNECTING)
                try:
                    await self._transport.open()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if self.disposed:
                        return
                    log.error("Connection to server failed: %s", exc, exc_info=exc)
                    self._set_state(ConnectionState.RETRYING)
                    if not await self._wait_retry_delay():
                        return
                    continue

                if self.disposed:
                    # dispose() ran while open() was in flight.
                    await self._close_transport()
                    return
                self._connected_to_server()

    async def _wait_retry_delay(self) -> bool:
        """Sleep the fixed retry delay; False if disposed meanwhile."""
        try:
            await asyncio.wait_for(
                self._disposed_event.wait(), self.retry_delay_ms / 1000.0
            )
        except asyncio.TimeoutError:
            pass
        return not self.disposed

    def _connected_to_server(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        log.info("Connection started")
        self._emit(self.on_connected)

    def _disconnected_from_server(self) -> None:
        self._set_state(ConnectionState.RETRYING)
        log.info("Disconnected")
        self._emit(self.on_disconnected)
        # Peers are rebuilt from fresh join events after reconnecting.
        for peer in self.roster.clear():
            self._emit(self.on_peer_disconnected, peer)

    def _on_transport_closed(self, error: BaseException | None) -> None:
        if self.disposed:
            return
        if not self.connected:
            # A connect loop is already running and owns the retry.
            log.debug("Transport closed while %s", self._state.value)
            return
        log.error("Connection to server lost: %s", error or "closed by server")
        self._disconnected_from_server()
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        if not await self._wait_retry_delay():
            return
        await self.connect(self._user_name or "")

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Failed to close transport")

    async def dispose(self) -> None:
        """Close the transport and stop retrying. Safe to call at any time."""
        if self.disposed:
            return
        self._state = ConnectionState.DISPOSED
        self._connected_event.clear()
        self._disposed_event.set()

        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        await self._sender.cancel_all()
        await self._close_transport()
        log.info("Disposed")

    # -------------------------------------------------------------------------
    # Presence events
    # -------------------------------------------------------------------------

    def _client_connected(self, user_name: str, connection_id: str, *_: object) -> None:
        user_name = str(user_name)
        if user_name == self._user_name:
            return
        if not self.connected:
            log.debug("Ignoring join for %s while %s", user_name, self._state.value)
            return

        known = user_name in self.roster
        i = self.roster.add(user_name, str(connection_id))
        if known:
            log.debug("Peer %s rejoined; connection id refreshed", user_name)
            return

        log.info(f"Peer connected: {user_name}")
        self._emit(self.on_peer_connected, self.roster[i])

    def _client_disconnected(self, user_name: str, connection_id: str, *_: object) -> None:
        user_name = str(user_name)
        if user_name == self._user_name:
            return
        if not self.connected:
            log.debug("Ignoring leave for %s while %s", user_name, self._state.value)
            return

        peer = self.roster.find(user_name)
        if peer is None:
            log.error("Peer not found on disconnection: %s", user_name)
            return

        log.info(f"Peer disconnected: {user_name}")
        self._emit(self.on_peer_disconnected, peer)
        self.roster.remove(user_name)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def register_handler(
        self,
        event_name: str,
        correlation_id: CorrelationId,
        callback: Callable[..., None],
        *,
        payload_type: type | None = None,
        decode: Decoder | None = None,
    ) -> None:
        if self.disposed:
            return
        self.handlers.register(
            event_name,
            correlation_id,
            callback,
            payload_type=payload_type,
            decode=decode,
        )

    def register_numeric_handler(
        self,
        event_name: str,
        correlation_id: CorrelationId,
        callback: Callable[[float], None],
    ) -> None:
        if self.disposed:
            return
        self.handlers.register_numeric(event_name, correlation_id, callback)

    def register_int_handler(self, event_name: str, callback: Callable[[int], None]) -> None:
        if self.disposed:
            return
        self.handlers.register_int(event_name, callback)

    def unregister_handler(self, event_name: str) -> bool:
        if self.disposed:
            return False
        if event_name.lower() in (PEER_JOINED.lower(), PEER_LEFT.lower()):
            log.warning("Refusing to unregister presence event %s", event_name)
            return False
        return self.handlers.unregister(event_name)

    # -------------------------------------------------------------------------
    # Sender
    # -------------------------------------------------------------------------

    def send_to_all(
        self,
        event_name: str,
        correlation_id: CorrelationId,
        payload: object,
        *,
        encode: Callable[[object], str] = encode_json,
    ) -> asyncio.Task | None:
        """Broadcast `payload` to every peer. Dropped silently unless connected."""
        if self.disposed:
            return None
        return self._sender.send_to_all(event_name, correlation_id, payload, encode=encode)

    async def flush(self) -> None:
        """Wait for in-flight sends to finish."""
        await self._sender.drain()

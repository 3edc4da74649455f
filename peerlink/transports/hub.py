"""Hub transport: JSON hub protocol over an aiohttp websocket.

Owns the HTTP client session, the websocket, and the background reader and
keep-alive tasks. Frame encoding lives in hub_protocol.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress

import aiohttp

from peerlink.errors import (
    HubHandshakeError,
    HubInvocationError,
    TransportClosedError,
    TransportError,
)
from peerlink.transports import hub_protocol as proto
from peerlink.transports.ports import ClosedCallback, CookieProvider, EventCallback

log = logging.getLogger("peerlink.hub")


class HubTransport:
    def __init__(
        self,
        url: str,
        *,
        cookies: CookieProvider | None = None,
        skip_negotiation: bool = False,
        invoke_timeout_s: float = 30.0,
        keepalive_s: float = 15.0,
        handshake_timeout_s: float = 15.0,
    ):
        self.url = url
        self._cookies = cookies
        self.skip_negotiation = skip_negotiation
        self.invoke_timeout_s = invoke_timeout_s
        self.keepalive_s = keepalive_s
        self.handshake_timeout_s = handshake_timeout_s

        # Targets are matched case-insensitively, like hub servers do.
        self._handlers: dict[str, list[EventCallback]] = {}
        self._closed_callbacks: list[ClosedCallback] = []

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._pending: dict[str, tuple[str, asyncio.Future]] = {}
        self._next_invocation_id = 0
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def on(self, event_name: str, callback: EventCallback) -> None:
        self._handlers.setdefault(event_name.lower(), []).append(callback)

    def off(self, event_name: str) -> None:
        self._handlers.pop(event_name.lower(), None)

    def on_closed(self, callback: ClosedCallback) -> None:
        self._closed_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            jar = self._cookies.get_cookie_jar() if self._cookies else None
            self._session = aiohttp.ClientSession(cookie_jar=jar)
        return self._session

    async def _negotiate(self, session: aiohttp.ClientSession) -> str | None:
        url = f"{self.url}/negotiate"
        async with session.post(url, params={"negotiateVersion": "1"}) as resp:
            text = await resp.text()
            if resp.status >= 400:
                detail = text.strip() or resp.reason
                raise TransportError(f"Hub negotiate HTTP {resp.status}: {detail}")
        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            raise TransportError(f"Hub negotiate returned invalid JSON: {text[:80]!r}") from e
        if not isinstance(data, dict):
            raise TransportError("Hub negotiate returned a non-object response")
        if data.get("error"):
            raise TransportError(f"Hub negotiate failed: {data['error']}")
        if data.get("url"):
            raise TransportError("Hub negotiate redirect is not supported")
        token = data.get("connectionToken") or data.get("connectionId")
        return str(token) if token else None

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        """Run the protocol handshake; returns any frames that followed it."""
        await ws.send_str(proto.encode_frame(proto.HANDSHAKE_REQUEST))
        try:
            msg = await asyncio.wait_for(ws.receive(), self.handshake_timeout_s)
        except asyncio.TimeoutError as e:
            raise HubHandshakeError("timed out waiting for handshake response") from e
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise HubHandshakeError(f"unexpected {msg.type.name} message")

        head, _, rest = str(msg.data).partition(proto.RECORD_SEPARATOR)
        try:
            response = json.loads(head) if head.strip() else {}
        except json.JSONDecodeError as e:
            raise HubHandshakeError(f"invalid response {head[:80]!r}") from e
        if not isinstance(response, dict):
            raise HubHandshakeError(f"invalid response {head[:80]!r}")
        if response.get("error"):
            raise HubHandshakeError(str(response["error"]))
        return rest

    async def open(self) -> None:
        if self.connected:
            return
        self._closing = False
        session = self._ensure_session()
        try:
            token = None if self.skip_negotiation else await self._negotiate(session)
            ws = await session.ws_connect(proto.websocket_url(self.url, token))
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Hub connect to {self.url} failed: {e}") from e

        try:
            backlog = await self._handshake(ws)
        except BaseException:
            await ws.close()
            raise

        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws, backlog))
        if self.keepalive_s > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws))
        log.info("Hub connected: %s", self.url)

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            with suppress(Exception):
                await ws.send_str(proto.encode_frame(proto.close()))
            await ws.close()

        for task in (self._reader_task, self._keepalive_task):
            if task and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._keepalive_task = None

        self._fail_pending(TransportClosedError("Hub transport closed"))
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    async def invoke(self, method: str, *args: object) -> object:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportClosedError(f"Hub transport is not open (invoke {method})")

        self._next_invocation_id += 1
        invocation_id = str(self._next_invocation_id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[invocation_id] = (method, future)
        try:
            await ws.send_str(
                proto.encode_frame(proto.invocation(method, list(args), invocation_id))
            )
            return await asyncio.wait_for(future, self.invoke_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Hub invocation {method} timed out") from e
        finally:
            self._pending.pop(invocation_id, None)

    def _fail_pending(self, error: BaseException) -> None:
        pending = self._pending
        self._pending = {}
        for _, future in pending.values():
            if not future.done():
                future.set_exception(error)

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def _handle_frame(self, frame: dict) -> BaseException | None:
        """Dispatch one frame. Returns an error only for a close frame."""
        kind = frame.get("type")

        if kind == proto.INVOCATION:
            target = str(frame.get("target") or "")
            arguments = frame.get("arguments") or []
            if not isinstance(arguments, list):
                log.debug("Dropping invocation %s with non-list arguments", target)
                return None
            for callback in list(self._handlers.get(target.lower(), [])):
                try:
                    callback(*arguments)
                except Exception:
                    log.exception("Hub handler for %s failed", target)
            return None

        if kind == proto.COMPLETION:
            invocation_id = str(frame.get("invocationId"))
            entry = self._pending.get(invocation_id)
            if entry is None:
                return None
            method, future = entry
            if future.done():
                return None
            if frame.get("error"):
                future.set_exception(
                    HubInvocationError(
                        method, invocation_id=invocation_id, error=str(frame["error"])
                    )
                )
            else:
                future.set_result(frame.get("result"))
            return None

        if kind == proto.CLOSE:
            error = frame.get("error")
            return TransportError(
                f"Hub closed the connection: {error}" if error else "Hub closed the connection"
            )

        # Pings and streaming frames need no action.
        return None

    def _handle_text(self, data: str) -> BaseException | None:
        try:
            frames = list(proto.iter_frames(data))
        except ValueError as e:
            log.warning("Dropping malformed hub message: %s", e)
            return None
        for frame in frames:
            error = self._handle_frame(frame)
            if error is not None:
                return error
        return None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse, backlog: str) -> None:
        error: BaseException | None = None
        remote_closed = False
        try:
            if backlog:
                error = self._handle_text(backlog)
                remote_closed = error is not None
            if not remote_closed:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        error = self._handle_text(msg.data)
                        if error is not None:
                            break
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        error = ws.exception() or TransportError("Hub websocket error")
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e

        if self._ws is ws:
            self._ws = None
        if not ws.closed:
            await ws.close()
        if self._keepalive_task and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._fail_pending(error or TransportClosedError("Hub connection closed"))

        if self._closing:
            return
        log.warning("Hub connection lost: %s", error or "closed by server")
        for callback in list(self._closed_callbacks):
            try:
                callback(error)
            except Exception:
                log.exception("Hub closed callback failed")

    async def _keepalive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while not ws.closed:
                await asyncio.sleep(self.keepalive_s)
                if ws.closed:
                    return
                await ws.send_str(proto.encode_frame(proto.ping()))
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.debug(f"Hub keep-alive stopped: {e}")

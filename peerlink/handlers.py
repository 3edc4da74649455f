"""Handler registry: typed, correlation-filtered inbound message handlers.

Each registration is an independent transport subscription for one event
name. Events arrive as `(correlation_id, payload)`; the payload is decoded
only when the id matches the registration's id, so handlers addressed to
other recipients never pay for (or fail on) decoding.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import uuid
from typing import Any, Callable, TypeVar, get_origin

from peerlink.transports.ports import Transport

log = logging.getLogger("peerlink")

T = TypeVar("T")

CorrelationId = uuid.UUID | str
Decoder = Callable[[Any], Any]


def normalize_id(value: object) -> str:
    """Canonical text form of a correlation id (UUIDs compare case-insensitively)."""
    if isinstance(value, uuid.UUID):
        return str(value)
    text = str(value).strip()
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text


def decode_json(raw: object) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        raise TypeError(f"expected JSON text, got {type(raw).__name__}")
    return json.loads(raw)


def encode_json(payload: object) -> str:
    """Encode an outbound payload; dataclass instances become JSON objects."""
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":"))


def decoder_for(payload_type: type | None) -> Decoder:
    """Build a JSON decoder that yields `payload_type`.

    Dataclasses are constructed from the decoded object's fields, ignoring
    members the dataclass does not declare; plain JSON types are checked with
    isinstance. None keeps the raw decoded JSON.

    Raises TypeError for anything that is not a plain class (e.g. `list[int]`).
    """
    if payload_type is None:
        return decode_json
    if get_origin(payload_type) is not None or not isinstance(payload_type, type):
        raise TypeError(f"payload_type must be a class, got {payload_type!r}")

    if dataclasses.is_dataclass(payload_type):
        names = {f.name for f in dataclasses.fields(payload_type) if f.init}

        def decode_dataclass(raw: object) -> Any:
            obj = decode_json(raw)
            if not isinstance(obj, dict):
                raise TypeError(
                    f"expected a JSON object for {payload_type.__name__}, got {type(obj).__name__}"
                )
            return payload_type(**{k: v for k, v in obj.items() if k in names})

        return decode_dataclass

    def decode_plain(raw: object) -> Any:
        obj = decode_json(raw)
        if payload_type is float and isinstance(obj, int) and not isinstance(obj, bool):
            return float(obj)
        if not isinstance(obj, payload_type) or (
            isinstance(obj, bool) and payload_type is not bool
        ):
            raise TypeError(f"expected {payload_type.__name__}, got {type(obj).__name__}")
        return obj

    return decode_plain


class HandlerRegistry:
    """Tracks subscriptions per event name, case-insensitively like the transport."""

    def __init__(self, transport: Transport):
        self._transport = transport
        self._subscriptions: dict[str, int] = {}

    def __contains__(self, event_name: object) -> bool:
        return isinstance(event_name, str) and event_name.lower() in self._subscriptions

    def subscription_count(self, event_name: str) -> int:
        return self._subscriptions.get(event_name.lower(), 0)

    def _subscribe(self, event_name: str, callback: Callable[..., None]) -> None:
        self._transport.on(event_name, callback)
        key = event_name.lower()
        self._subscriptions[key] = self._subscriptions.get(key, 0) + 1

    def register(
        self,
        event_name: str,
        correlation_id: CorrelationId,
        callback: Callable[[T], None],
        *,
        payload_type: type[T] | None = None,
        decode: Decoder | None = None,
    ) -> None:
        """Subscribe `callback` to `event_name` for messages tagged `correlation_id`."""
        expected = normalize_id(correlation_id)
        decoder = decode or decoder_for(payload_type)

        def on_event(*args: object) -> None:
            if len(args) < 2:
                log.debug("Dropping %s event with %d argument(s)", event_name, len(args))
                return
            received_id, raw = args[0], args[1]
            if normalize_id(received_id) != expected:
                return
            try:
                value = decoder(raw)
            except Exception:
                log.exception("Failed to deserialize message for %s", event_name)
                return
            try:
                callback(value)
            except Exception:
                log.exception("Handler for %s failed", event_name)

        self._subscribe(event_name, on_event)

    def register_numeric(
        self,
        event_name: str,
        correlation_id: CorrelationId,
        callback: Callable[[float], None],
    ) -> None:
        """Subscribe to `(id, number)` events; the value arrives pre-typed."""
        expected = normalize_id(correlation_id)

        def on_event(*args: object) -> None:
            if len(args) < 2:
                log.debug("Dropping %s event with %d argument(s)", event_name, len(args))
                return
            received_id, value = args[0], args[1]
            if normalize_id(received_id) != expected:
                return
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                log.error(
                    "Expected a number for %s, got %s", event_name, type(value).__name__
                )
                return
            try:
                callback(float(value))
            except Exception:
                log.exception("Handler for %s failed", event_name)

        self._subscribe(event_name, on_event)

    def register_int(self, event_name: str, callback: Callable[[int], None]) -> None:
        """Subscribe to `(name, value)` events whose value is integer text.

        No correlation filter; the first argument is the sender's name.
        """

        def on_event(*args: object) -> None:
            if len(args) < 2:
                log.debug("Dropping %s event with %d argument(s)", event_name, len(args))
                return
            raw = args[1]
            try:
                value = int(str(raw).strip())
            except ValueError:
                log.error("Failed to deserialize value for %s: %r", event_name, raw)
                return
            try:
                callback(value)
            except Exception:
                log.exception("Handler for %s failed", event_name)

        self._subscribe(event_name, on_event)

    def unregister(self, event_name: str) -> bool:
        """Remove every subscription for `event_name`. Returns False if none existed."""
        if self._subscriptions.pop(event_name.lower(), None) is None:
            return False
        self._transport.off(event_name)
        return True

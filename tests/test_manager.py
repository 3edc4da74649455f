from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

import pytest

from peerlink.config import ClientConfig
from peerlink.errors import TransportError
from peerlink.manager import PEER_JOINED, PEER_LEFT, ConnectionState, NetworkClientManager
from peerlink.roster import Peer
from peerlink.transports.hub import HubTransport

ROOM = uuid.UUID("6f1c2a9e-1d1b-4c36-9a4e-0f4d8c1b2a77")


@dataclass
class Move:
    x: int
    y: int


# -----------------------------------------------------------------------------
# Connect / retry / dispose
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_emits_connected_once_per_transition(manager, transport):
    calls = []
    manager.on_connected = lambda: calls.append("connected")

    await manager.connect("alice")
    await manager.connect("alice")

    assert calls == ["connected"]
    assert transport.open_calls == 1
    assert manager.state is ConnectionState.CONNECTED
    assert manager.user_name == "alice"


@pytest.mark.asyncio
async def test_transport_closure_emits_disconnected_before_retry(manager, transport, eventually):
    manager.on_connected = lambda: transport.log.append("on_connected")
    manager.on_disconnected = lambda: transport.log.append("on_disconnected")

    await manager.connect("alice")
    transport.drop(TransportError("connection reset"))
    # A second closure report while already retrying is not a new transition.
    transport.drop(None)

    assert not manager.connected
    await eventually(lambda: manager.connected)

    assert transport.log == [
        "open",
        "on_connected",
        "dropped",
        "on_disconnected",
        "dropped",
        "open",
        "on_connected",
    ]


@pytest.mark.asyncio
async def test_failed_open_retries_at_fixed_interval_until_disposed(manager, transport, eventually):
    transport.always_fail = True
    task = asyncio.create_task(manager.connect("alice"))

    # Ten attempts at 20ms each; an exponential backoff would take seconds.
    await eventually(lambda: transport.open_calls >= 10)
    assert not task.done()
    assert manager.state in (ConnectionState.CONNECTING, ConnectionState.RETRYING)

    times = transport.open_times
    gaps = [b - a for a, b in zip(times, times[1:])]
    assert all(gap >= 0.015 for gap in gaps)

    await manager.dispose()
    await asyncio.wait_for(task, 1.0)
    attempts = transport.open_calls
    await asyncio.sleep(0.1)

    assert transport.open_calls == attempts
    assert manager.state is ConnectionState.DISPOSED


@pytest.mark.asyncio
async def test_failed_open_never_emits_disconnected(manager, transport, eventually):
    calls = []
    manager.on_disconnected = lambda: calls.append("disconnected")
    manager.on_connected = lambda: calls.append("connected")
    transport.failures_left = 2

    await manager.connect("alice")

    assert calls == ["connected"]
    assert transport.open_calls == 3


@pytest.mark.asyncio
async def test_dispose_during_retry_delay_cancels_scheduled_attempt(transport, eventually):
    manager = NetworkClientManager(transport, retry_delay_ms=5000)
    transport.always_fail = True
    task = asyncio.create_task(manager.connect("alice"))

    await eventually(lambda: transport.open_calls == 1)
    await asyncio.sleep(0.02)
    await manager.dispose()

    await asyncio.wait_for(task, 0.5)
    assert transport.open_calls == 1


@pytest.mark.asyncio
async def test_dispose_after_closure_stops_reconnect(transport):
    manager = NetworkClientManager(transport, retry_delay_ms=5000)
    await manager.connect("alice")

    transport.drop(TransportError("gone"))
    await manager.dispose()
    await asyncio.sleep(0.05)

    assert transport.open_calls == 1
    assert transport.close_calls == 1
    assert manager.disposed


@pytest.mark.asyncio
async def test_dispose_while_open_in_flight_does_not_connect(manager, transport, eventually):
    gate = asyncio.Event()
    transport.open_gate = gate
    connected = []
    manager.on_connected = lambda: connected.append(True)

    task = asyncio.create_task(manager.connect("alice"))
    await eventually(lambda: transport.open_calls == 1)
    await manager.dispose()
    gate.set()
    await asyncio.wait_for(task, 1.0)

    assert connected == []
    assert not manager.connected
    # Closed once by dispose() and once more for the late-completing open.
    assert transport.close_calls == 2


@pytest.mark.asyncio
async def test_operations_after_dispose_are_noops(manager, transport):
    await manager.dispose()
    await manager.dispose()

    await manager.connect("alice")
    manager.register_handler("Move", ROOM, lambda value: None)
    manager.register_numeric_handler("Speed", ROOM, lambda value: None)

    assert transport.open_calls == 0
    assert transport.close_calls == 1
    assert "move" not in transport.handlers
    assert "speed" not in transport.handlers
    assert manager.send_to_all("Move", ROOM, {"x": 1}) is None
    assert manager.unregister_handler("Move") is False
    assert transport.invocations == []


@pytest.mark.asyncio
async def test_wait_connected(manager, transport):
    transport.always_fail = True
    task = asyncio.create_task(manager.connect("alice"))

    assert await manager.wait_connected(timeout=0.05) is False

    transport.always_fail = False
    assert await manager.wait_connected(timeout=1.0) is True
    await asyncio.wait_for(task, 1.0)


@pytest.mark.asyncio
async def test_observer_errors_do_not_break_connect(manager, transport):
    def boom():
        raise RuntimeError("observer failed")

    manager.on_connected = boom

    await manager.connect("alice")

    assert manager.connected


# -----------------------------------------------------------------------------
# Presence
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_presence_scenario(manager, transport):
    joined: list[Peer] = []
    seen_on_leave: list[tuple[Peer, list[Peer]]] = []
    manager.on_peer_connected = joined.append
    manager.on_peer_disconnected = lambda peer: seen_on_leave.append((peer, manager.peers))

    await manager.connect("alice")

    transport.emit(PEER_JOINED, "alice", "c1")
    assert manager.peers == []
    assert joined == []

    transport.emit(PEER_JOINED, "bob", "c2")
    assert manager.peers == [Peer("bob", "c2")]
    assert joined == [Peer("bob", "c2")]

    transport.emit(PEER_LEFT, "bob", "c2")
    # Notified while the peer is still in the roster, then removed.
    assert seen_on_leave == [(Peer("bob", "c2"), [Peer("bob", "c2")])]
    assert manager.peers == []


@pytest.mark.asyncio
async def test_leave_for_unknown_peer_reports_once(manager, transport, caplog):
    left = []
    manager.on_peer_disconnected = left.append
    await manager.connect("alice")
    transport.emit(PEER_JOINED, "bob", "c2")

    caplog.clear()
    with caplog.at_level(logging.ERROR, logger="peerlink"):
        transport.emit(PEER_LEFT, "dave", "c4")

    not_found = [r for r in caplog.records if "Peer not found" in r.getMessage()]
    assert len(not_found) == 1
    assert left == []
    assert manager.peers == [Peer("bob", "c2")]


@pytest.mark.asyncio
async def test_local_identity_leave_is_ignored(manager, transport, caplog):
    await manager.connect("alice")

    with caplog.at_level(logging.ERROR, logger="peerlink"):
        transport.emit(PEER_LEFT, "alice", "c1")

    assert not [r for r in caplog.records if "Peer not found" in r.getMessage()]


@pytest.mark.asyncio
async def test_roster_stays_unique_and_excludes_self(manager, transport):
    joined = []
    manager.on_peer_connected = joined.append
    await manager.connect("alice")

    events = [
        (PEER_JOINED, "bob", "c2"),
        (PEER_JOINED, "alice", "c1"),
        (PEER_JOINED, "bob", "c3"),
        (PEER_JOINED, "carol", "c4"),
        (PEER_LEFT, "bob", "c3"),
        (PEER_LEFT, "bob", "c3"),
        (PEER_JOINED, "bob", "c5"),
        (PEER_LEFT, "alice", "c1"),
        (PEER_JOINED, "carol", "c6"),
    ]
    for event in events:
        transport.emit(*event)
        names = [p.display_name for p in manager.peers]
        assert len(names) == len(set(names))
        assert "alice" not in names

    assert manager.peers == [Peer("carol", "c6"), Peer("bob", "c5")]
    assert [p.display_name for p in joined] == ["bob", "carol", "bob"]


@pytest.mark.asyncio
async def test_presence_ignored_until_connected(manager, transport):
    transport.emit(PEER_JOINED, "bob", "c2")

    assert manager.peers == []


@pytest.mark.asyncio
async def test_disconnect_clears_roster_after_disconnected_notification(
    manager, transport, eventually
):
    order = []
    manager.on_disconnected = lambda: order.append("disconnected")
    manager.on_peer_disconnected = lambda peer: order.append(("left", peer.display_name))

    await manager.connect("alice")
    transport.emit(PEER_JOINED, "bob", "c2")
    transport.emit(PEER_JOINED, "carol", "c3")
    transport.drop(TransportError("reset"))

    assert order == ["disconnected", ("left", "bob"), ("left", "carol")]
    assert manager.peers == []

    await eventually(lambda: manager.connected)
    transport.emit(PEER_JOINED, "bob", "c7")
    assert manager.peers == [Peer("bob", "c7")]


# -----------------------------------------------------------------------------
# Handlers and sends
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_register_handler_filters_by_correlation_id(manager, transport):
    received = []
    manager.register_handler("Move", ROOM, received.append, payload_type=Move)

    transport.emit("Move", str(uuid.uuid4()), '{"x": 1, "y": 2}')
    transport.emit("Move", str(ROOM), '{"x": 3, "y": 4}')

    assert received == [Move(3, 4)]


@pytest.mark.asyncio
async def test_unregister_presence_events_is_refused(manager, transport):
    assert manager.unregister_handler(PEER_JOINED) is False
    assert PEER_JOINED.lower() in transport.handlers

    manager.register_int_handler("Score", lambda value: None)
    assert manager.unregister_handler("Score") is True
    assert "score" not in transport.handlers


@pytest.mark.asyncio
async def test_send_to_all_while_disconnected_is_dropped(manager, transport):
    assert manager.send_to_all("Move", ROOM, {"x": 1}) is None

    transport.always_fail = True
    task = asyncio.create_task(manager.connect("alice"))
    await asyncio.sleep(0.03)
    assert manager.send_to_all("Move", ROOM, {"x": 1}) is None

    await manager.dispose()
    await asyncio.wait_for(task, 1.0)
    assert transport.invocations == []


@pytest.mark.asyncio
async def test_send_to_all_relays_encoded_payload(manager, transport):
    await manager.connect("alice")

    task = manager.send_to_all("Move", ROOM, Move(1, 2))
    assert task is not None
    await task
    manager.send_to_all("Chat", ROOM, {"text": "hi"})
    await manager.flush()

    assert transport.invocations == [
        ("SendToAll", "Move", str(ROOM), '{"x":1,"y":2}'),
        ("SendToAll", "Chat", str(ROOM), '{"text":"hi"}'),
    ]


@pytest.mark.asyncio
async def test_send_failure_is_logged_not_raised(manager, transport, caplog):
    await manager.connect("alice")
    transport.invoke_error = TransportError("relay refused")

    with caplog.at_level(logging.WARNING, logger="peerlink"):
        task = manager.send_to_all("Move", ROOM, {"x": 1})
        await task

    assert "relay refused" in caplog.text
    assert task.exception() is None


@pytest.mark.asyncio
async def test_unserializable_payload_is_logged(manager, transport, caplog):
    await manager.connect("alice")

    with caplog.at_level(logging.ERROR, logger="peerlink"):
        assert manager.send_to_all("Move", ROOM, object()) is None

    assert "Failed to serialize" in caplog.text
    assert transport.invocations == []


def test_from_config_builds_hub_transport():
    cfg = ClientConfig(
        base_url="http://example.test:5000",
        socket_path="/game",
        retry_delay_ms=250,
        cookies={"session": "abc"},
    )

    manager = NetworkClientManager.from_config(cfg)

    assert isinstance(manager._transport, HubTransport)
    assert manager._transport.url == "http://example.test:5000/game"
    assert manager.retry_delay_ms == 250
    assert manager.state is ConnectionState.IDLE


def test_negative_retry_delay_rejected(transport):
    with pytest.raises(ValueError):
        NetworkClientManager(transport, retry_delay_ms=-1)

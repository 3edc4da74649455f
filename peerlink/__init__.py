"""Resilient presence/messaging client session manager."""

from peerlink.config import ClientConfig, get_client_config, load_env
from peerlink.cookies import SessionCookies
from peerlink.errors import (
    HubHandshakeError,
    HubInvocationError,
    PeerLinkError,
    TransportClosedError,
    TransportError,
)
from peerlink.manager import ConnectionState, NetworkClientManager
from peerlink.roster import Peer, PeerRoster
from peerlink.transports import Transport, create_transport

__all__ = [
    "ClientConfig",
    "ConnectionState",
    "HubHandshakeError",
    "HubInvocationError",
    "NetworkClientManager",
    "Peer",
    "PeerLinkError",
    "PeerRoster",
    "SessionCookies",
    "Transport",
    "TransportClosedError",
    "TransportError",
    "create_transport",
    "get_client_config",
    "load_env",
]

"""peerlink exceptions.

Transports raise these; the manager catches them at its boundary (the
connect loop, the send task, the handler wrapper) and logs them. Nothing in
the public manager surface re-raises a transport failure.
"""

from __future__ import annotations


class PeerLinkError(RuntimeError):
    """Base class for peerlink errors."""


class TransportError(PeerLinkError):
    """The transport could not open, send, or keep its connection."""


class TransportClosedError(TransportError):
    """Operation attempted on a transport that is not open."""


class HubHandshakeError(TransportError):
    """The hub rejected the protocol handshake."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"Hub handshake failed: {self.detail}"


class HubInvocationError(TransportError):
    """The hub reported an error completing an invocation."""

    def __init__(self, method: str, *, invocation_id: str, error: str):
        self.method = method
        self.invocation_id = invocation_id
        self.error = error
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"Hub invocation {self.method} ({self.invocation_id}) failed: {self.error}"

"""Peer roster: remote peers currently present in the session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class Peer:
    """A remote participant, identified by display name."""

    display_name: str
    connection_id: str


class PeerRoster:
    """Ordered peers keyed by display name (insertion order = join order).

    Display names are unique. `add` for a name already present refreshes its
    connection id in place instead of creating a second entry.
    """

    def __init__(self) -> None:
        self._peers: list[Peer] = []

    def __len__(self) -> int:
        return len(self._peers)

    def __iter__(self) -> Iterator[Peer]:
        return iter(list(self._peers))

    def __contains__(self, display_name: object) -> bool:
        return self.find_index(str(display_name)) >= 0

    def __getitem__(self, index: int) -> Peer:
        return self._peers[index]

    def snapshot(self) -> list[Peer]:
        return list(self._peers)

    def find_index(self, display_name: str) -> int:
        for i, peer in enumerate(self._peers):
            if peer.display_name == display_name:
                return i
        return -1

    def find(self, display_name: str) -> Peer | None:
        i = self.find_index(display_name)
        return self._peers[i] if i >= 0 else None

    def add(self, display_name: str, connection_id: str) -> int:
        """Add a peer and return its index."""
        peer = Peer(display_name=display_name, connection_id=connection_id)
        i = self.find_index(display_name)
        if i >= 0:
            self._peers[i] = peer
            return i
        self._peers.append(peer)
        return len(self._peers) - 1

    def remove_at(self, index: int) -> Peer:
        return self._peers.pop(index)

    def remove(self, display_name: str) -> Peer | None:
        i = self.find_index(display_name)
        if i < 0:
            return None
        return self._peers.pop(i)

    def clear(self) -> list[Peer]:
        """Drop every peer; returns what was removed, in join order."""
        removed = self._peers
        self._peers = []
        return removed

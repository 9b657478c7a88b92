"""Node roles, node descriptions and stores of known cluster nodes."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable


class NodeRole(IntEnum):
    """Role of a node in the cluster."""

    VOTER = 0
    STAND_BY = 1
    SPARE = 2

    def __str__(self) -> str:
        return _ROLE_NAMES[self]


_ROLE_NAMES = {
    NodeRole.VOTER: "voter",
    NodeRole.STAND_BY: "stand-by",
    NodeRole.SPARE: "spare",
}


@dataclass(frozen=True)
class NodeInfo:
    """Information about a single server."""

    id: int
    address: str
    role: NodeRole = NodeRole.VOTER


class NodeStore(ABC):
    """Source of candidate servers a client can dial to find the leader."""

    @abstractmethod
    def get(self) -> list[NodeInfo]:
        """Return the list of known servers."""

    @abstractmethod
    def set(self, servers: Iterable[NodeInfo]) -> None:
        """Replace the list of known servers."""


class InmemNodeStore(NodeStore):
    """A node store that keeps its servers in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._servers: list[NodeInfo] = []

    def get(self) -> list[NodeInfo]:
        with self._lock:
            return list(self._servers)

    def set(self, servers: Iterable[NodeInfo]) -> None:
        servers = list(servers)
        with self._lock:
            self._servers = servers
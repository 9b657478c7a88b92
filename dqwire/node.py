"""Cluster node helpers that need no running node."""

from __future__ import annotations

from dataclasses import dataclass

BOOTSTRAP_ID = 0x2DC171858C3155BE
"""Magic ID for the first node of a cluster; ID 1 may be used as well."""


@dataclass(frozen=True)
class LastEntryInfo:
    """Term and index of the last entry in a node's persistent raft log.

    The zero value is not a valid entry and can be used as a sentinel.
    """

    term: int = 0
    index: int = 0

    def before(self, other: "LastEntryInfo") -> bool:
        """Tell whether this entry is strictly less recent than ``other``."""
        return self.term < other.term or (self.term == other.term and self.index < other.index)

    def __lt__(self, other: "LastEntryInfo") -> bool:
        if not isinstance(other, LastEntryInfo):
            return NotImplemented
        return self.before(other)
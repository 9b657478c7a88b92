"""Connection parameters of a client and the retry schedule they imply."""

from __future__ import annotations

import dataclasses
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

MAX_CONCURRENT_LEADER_CONNS = 10
"""Default number of concurrent connections while probing for the leader."""

DEFAULT_DIAL_TIMEOUT = 5.0
DEFAULT_ATTEMPT_TIMEOUT = 15.0
DEFAULT_BACKOFF_FACTOR = 0.1
DEFAULT_BACKOFF_CAP = 1.0


@dataclass(frozen=True)
class Config:
    """Parameters of a client connection; durations are in seconds, 0 means default."""

    dial: Optional[Callable[..., Any]] = None
    dial_timeout: float = 0.0
    attempt_timeout: float = 0.0
    backoff_factor: float = 0.0
    backoff_cap: float = 0.0
    retry_limit: int = 0
    concurrent_leader_conns: int = 0
    permit_shared: bool = False

    def with_defaults(self) -> "Config":
        """Return a copy with unset values replaced by defaults; ``dial`` is kept as is."""
        return dataclasses.replace(
            self,
            dial_timeout=self.dial_timeout or DEFAULT_DIAL_TIMEOUT,
            attempt_timeout=self.attempt_timeout or DEFAULT_ATTEMPT_TIMEOUT,
            backoff_factor=self.backoff_factor or DEFAULT_BACKOFF_FACTOR,
            backoff_cap=self.backoff_cap or DEFAULT_BACKOFF_CAP,
            concurrent_leader_conns=self.concurrent_leader_conns or MAX_CONCURRENT_LEADER_CONNS,
        )

    def backoff_delays(self) -> Iterator[float]:
        """Yield the delay before each attempt: none before the first, then
        binary exponential backoff capped at ``backoff_cap``."""
        yield 0.0
        for exponent in itertools.count(1):
            delay = self.backoff_factor * 2.0 ** min(exponent, 1023)
            if not 0 < delay <= self.backoff_cap:
                delay = self.backoff_cap
            yield delay

    def retry_attempts(self) -> Iterator[tuple[int, float]]:
        """Yield ``(attempt, delay)`` pairs, attempts numbered from 1.

        With a retry limit of 0 the attempts never run out; otherwise there
        are ``retry_limit + 1`` of them.
        """
        pairs = zip(itertools.count(1), self.backoff_delays())
        if self.retry_limit > 0:
            return itertools.islice(pairs, self.retry_limit + 1)
        return pairs
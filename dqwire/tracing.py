"""Optional tracing of requests through a context-local tracer."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Protocol, runtime_checkable

_current_tracer: ContextVar[Any] = ContextVar("dqwire_tracer", default=None)


@runtime_checkable
class Span(Protocol):
    """A single named and timed operation; it must be ended once done."""

    def end(self) -> None:
        ...


@runtime_checkable
class Tracer(Protocol):
    """Creates spans for traced operations."""

    def start(self, name: str, query: str) -> Span:
        ...


class NoopSpan:
    """A span that records nothing."""

    def end(self) -> None:
        """Complete the span; nothing is recorded."""


@contextmanager
def with_tracer(tracer: Tracer) -> Iterator[Tracer]:
    """Install a tracer for the current context for the duration of the block."""
    token = _current_tracer.set(tracer)
    try:
        yield tracer
    finally:
        _current_tracer.reset(token)


def start(name: str, query: str) -> Span:
    """Start a span with the current tracer, or a no-op span if there is none."""
    tracer = _current_tracer.get()
    if tracer is None or not isinstance(tracer, Tracer):
        return NoopSpan()
    return tracer.start(name, query)
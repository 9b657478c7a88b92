"""Finding the cluster leader and opening protocol connections to it."""

from __future__ import annotations

import dataclasses
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from dqwire.codec import decode_welcome, encode_client, encode_leader
from dqwire.config import Config
from dqwire.constants import VERSION_ONE
from dqwire.errors import NoAvailableLeaderError, ProtocolError
from dqwire.log import Level, LogFunc
from dqwire.message import Message
from dqwire.protocol import LeaderTracker, Protocol, decode_node_compat, dial, handshake
from dqwire.store import NodeInfo, NodeStore

_DEADLINE_EXCEEDED = "context deadline exceeded"
_CANCELED = "context canceled"


class _BadProtocolError(ProtocolError):
    """The server closed the connection, as pre-1.0 servers do on an unknown version."""

    def __init__(self) -> None:
        super().__init__("bad protocol")


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _bounded(deadline: Optional[float], seconds: float) -> float:
    limit = time.monotonic() + seconds
    return limit if deadline is None else min(limit, deadline)


def _describe(exc: BaseException) -> str:
    strerror = getattr(exc, "strerror", None)
    return strerror or str(exc)


def _discard_log(level: Level, fmt: str, *args: Any) -> None:
    """Drop a log message."""


def ask_leader(protocol: Protocol, deadline: Optional[float] = None) -> str:
    """Ask the server behind ``protocol`` for the leader's address ("" if unknown)."""
    request = Message(16)
    response = Message(512)
    encode_leader(request)
    try:
        protocol.call(request, response, deadline)
    except ProtocolError as err:
        cause = err.__cause__
        # Best-effort detection of a pre-1.0 server, which closes the
        # connection when it is sent version 1.
        if isinstance(cause, EOFError) or (
            isinstance(cause, OSError) and not isinstance(cause, TimeoutError)
        ):
            raise _BadProtocolError() from err
        raise
    _, leader = decode_node_compat(protocol, response)
    return leader


class _LeaderSearch:
    """Collects the outcome of parallel probes and keeps the first leader found."""

    def __init__(self, total: int) -> None:
        self._cond = threading.Condition()
        self._pending = total
        self._leader: Optional[Protocol] = None

    def done(self) -> bool:
        with self._cond:
            return self._leader is not None

    def offer(self, proto: Optional[Protocol]) -> None:
        extra = None
        with self._cond:
            self._pending -= 1
            if proto is not None:
                if self._leader is None:
                    self._leader = proto
                else:
                    extra = proto
            self._cond.notify_all()
        if extra is not None:
            extra.close()

    def wait(self) -> Optional[Protocol]:
        with self._cond:
            while self._leader is None and self._pending > 0:
                self._cond.wait()
            return self._leader


class Connector:
    """Opens protocol connections, either to the cluster leader or to one given node."""

    def __init__(
        self,
        config: Optional[Config] = None,
        log: Optional[LogFunc] = None,
        *,
        store: Optional[NodeStore] = None,
        node_id: int = 0,
        node_address: str = "",
    ) -> None:
        if node_id == 0 and store is None:
            raise ValueError("a node store is needed to find the leader")
        config = (config or Config()).with_defaults()
        if config.dial is None:
            config = dataclasses.replace(config, dial=dial)
        self.config = config
        self.store = store
        self.leader_tracker = LeaderTracker()
        self._log: LogFunc = log or _discard_log
        self._node_id = node_id
        self._node_address = node_address
        self._client_id = 0

    def connect(self, timeout: Optional[float] = None) -> Protocol:
        """Open a connection, giving up once ``timeout`` seconds have passed."""
        deadline = None if timeout is None else time.monotonic() + timeout

        if self._node_id != 0:
            return self._connect_direct(deadline)

        if self.config.permit_shared:
            shared = self.leader_tracker.take_shared_protocol()
            if shared is not None:
                try:
                    leader: Optional[str] = ask_leader(shared, deadline)
                except ProtocolError:
                    leader = None
                if leader is not None and leader == shared.addr:
                    self._log(Level.DEBUG, "reusing shared connection to %s", shared.addr)
                    self.leader_tracker.leader_addr = leader
                    return shared
                self._log(Level.DEBUG, "discarding shared connection to %s", shared.addr)
                shared.bad()
                shared.close()

        proto: Optional[Protocol] = None
        for attempt, delay in self.config.retry_attempts():
            if delay:
                time.sleep(delay)
            if attempt > 1 and _expired(deadline):
                break
            try:
                proto = self._connect_attempt_all(deadline, self._attempt_log(attempt))
                break
            except ProtocolError:
                continue

        if proto is None:
            raise NoAvailableLeaderError()
        if _expired(deadline):
            proto.close()
            raise NoAvailableLeaderError()

        self.leader_tracker.leader_addr = proto.addr
        if self.config.permit_shared:
            proto.lt = self.leader_tracker
        return proto

    def _attempt_log(self, attempt: int) -> LogFunc:
        prefix = f"attempt {attempt}: "

        def log(level: Level, fmt: str, *args: Any) -> None:
            self._log(level, prefix + fmt, *args)

        return log

    def _connect_direct(self, deadline: Optional[float]) -> Protocol:
        attempt_deadline = _bounded(deadline, self.config.attempt_timeout)
        conn = self._dial(self._node_address, attempt_deadline)
        try:
            return handshake(conn, VERSION_ONE, self._node_address, attempt_deadline)
        except ProtocolError as err:
            conn.close()
            raise ProtocolError(f"handshake: {err}") from err

    def _dial(self, address: str, deadline: float) -> Any:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProtocolError(f"dial: {_DEADLINE_EXCEEDED}")
        dial_func: Callable[..., Any] = self.config.dial  # type: ignore[assignment]
        try:
            return dial_func(address, remaining)
        except (OSError, ValueError) as exc:
            raise ProtocolError(f"dial: {_describe(exc)}") from exc

    def _connect_attempt_all(self, deadline: Optional[float], log: LogFunc) -> Protocol:
        """Try the last known leader first, then probe all servers in parallel."""
        addr = self.leader_tracker.leader_addr
        if addr:
            try:
                proto, _ = self._connect_attempt_one(deadline, addr, lambda: False)
            except ProtocolError:
                proto = None
            if proto is not None:
                log(Level.DEBUG, "server %s: connected on fast path", addr)
                return proto
            self.leader_tracker.leader_addr = ""

        assert self.store is not None
        try:
            servers = self.store.get()
        except Exception as exc:
            raise ProtocolError(f"get servers: {exc}") from exc
        # Voters before stand-bys before spares: only voters can lead, and
        # stand-bys are more likely than spares to know who does.
        servers = sorted(servers, key=lambda server: int(server.role))
        if not servers:
            raise NoAvailableLeaderError()

        search = _LeaderSearch(len(servers))

        def run(server: NodeInfo) -> None:
            proto = None
            try:
                proto = self._probe(server, deadline, log, search)
            finally:
                search.offer(proto)

        executor = ThreadPoolExecutor(max_workers=self.config.concurrent_leader_conns)
        for server in servers:
            executor.submit(run, server)
        executor.shutdown(wait=False)

        leader = search.wait()
        if leader is None:
            raise NoAvailableLeaderError()
        log(Level.DEBUG, "server %s: connected on fallback path", leader.addr)
        return leader

    def _probe(
        self,
        server: NodeInfo,
        deadline: Optional[float],
        log: LogFunc,
        search: _LeaderSearch,
    ) -> Optional[Protocol]:
        address = server.address
        try:
            proto, leader = self._connect_attempt_one(deadline, address, search.done)
        except ProtocolError as err:
            log(Level.WARN, "server %s: %s", address, err)
            return None
        if proto is not None:
            return proto
        if not leader:
            log(Level.WARN, "server %s: no known leader", address)
            return None

        log(Level.DEBUG, "server %s: connect to reported leader %s", address, leader)
        try:
            proto, _ = self._connect_attempt_one(deadline, leader, search.done)
        except ProtocolError as err:
            log(Level.WARN, "server %s: %s", leader, err)
            return None
        if proto is None:
            log(Level.WARN, "server %s: reported leader server is not the leader", leader)
            return None
        return proto

    def _connect_attempt_one(
        self,
        deadline: Optional[float],
        address: str,
        stop: Callable[[], bool],
    ) -> tuple[Optional[Protocol], str]:
        """Connect to ``address`` and check whether it is the leader.

        Returns the registered protocol if it is, otherwise ``(None, leader)``
        where ``leader`` is the address it reports, or "" if it knows none.
        """
        if stop():
            raise ProtocolError(_CANCELED)
        if _expired(deadline):
            raise ProtocolError(_DEADLINE_EXCEEDED)

        attempt_deadline = _bounded(deadline, self.config.attempt_timeout)
        dial_deadline = _bounded(deadline, self.config.dial_timeout)

        conn = self._dial(address, dial_deadline)
        try:
            proto = handshake(conn, VERSION_ONE, address, attempt_deadline)
        except ProtocolError:
            conn.close()
            raise

        try:
            leader = ask_leader(proto, attempt_deadline)
            if not leader:
                proto.close()
                return None, ""
            if leader != address:
                proto.close()
                return None, leader
            request = Message(16)
            response = Message(512)
            encode_client(request, self._client_id)
            proto.call(request, response, attempt_deadline)
            decode_welcome(response)
        except ProtocolError:
            proto.close()
            raise
        return proto, ""


def new_leader_connector(
    store: NodeStore, config: Optional[Config] = None, log: Optional[LogFunc] = None
) -> Connector:
    """Return a Connector that connects to the current cluster leader."""
    return Connector(config, log, store=store)


def new_direct_connector(
    id: int, address: str, config: Optional[Config] = None, log: Optional[LogFunc] = None
) -> Connector:
    """Return a Connector that connects to the node with the given ID and address."""
    return Connector(config, log, node_id=id, node_address=address)
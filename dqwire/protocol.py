"""Sending and receiving messages over a connection to a server."""

from __future__ import annotations

import socket
import struct
import threading
import time
from typing import Optional

from dqwire.codec import decode_node, decode_node_legacy, encode_interrupt
from dqwire.constants import RESPONSE_EMPTY, VERSION_LEGACY, request_desc
from dqwire.errors import ProtocolError
from dqwire.message import HEADER_SIZE, WORD_SIZE, Message

_HEADER = struct.Struct("<IBBH")
_VERSION = struct.Struct("<Q")
_IO_ERRORS = (OSError, EOFError, ProtocolError)


def _wrap(prefix: str, exc: BaseException) -> ProtocolError:
    """Build a ProtocolError whose cause is the root I/O error."""
    root = exc
    if isinstance(exc, ProtocolError) and exc.__cause__ is not None:
        root = exc.__cause__
    error = ProtocolError(f"{prefix}: {exc}")
    error.__cause__ = root
    return error


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - time.monotonic()


def _format_budget(budget: Optional[float]) -> str:
    if not budget:
        return "0s"
    return f"{budget * 1000:.0f}ms"


def _set_timeout(conn: socket.socket, remaining: Optional[float]) -> None:
    if remaining is None:
        return
    if remaining <= 0:
        raise TimeoutError("i/o timeout")
    conn.settimeout(remaining)


def _clear_timeout(conn: socket.socket) -> None:
    try:
        conn.settimeout(None)
    except OSError:
        pass


class LeaderTracker:
    """Remembers the cluster leader's address and possibly a reusable connection to it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._leader_addr = ""
        self._proto: Optional[Protocol] = None

    @property
    def leader_addr(self) -> str:
        """Address of the last known leader, or an empty string."""
        with self._lock:
            return self._leader_addr

    @leader_addr.setter
    def leader_addr(self, address: str) -> None:
        with self._lock:
            self._leader_addr = address

    def take_shared_protocol(self) -> Optional["Protocol"]:
        """Remove and return the shared connection, if any, bound to this tracker."""
        with self._lock:
            proto, self._proto = self._proto, None
            if proto is not None:
                proto.lt = self
            return proto

    def donate_shared_protocol(self, proto: "Protocol") -> bool:
        """Keep ``proto`` for reuse unless a shared connection is already held."""
        with self._lock:
            if self._proto is not None:
                return False
            self._proto = proto
            return True


class Protocol:
    """Sends requests and receives responses over one connection."""

    def __init__(
        self,
        conn: socket.socket,
        version: int,
        addr: str,
        lt: Optional[LeaderTracker] = None,
    ) -> None:
        self.conn = conn
        self.version = version
        self.addr = addr
        self.lt = lt
        self._lock = threading.Lock()
        self._net_err: Optional[ProtocolError] = None

    def __enter__(self) -> "Protocol":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def call(self, request: Message, response: Message, deadline: Optional[float] = None) -> None:
        """Send ``request`` and receive the reply into ``response``.

        ``deadline`` is an absolute ``time.monotonic()`` value, or None.
        """
        with self._lock:
            if self._net_err is not None:
                raise self._net_err
            budget = _remaining(deadline)
            prefix = f"call {request_desc(request.mtype)} (budget {_format_budget(budget)})"
            try:
                try:
                    _set_timeout(self.conn, budget)
                    self._send(request)
                except _IO_ERRORS as exc:
                    raise _wrap(f"{prefix}: send", exc)
                try:
                    self._recv(response)
                except _IO_ERRORS as exc:
                    raise _wrap(f"{prefix}: receive", exc)
            except ProtocolError as err:
                self.bad()
                if isinstance(err.__cause__, OSError):
                    self._net_err = err
                raise
            finally:
                _clear_timeout(self.conn)

    def more(self, response: Message) -> None:
        """Receive a further response for a request that maps to several."""
        try:
            self._recv(response)
        except _IO_ERRORS as exc:
            self.bad()
            if isinstance(exc, ProtocolError):
                raise
            raise _wrap("receive", exc)

    def interrupt(
        self, request: Message, response: Message, deadline: Optional[float] = None
    ) -> None:
        """Send an interrupt request and drain responses until an empty one."""
        with self._lock:
            try:
                try:
                    _set_timeout(self.conn, _remaining(deadline))
                    encode_interrupt(request, 0)
                    self._send(request)
                except _IO_ERRORS as exc:
                    raise _wrap("failed to send interrupt request", exc)
                while True:
                    try:
                        self._recv(response)
                    except _IO_ERRORS as exc:
                        raise _wrap("failed to receive response", exc)
                    if response.mtype == RESPONSE_EMPTY:
                        break
            except ProtocolError:
                self.bad()
                raise
            finally:
                _clear_timeout(self.conn)

    def bad(self) -> None:
        """Prevent this connection from being reused when it is closed."""
        self.lt = None

    def close(self) -> None:
        """Hand the connection to its leader tracker, or close it."""
        tracker = self.lt
        if tracker is None or not tracker.donate_shared_protocol(self):
            self.conn.close()

    def _send(self, request: Message) -> None:
        try:
            self.conn.sendall(bytes(request.header))
        except OSError as exc:
            raise _wrap("header", exc)
        try:
            self.conn.sendall(bytes(request.body[:request.offset]))
        except OSError as exc:
            raise _wrap("body", exc)

    def _recv(self, response: Message) -> None:
        response.reset()
        try:
            self._recv_exact(memoryview(response.header)[:HEADER_SIZE])
        except (OSError, EOFError) as exc:
            raise _wrap("header", exc)
        words, mtype, schema, extra = _HEADER.unpack_from(response.header, 0)
        response.words = words
        response.mtype = mtype
        response.schema = schema
        response.extra = extra

        size = words * WORD_SIZE
        capacity = max(len(response.body), WORD_SIZE)
        while size > capacity:
            capacity *= 2
        if capacity != len(response.body):
            response.body = bytearray(capacity)
        try:
            self._recv_exact(memoryview(response.body)[:size])
        except (OSError, EOFError) as exc:
            raise _wrap("body", exc)

    def _recv_exact(self, view: memoryview) -> None:
        offset = 0
        while offset < len(view):
            n = self.conn.recv_into(view[offset:])
            if n == 0:
                raise EOFError("EOF")
            offset += n


def dial(address: str, timeout: Optional[float] = None) -> socket.socket:
    """Connect to a TCP ``host:port`` or, with a leading ``@``, an abstract Unix socket."""
    if address.startswith("@"):
        family = "unix"
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        target: object = "\0" + address[1:]
    else:
        family = "tcp"
        host, sep, port = address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"dial tcp {address}: missing port in address")
        host = host.strip("[]")
        infos = socket.getaddrinfo(host, int(port), type=socket.SOCK_STREAM)
        af, socktype, proto, _, target = infos[0]
        sock = socket.socket(af, socktype, proto)
    try:
        sock.settimeout(timeout)
        sock.connect(target)
        sock.settimeout(None)
    except TimeoutError as exc:
        sock.close()
        raise TimeoutError(f"dial {family} {address}: i/o timeout") from exc
    except OSError as exc:
        sock.close()
        reason = exc.strerror or str(exc)
        raise OSError(exc.errno, f"dial {family} {address}: connect: {reason}") from exc
    return sock


def handshake(
    conn: socket.socket, version: int, addr: str, deadline: Optional[float] = None
) -> Protocol:
    """Send the protocol version and return a Protocol over ``conn``."""
    try:
        _set_timeout(conn, _remaining(deadline))
        conn.sendall(_VERSION.pack(version))
    except OSError as exc:
        raise _wrap("write handshake", exc)
    finally:
        _clear_timeout(conn)
    return Protocol(conn, version, addr)


def decode_node_compat(protocol: Protocol, response: Message) -> tuple[int, str]:
    """Decode a Node response, handling legacy servers as well."""
    if protocol.version == VERSION_LEGACY:
        return 0, decode_node_legacy(response)
    return decode_node(response)
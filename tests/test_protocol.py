import socket
import struct
import time

import pytest

from dqwire.codec import (
    decode_db,
    decode_node,
    decode_node_legacy,
    decode_result,
    decode_stmt,
    encode_exec_sql_v0,
    encode_leader,
    encode_open,
    encode_prepare,
)
from dqwire.constants import (
    REQUEST_EXEC_SQL,
    REQUEST_INTERRUPT,
    REQUEST_LEADER,
    REQUEST_OPEN,
    REQUEST_PREPARE,
    RESPONSE_DB,
    RESPONSE_EMPTY,
    RESPONSE_NODE,
    RESPONSE_NODE_LEGACY,
    RESPONSE_RESULT,
    RESPONSE_ROWS,
    RESPONSE_STMT,
    VERSION_LEGACY,
    VERSION_ONE,
)
from dqwire.errors import ProtocolError
from dqwire.message import Message, Result
from dqwire.protocol import (
    LeaderTracker,
    Protocol,
    decode_node_compat,
    dial,
    handshake,
)


@pytest.fixture
def pair():
    client, server = socket.socketpair()
    server.settimeout(2)
    yield client, server
    client.close()
    server.close()


def _frame(mtype, build):
    m = Message(64)
    build(m)
    m.put_header(mtype, 0)
    return bytes(m.header) + bytes(m.body[:m.offset])


def _node_frame(node_id, address):
    def build(m):
        m.put_uint64(node_id)
        m.put_string(address)

    return _frame(RESPONSE_NODE, build)


def _read_exact(sock, n):
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        assert chunk
        data += chunk
    return data


def _read_request(sock):
    words, mtype, schema, _ = struct.unpack("<IBBH", _read_exact(sock, 8))
    return mtype, schema, _read_exact(sock, words * 8)


def test_call_roundtrip(pair):
    client, server = pair
    server.sendall(_node_frame(1, "@test-0"))
    proto = Protocol(client, VERSION_ONE, "@test-0")
    request, response = Message(16), Message(64)
    encode_leader(request)
    proto.call(request, response)
    assert decode_node(response) == (1, "@test-0")
    mtype, schema, body = _read_request(server)
    assert (mtype, schema, body) == (REQUEST_LEADER, 0, bytes(8))


def test_request_with_dynamic_buffer(pair):
    client, server = pair
    proto = Protocol(client, VERSION_ONE, "@test-0")
    request, response = Message(64), Message(64)

    server.sendall(_frame(RESPONSE_DB, lambda m: (m.put_uint32(7), m.put_uint32(0))))
    encode_open(request, "test.db", 0, "test-0")
    proto.call(request, response, time.monotonic() + 0.25)
    db = decode_db(response)
    assert db == 7
    mtype, _, body = _read_request(server)
    assert mtype == REQUEST_OPEN
    assert body.startswith(b"test.db\0")

    sql = """
CREATE TABLE foo (n INT);
CREATE TABLE bar (n INT);
CREATE TABLE egg (n INT);
CREATE TABLE baz (n INT);
"""
    server.sendall(_frame(RESPONSE_RESULT, lambda m: (m.put_uint64(1), m.put_uint64(0))))
    encode_exec_sql_v0(request, db, sql, None)
    proto.call(request, response, time.monotonic() + 0.25)
    assert decode_result(response) == Result(1, 0)
    mtype, _, body = _read_request(server)
    assert mtype == REQUEST_EXEC_SQL
    assert struct.unpack_from("<Q", body)[0] == 7
    assert sql.encode() in body


def test_prepare(pair):
    client, server = pair
    proto = Protocol(client, VERSION_ONE, "@test-0")
    request, response = Message(64), Message(64)

    server.sendall(_frame(RESPONSE_DB, lambda m: (m.put_uint32(0), m.put_uint32(0))))
    encode_open(request, "test.db", 0, "test-0")
    proto.call(request, response)
    db = decode_db(response)

    def build_stmt(m):
        m.put_uint32(db)
        m.put_uint32(0)
        m.put_uint64(0)

    server.sendall(_frame(RESPONSE_STMT, build_stmt))
    encode_prepare(request, db, "CREATE TABLE test (n INT)")
    proto.call(request, response)
    _, stmt, params = decode_stmt(response)
    assert stmt == 0
    assert params == 0
    _read_request(server)
    mtype, _, body = _read_request(server)
    assert mtype == REQUEST_PREPARE
    assert b"CREATE TABLE test (n INT)\0" in body


def test_response_larger_than_buffer_grows_it(pair):
    client, server = pair
    address = "x" * 100
    server.sendall(_frame(RESPONSE_NODE_LEGACY, lambda m: m.put_string(address)))
    proto = Protocol(client, VERSION_LEGACY, "a")
    request, response = Message(16), Message(8)
    encode_leader(request)
    proto.call(request, response)
    assert len(response.body) >= 104
    assert decode_node_legacy(response) == address


def test_expired_deadline_is_sticky_network_error(pair):
    client, _ = pair
    tracker = LeaderTracker()
    proto = Protocol(client, VERSION_ONE, "a", tracker)
    request, response = Message(16), Message(16)
    encode_leader(request)
    with pytest.raises(ProtocolError) as first:
        proto.call(request, response, time.monotonic() - 1)
    assert isinstance(first.value.__cause__, TimeoutError)
    assert "call leader" in str(first.value)
    assert ": send:" in str(first.value)
    assert proto.lt is None
    with pytest.raises(ProtocolError) as second:
        proto.call(request, response)
    assert second.value is first.value


def test_eof_while_receiving(pair):
    client, server = pair
    server.shutdown(socket.SHUT_WR)
    proto = Protocol(client, VERSION_ONE, "a", LeaderTracker())
    request, response = Message(16), Message(16)
    encode_leader(request)
    with pytest.raises(ProtocolError) as exc:
        proto.call(request, response)
    assert isinstance(exc.value.__cause__, EOFError)
    assert str(exc.value).endswith("receive: header: EOF")
    assert proto.lt is None
    with pytest.raises(ProtocolError) as again:
        proto.call(request, response)
    assert isinstance(again.value.__cause__, EOFError)


def test_receive_timeout(pair):
    client, _ = pair
    proto = Protocol(client, VERSION_ONE, "a")
    request, response = Message(16), Message(16)
    encode_leader(request)
    with pytest.raises(ProtocolError) as exc:
        proto.call(request, response, time.monotonic() + 0.05)
    assert isinstance(exc.value.__cause__, TimeoutError)
    assert "receive" in str(exc.value)


def test_more_reads_next_response(pair):
    client, server = pair
    server.sendall(_node_frame(3, "@n3"))
    proto = Protocol(client, VERSION_ONE, "a")
    response = Message(16)
    proto.more(response)
    assert decode_node(response) == (3, "@n3")


def test_more_failure_marks_bad(pair):
    client, server = pair
    server.shutdown(socket.SHUT_WR)
    proto = Protocol(client, VERSION_ONE, "a", LeaderTracker())
    with pytest.raises(ProtocolError) as exc:
        proto.more(Message(16))
    assert isinstance(exc.value.__cause__, EOFError)
    assert proto.lt is None


def test_interrupt_drains_until_empty(pair):
    client, server = pair
    server.sendall(
        _frame(RESPONSE_ROWS, lambda m: m.put_uint64(0))
        + _frame(RESPONSE_EMPTY, lambda m: m.put_uint64(0))
        + _node_frame(5, "@after")
    )
    proto = Protocol(client, VERSION_ONE, "a")
    request, response = Message(16), Message(16)
    proto.interrupt(request, response)
    assert response.mtype == RESPONSE_EMPTY
    mtype, _, body = _read_request(server)
    assert (mtype, body) == (REQUEST_INTERRUPT, bytes(8))
    proto.more(response)
    assert decode_node(response) == (5, "@after")


def test_interrupt_failure(pair):
    client, server = pair
    server.shutdown(socket.SHUT_WR)
    proto = Protocol(client, VERSION_ONE, "a", LeaderTracker())
    with pytest.raises(ProtocolError) as exc:
        proto.interrupt(Message(16), Message(16))
    assert str(exc.value).startswith("failed to receive response")
    assert proto.lt is None


def test_close_donates_to_tracker(pair):
    client, _ = pair
    tracker = LeaderTracker()
    proto = Protocol(client, VERSION_ONE, "a", tracker)
    proto.close()
    assert client.fileno() != -1
    proto.lt = None
    assert tracker.take_shared_protocol() is proto
    assert proto.lt is tracker
    assert tracker.take_shared_protocol() is None


def test_close_without_tracker_closes_socket(pair):
    client, _ = pair
    proto = Protocol(client, VERSION_ONE, "a")
    proto.close()
    assert client.fileno() == -1


def test_bad_protocol_is_not_donated(pair):
    client, _ = pair
    tracker = LeaderTracker()
    proto = Protocol(client, VERSION_ONE, "a", tracker)
    proto.bad()
    proto.close()
    assert client.fileno() == -1
    assert tracker.take_shared_protocol() is None


def test_tracker_refuses_second_donation():
    a, b = socket.socketpair()
    c, d = socket.socketpair()
    try:
        tracker = LeaderTracker()
        first = Protocol(a, VERSION_ONE, "x", tracker)
        second = Protocol(c, VERSION_ONE, "x", tracker)
        assert tracker.donate_shared_protocol(first) is True
        assert tracker.donate_shared_protocol(second) is False
        second.close()
        assert c.fileno() == -1
    finally:
        for s in (a, b, c, d):
            s.close()


def test_tracker_leader_addr():
    tracker = LeaderTracker()
    assert tracker.leader_addr == ""
    tracker.leader_addr = "@leader"
    assert tracker.leader_addr == "@leader"
    tracker.leader_addr = ""
    assert tracker.leader_addr == ""


@pytest.mark.parametrize("version", [VERSION_ONE, VERSION_LEGACY])
def test_handshake_sends_version(pair, version):
    client, server = pair
    proto = handshake(client, version, "@addr")
    assert _read_exact(server, 8) == struct.pack("<Q", version)
    assert (proto.version, proto.addr) == (version, "@addr")


def test_handshake_expired_deadline(pair):
    client, _ = pair
    with pytest.raises(ProtocolError) as exc:
        handshake(client, VERSION_ONE, "@addr", time.monotonic() - 1)
    assert str(exc.value).startswith("write handshake")
    assert isinstance(exc.value.__cause__, TimeoutError)


def test_decode_node_compat_legacy(pair):
    client, _ = pair
    proto = Protocol(client, VERSION_LEGACY, "a")
    m = Message(16)
    m.put_string("@leader")
    m.put_header(RESPONSE_NODE_LEGACY, 0)
    m.rewind()
    assert decode_node_compat(proto, m) == (0, "@leader")


def test_decode_node_compat_version_one(pair):
    client, _ = pair
    proto = Protocol(client, VERSION_ONE, "a")
    m = Message(16)
    m.put_uint64(9)
    m.put_string("@leader")
    m.put_header(RESPONSE_NODE, 0)
    m.rewind()
    assert decode_node_compat(proto, m) == (9, "@leader")


def test_dial_tcp():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    conn = dial(f"127.0.0.1:{port}", 2.0)
    try:
        peer, _ = listener.accept()
        conn.sendall(b"ping")
        peer.settimeout(2)
        assert _read_exact(peer, 4) == b"ping"
        assert conn.gettimeout() is None
        peer.close()
    finally:
        conn.close()
        listener.close()


def test_dial_refused():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(ConnectionRefusedError) as exc:
        dial(f"127.0.0.1:{port}", 2.0)
    assert f"dial tcp 127.0.0.1:{port}" in str(exc.value)


def test_dial_missing_port():
    with pytest.raises(ValueError, match="missing port"):
        dial("localhost", 1.0)
"""Encoders for requests and decoders for responses of the wire protocol."""

from __future__ import annotations

from typing import Any, Sequence

from dqwire.constants import (
    REQUEST_ADD,
    REQUEST_ASSIGN,
    REQUEST_CLIENT,
    REQUEST_CLUSTER,
    REQUEST_DESCRIBE,
    REQUEST_DUMP,
    REQUEST_EXEC,
    REQUEST_EXEC_SQL,
    REQUEST_FINALIZE,
    REQUEST_HEARTBEAT,
    REQUEST_INTERRUPT,
    REQUEST_LEADER,
    REQUEST_OPEN,
    REQUEST_PREPARE,
    REQUEST_QUERY,
    REQUEST_QUERY_SQL,
    REQUEST_REMOVE,
    REQUEST_TRANSFER,
    REQUEST_WEIGHT,
    RESPONSE_DB,
    RESPONSE_EMPTY,
    RESPONSE_FAILURE,
    RESPONSE_FILES,
    RESPONSE_METADATA,
    RESPONSE_NODE,
    RESPONSE_NODE_LEGACY,
    RESPONSE_NODES,
    RESPONSE_RESULT,
    RESPONSE_ROWS,
    RESPONSE_STMT,
    RESPONSE_WELCOME,
    response_desc,
)
from dqwire.errors import ProtocolError, RequestError
from dqwire.message import Files, Message, Result, Rows
from dqwire.store import NodeInfo

# Requests.


def encode_leader(request: Message) -> None:
    """Encode a Leader request."""
    request.reset()
    request.put_uint64(0)
    request.put_header(REQUEST_LEADER, 0)


def encode_client(request: Message, id: int) -> None:
    """Encode a Client request."""
    request.reset()
    request.put_uint64(id)
    request.put_header(REQUEST_CLIENT, 0)


def encode_heartbeat(request: Message, timestamp: int) -> None:
    """Encode a Heartbeat request."""
    request.reset()
    request.put_uint64(timestamp)
    request.put_header(REQUEST_HEARTBEAT, 0)


def encode_open(request: Message, name: str, flags: int, vfs: str) -> None:
    """Encode an Open request."""
    request.reset()
    request.put_string(name)
    request.put_uint64(flags)
    request.put_string(vfs)
    request.put_header(REQUEST_OPEN, 0)


def encode_prepare(request: Message, db: int, sql: str) -> None:
    """Encode a Prepare request."""
    request.reset()
    request.put_uint64(db)
    request.put_string(sql)
    request.put_header(REQUEST_PREPARE, 0)


def _encode_stmt(
    request: Message, mtype: int, schema: int, db: int, stmt: int, values: Sequence[Any] | None
) -> None:
    request.reset()
    request.put_uint32(db)
    request.put_uint32(stmt)
    if schema == 0:
        request.put_named_values(values or ())
    else:
        request.put_named_values32(values or ())
    request.put_header(mtype, schema)


def _encode_sql(
    request: Message, mtype: int, schema: int, db: int, sql: str, values: Sequence[Any] | None
) -> None:
    request.reset()
    request.put_uint64(db)
    request.put_string(sql)
    if schema == 0:
        request.put_named_values(values or ())
    else:
        request.put_named_values32(values or ())
    request.put_header(mtype, schema)


def encode_exec_v0(request: Message, db: int, stmt: int, values: Sequence[Any] | None) -> None:
    """Encode an Exec request with an 8-bit parameter count."""
    _encode_stmt(request, REQUEST_EXEC, 0, db, stmt, values)


def encode_exec_v1(request: Message, db: int, stmt: int, values: Sequence[Any] | None) -> None:
    """Encode an Exec request with a 32-bit parameter count."""
    _encode_stmt(request, REQUEST_EXEC, 1, db, stmt, values)


def encode_query_v0(request: Message, db: int, stmt: int, values: Sequence[Any] | None) -> None:
    """Encode a Query request with an 8-bit parameter count."""
    _encode_stmt(request, REQUEST_QUERY, 0, db, stmt, values)


def encode_query_v1(request: Message, db: int, stmt: int, values: Sequence[Any] | None) -> None:
    """Encode a Query request with a 32-bit parameter count."""
    _encode_stmt(request, REQUEST_QUERY, 1, db, stmt, values)


def encode_finalize(request: Message, db: int, stmt: int) -> None:
    """Encode a Finalize request."""
    request.reset()
    request.put_uint32(db)
    request.put_uint32(stmt)
    request.put_header(REQUEST_FINALIZE, 0)


def encode_exec_sql_v0(request: Message, db: int, sql: str, values: Sequence[Any] | None) -> None:
    """Encode an ExecSQL request with an 8-bit parameter count."""
    _encode_sql(request, REQUEST_EXEC_SQL, 0, db, sql, values)


def encode_exec_sql_v1(request: Message, db: int, sql: str, values: Sequence[Any] | None) -> None:
    """Encode an ExecSQL request with a 32-bit parameter count."""
    _encode_sql(request, REQUEST_EXEC_SQL, 1, db, sql, values)


def encode_query_sql_v0(request: Message, db: int, sql: str, values: Sequence[Any] | None) -> None:
    """Encode a QuerySQL request with an 8-bit parameter count."""
    _encode_sql(request, REQUEST_QUERY_SQL, 0, db, sql, values)


def encode_query_sql_v1(request: Message, db: int, sql: str, values: Sequence[Any] | None) -> None:
    """Encode a QuerySQL request with a 32-bit parameter count."""
    _encode_sql(request, REQUEST_QUERY_SQL, 1, db, sql, values)


def encode_interrupt(request: Message, db: int) -> None:
    """Encode an Interrupt request."""
    request.reset()
    request.put_uint64(db)
    request.put_header(REQUEST_INTERRUPT, 0)


def encode_add(request: Message, id: int, address: str) -> None:
    """Encode an Add request."""
    request.reset()
    request.put_uint64(id)
    request.put_string(address)
    request.put_header(REQUEST_ADD, 0)


def encode_assign(request: Message, id: int, role: int) -> None:
    """Encode an Assign request."""
    request.reset()
    request.put_uint64(id)
    request.put_uint64(int(role))
    request.put_header(REQUEST_ASSIGN, 0)


def encode_remove(request: Message, id: int) -> None:
    """Encode a Remove request."""
    request.reset()
    request.put_uint64(id)
    request.put_header(REQUEST_REMOVE, 0)


def encode_dump(request: Message, name: str) -> None:
    """Encode a Dump request."""
    request.reset()
    request.put_string(name)
    request.put_header(REQUEST_DUMP, 0)


def encode_cluster(request: Message, format: int) -> None:
    """Encode a Cluster request."""
    request.reset()
    request.put_uint64(format)
    request.put_header(REQUEST_CLUSTER, 0)


def encode_transfer(request: Message, id: int) -> None:
    """Encode a Transfer request."""
    request.reset()
    request.put_uint64(id)
    request.put_header(REQUEST_TRANSFER, 0)


def encode_describe(request: Message, format: int) -> None:
    """Encode a Describe request."""
    request.reset()
    request.put_uint64(format)
    request.put_header(REQUEST_DESCRIBE, 0)


def encode_weight(request: Message, weight: int) -> None:
    """Encode a Weight request."""
    request.reset()
    request.put_uint64(weight)
    request.put_header(REQUEST_WEIGHT, 0)


# Responses.


def _expect(response: Message, expected: int) -> None:
    """Raise the server's failure, or an error if the type is not the expected one."""
    mtype = response.mtype
    if mtype == RESPONSE_FAILURE:
        code = response.get_uint64()
        description = response.get_string()
        raise RequestError(code, description)
    if mtype != expected:
        raise ProtocolError(f"decode {response_desc(expected)}: unexpected type {mtype}")


def decode_failure(response: Message) -> tuple[int, str]:
    """Decode a Failure response; a failure is always raised as RequestError."""
    _expect(response, RESPONSE_FAILURE)
    return response.get_uint64(), response.get_string()


def decode_welcome(response: Message) -> int:
    """Decode a Welcome response, returning the heartbeat timeout."""
    _expect(response, RESPONSE_WELCOME)
    return response.get_uint64()


def decode_node_legacy(response: Message) -> str:
    """Decode a legacy Node response, returning the address."""
    _expect(response, RESPONSE_NODE_LEGACY)
    return response.get_string()


def decode_node(response: Message) -> tuple[int, str]:
    """Decode a Node response, returning ``(id, address)``."""
    _expect(response, RESPONSE_NODE)
    node_id = response.get_uint64()
    address = response.get_string()
    return node_id, address


def decode_nodes(response: Message) -> list[NodeInfo]:
    """Decode a Nodes response."""
    _expect(response, RESPONSE_NODES)
    return response.get_nodes()


def decode_db(response: Message) -> int:
    """Decode a Db response, returning the database id."""
    _expect(response, RESPONSE_DB)
    db_id = response.get_uint32()
    response.get_uint32()
    return db_id


def decode_stmt(response: Message) -> tuple[int, int, int]:
    """Decode a Stmt response, returning ``(db, id, params)``."""
    _expect(response, RESPONSE_STMT)
    db = response.get_uint32()
    stmt_id = response.get_uint32()
    params = response.get_uint64()
    return db, stmt_id, params


def decode_empty(response: Message) -> None:
    """Decode an Empty response."""
    _expect(response, RESPONSE_EMPTY)
    response.get_uint64()


def decode_result(response: Message) -> Result:
    """Decode a Result response."""
    _expect(response, RESPONSE_RESULT)
    return response.get_result()


def decode_rows(response: Message) -> Rows:
    """Decode a Rows response."""
    _expect(response, RESPONSE_ROWS)
    return response.get_rows()


def decode_files(response: Message) -> Files:
    """Decode a Files response."""
    _expect(response, RESPONSE_FILES)
    return response.get_files()


def decode_metadata(response: Message) -> tuple[int, int]:
    """Decode a Metadata response, returning ``(failure_domain, weight)``."""
    _expect(response, RESPONSE_METADATA)
    failure_domain = response.get_uint64()
    weight = response.get_uint64()
    return failure_domain, weight
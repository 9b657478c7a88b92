"""Wire protocol constants: versions, type codes and message types."""

VERSION_ONE = 1
VERSION_LEGACY = 0x86104DD760433FE5

CLUSTER_FORMAT_V0 = 0
CLUSTER_FORMAT_V1 = 1

# SQLite datatype codes.
INTEGER = 1
FLOAT = 2
TEXT = 3
BLOB = 4
NULL = 5

# Special data types for time and boolean values.
UNIX_TIME = 9
ISO8601 = 10
BOOLEAN = 11

# Request types.
REQUEST_LEADER = 0
REQUEST_CLIENT = 1
REQUEST_HEARTBEAT = 2
REQUEST_OPEN = 3
REQUEST_PREPARE = 4
REQUEST_EXEC = 5
REQUEST_QUERY = 6
REQUEST_FINALIZE = 7
REQUEST_EXEC_SQL = 8
REQUEST_QUERY_SQL = 9
REQUEST_INTERRUPT = 10
REQUEST_ADD = 12
REQUEST_ASSIGN = 13
REQUEST_REMOVE = 14
REQUEST_DUMP = 15
REQUEST_CLUSTER = 16
REQUEST_TRANSFER = 17
REQUEST_DESCRIBE = 18
REQUEST_WEIGHT = 19

REQUEST_DESCRIBE_FORMAT_V0 = 0

# Response types.
RESPONSE_FAILURE = 0
RESPONSE_NODE = 1
RESPONSE_NODE_LEGACY = 1
RESPONSE_WELCOME = 2
RESPONSE_NODES = 3
RESPONSE_DB = 4
RESPONSE_STMT = 5
RESPONSE_RESULT = 6
RESPONSE_ROWS = 7
RESPONSE_EMPTY = 8
RESPONSE_FILES = 9
RESPONSE_METADATA = 10

_REQUEST_NAMES = {
    REQUEST_LEADER: "leader",
    REQUEST_CLIENT: "client",
    REQUEST_HEARTBEAT: "heartbeat",
    REQUEST_OPEN: "open",
    REQUEST_PREPARE: "prepare",
    REQUEST_EXEC: "exec",
    REQUEST_QUERY: "query",
    REQUEST_FINALIZE: "finalize",
    REQUEST_EXEC_SQL: "exec-sql",
    REQUEST_QUERY_SQL: "query-sql",
    REQUEST_INTERRUPT: "interrupt",
    REQUEST_ADD: "add",
    REQUEST_ASSIGN: "assign",
    REQUEST_REMOVE: "remove",
    REQUEST_DUMP: "dump",
    REQUEST_CLUSTER: "cluster",
    REQUEST_TRANSFER: "transfer",
    REQUEST_DESCRIBE: "describe",
}

_RESPONSE_NAMES = {
    RESPONSE_FAILURE: "failure",
    RESPONSE_NODE: "node",
    RESPONSE_WELCOME: "welcome",
    RESPONSE_NODES: "nodes",
    RESPONSE_DB: "db",
    RESPONSE_STMT: "stmt",
    RESPONSE_RESULT: "result",
    RESPONSE_ROWS: "rows",
    RESPONSE_EMPTY: "empty",
    RESPONSE_FILES: "files",
    RESPONSE_METADATA: "metadata",
}


def request_desc(code: int) -> str:
    """Human-readable name of a request type."""
    return _REQUEST_NAMES.get(code, "unknown")


def response_desc(code: int) -> str:
    """Human-readable name of a response type."""
    return _RESPONSE_NAMES.get(code, "unknown")
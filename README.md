# dqwire

`dqwire` speaks the dqlite client wire protocol in pure Python. It
encodes requests and decodes responses. It opens connections to
dqlite nodes over TCP (`host:port`) or abstract Unix sockets (`@name`),
and it finds the current cluster leader.

It has no dependencies outside the standard library.

## Installation

```
pip install dqwire
```

To run the test suite:

```
pip install "dqwire[test]"
pytest
```

## Overview

| Module | Purpose |
| --- | --- |
| `dqwire.message` | `Message` buffer with word-aligned `put_*`/`get_*` primitives, plus `Rows`, `Files`, `Result` and `align_up` |
| `dqwire.codec` | `encode_*` request builders and `decode_*` response readers |
| `dqwire.protocol` | `dial`, `handshake`, `decode_node_compat`, `Protocol` (request/response calls) and `LeaderTracker` |
| `dqwire.connector` | `Connector`, `new_leader_connector`, `new_direct_connector`, `ask_leader` |
| `dqwire.store` | `NodeRole`, `NodeInfo`, the abstract `NodeStore` and the in-memory `InmemNodeStore` |
| `dqwire.config` | `Config`: timeouts, backoff and retry settings, with `with_defaults()`, `backoff_delays()` and `retry_attempts()` |
| `dqwire.constants` | protocol versions, value type codes, request and response types, `request_desc`, `response_desc` |
| `dqwire.errors` | `ProtocolError`, `NoAvailableLeaderError`, `RequestError`, `SQLiteError`, `RowsPartError`, `EndOfRows` |
| `dqwire.log` | `Level`, plus the `stdout()` and `forward(logger)` log functions |
| `dqwire.tracing` | `Tracer`, `Span`, `NoopSpan`, `with_tracer`, `start` |
| `dqwire.node` | `LastEntryInfo` for ordering raft log entries, and `BOOTSTRAP_ID` |

## Connecting to the leader

```python
from dqwire.config import Config
from dqwire.connector import new_leader_connector
from dqwire.store import InmemNodeStore, NodeInfo
from dqwire import log

store = InmemNodeStore()
store.set([NodeInfo(id=1, address="127.0.0.1:9001"),
           NodeInfo(id=2, address="127.0.0.1:9002")])

connector = new_leader_connector(store, Config(retry_limit=3), log.stdout())
proto = connector.connect(timeout=5.0)
```

The connector first tries the last leader it knew. If that fails, it
probes every server in the store in parallel, voters first, and follows
any leader a server reports. Attempts are retried with binary exponential
backoff. `Config.retry_limit` of 0 means no limit; otherwise there are
`retry_limit + 1` attempts. Durations in `Config` are in seconds, and 0
selects the default: a 5 s dial timeout, a 15 s attempt timeout, a 0.1 s
backoff factor, a 1 s backoff cap and 10 concurrent probes. If no leader
can be reached, `connect` raises `NoAvailableLeaderError`.

With `Config(permit_shared=True)`, closing a leader connection hands it
back to the connector's `LeaderTracker`. The next `connect` reuses it if
the server still reports itself as the leader.

`new_direct_connector(id, address, config, log)` connects to one given
node without looking for the leader.

A custom `Config.dial` is called as `dial(address, timeout)` and must
return a connected socket. The default is `dqwire.protocol.dial`.

## Making a request

```python
from dqwire.message import Message
from dqwire.codec import encode_open, decode_db, encode_exec_sql_v0, decode_result

request, response = Message(64), Message(64)

encode_open(request, "test.db", 0, "volatile")
proto.call(request, response, deadline=None)
db = decode_db(response)

encode_exec_sql_v0(request, db, "CREATE TABLE t (n INT)", [])
proto.call(request, response, deadline=None)
result = decode_result(response)
print(result.last_insert_id, result.rows_affected)

proto.close()
```

`deadline` is an absolute `time.monotonic()` value, or `None`. After a
network error the `Protocol` keeps failing with the same error. If the
server replies with a failure, the decoders raise `RequestError`, which
carries the `code` and `description` sent by the server. A response of
an unexpected type raises `ProtocolError`.

Statement parameters may be `int`, `float`, `bool`, `bytes`, `str`,
`None` or `datetime`. Any other type raises `TypeError`.

## Reading rows and files

`decode_rows` returns a `Rows` object. Its `columns` lists the column
names, and `column_types()` gives each column's kind (`"INTEGER"`,
`"TEXT"`, `"TIME"`, ...). Call `next()` repeatedly to read rows as lists.
It raises `EndOfRows` once the result set is exhausted. It raises
`RowsPartError` when the server has more rows to send in a further
response; fetch that response with `Protocol.more`.

`decode_files` returns a `Files` object. Iterate over it to get
`(name, data)` pairs.

## Tracing

```python
from dqwire import tracing

with tracing.with_tracer(my_tracer):
    span = tracing.start("query", "SELECT 1")
    span.end()
```

Without an installed tracer, `start` returns a `NoopSpan`.

## Choosing a recovery template

When a cluster is recovered, each node's last raft entry can be held as a
`LastEntryInfo`. The node with the most recent entry is the one to use as
the template:

```python
from dqwire.node import LastEntryInfo

infos = [LastEntryInfo(term=1, index=2), LastEntryInfo(term=2, index=1)]
newest = max(infos)
assert infos[0].before(infos[1])
```

## What it does not do

`dqwire` is a client only. It cannot run a dqlite node. It cannot read a
node's data directory to get its `LastEntryInfo`. It cannot force a new
cluster membership or generate node IDs. It has no SQL driver layer and
no interactive shell. Work at the level of protocol messages, with
`Protocol` and the `codec` functions.
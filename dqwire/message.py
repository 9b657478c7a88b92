"""Binary encoding of request and response messages.

A message is a fixed 8-byte header followed by a body made of 64-bit words.
The header carries the number of body words, the message type, a schema
version and an extra 16-bit field.
"""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Optional, Sequence

from dqwire.constants import (
    BLOB,
    BOOLEAN,
    FLOAT,
    INTEGER,
    ISO8601,
    NULL,
    TEXT,
    UNIX_TIME,
)
from dqwire.errors import EndOfRows, ProtocolError, RowsPartError
from dqwire.store import NodeInfo, NodeRole

WORD_SIZE = 8
WORD_BITS = WORD_SIZE * 8
HEADER_SIZE = WORD_SIZE
MAX_CONSECUTIVE_EMPTY_READS = 100

_HEADER = struct.Struct("<IBBH")

_ROWS_MORE_MARKER = 0xEE
_ROWS_EOF_MARKER = 0xFF

_KIND_NAMES = {
    INTEGER: "INTEGER",
    FLOAT: "FLOAT",
    BLOB: "BLOB",
    TEXT: "TEXT",
    NULL: "NULL",
    UNIX_TIME: "TIME",
    ISO8601: "TIME",
    BOOLEAN: "BOOL",
}

_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})"
    r"(?:[ T](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,9}))?([+-]\d{2}:\d{2})?)?)?"
)


def align_up(n: int, a: int) -> int:
    """Round ``n`` up to a multiple of ``a``, which must be a power of 2."""
    return (n + a - 1) & ~(a - 1)


def _format_time(value: datetime) -> str:
    """Format a timestamp the way the server stores ISO 8601 values."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d} "
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    fraction = f"{value.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    offset = value.utcoffset() or timedelta(0)
    minutes = int(offset.total_seconds()) // 60
    sign = "-" if minutes < 0 else "+"
    hours, minutes = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def _parse_time(value: str) -> datetime:
    """Parse a timestamp in one of the accepted ISO 8601 layouts."""
    match = _TIME_RE.fullmatch(value)
    if match is None:
        raise ValueError(f"cannot parse time {value!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    tz = timezone.utc
    if offset is not None:
        sign = -1 if offset[0] == "-" else 1
        delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
        tz = timezone(sign * delta)
    microsecond = int((fraction or "").ljust(6, "0")[:6])
    try:
        return datetime(
            int(year),
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
            microsecond,
            tzinfo=tz,
        )
    except ValueError as exc:
        raise ValueError(f"cannot parse time {value!r}: {exc}") from exc


def _value_code(value: Any) -> int:
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, float):
        return FLOAT
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BLOB
    if isinstance(value, str):
        return TEXT
    if value is None:
        return NULL
    if isinstance(value, datetime):
        return ISO8601
    raise TypeError(f"unsupported value type: {type(value).__name__}")


@dataclass(frozen=True)
class Result:
    """Outcome of executing a statement."""

    last_insert_id: int
    rows_affected: int


class Message:
    """A single request or response, reusable across encodes and decodes."""

    def __init__(self, initial_size: int = 512) -> None:
        if initial_size % WORD_SIZE != 0:
            raise ValueError("initial buffer size is not aligned to word boundary")
        self.header = bytearray(HEADER_SIZE)
        self.body = bytearray(initial_size)
        self.offset = 0
        self.words = 0
        self.mtype = 0
        self.schema = 0
        self.extra = 0

    def reset(self) -> None:
        """Clear the header and rewind the body so the message can be reused."""
        self.words = 0
        self.mtype = 0
        self.schema = 0
        self.extra = 0
        self.header[:] = bytes(HEADER_SIZE)
        self.offset = 0

    def rewind(self) -> None:
        """Move the read/write position back to the start of the body."""
        self.offset = 0

    # Encoding.

    def _reserve(self, size: int) -> None:
        while self.offset + size > len(self.body):
            self.body.extend(bytes(max(len(self.body), WORD_SIZE)))

    def _put_bytes(self, data: bytes, padded: int) -> None:
        self._reserve(padded)
        end = self.offset + len(data)
        self.body[self.offset:end] = data
        self.body[end:self.offset + padded] = bytes(padded - len(data))
        self.offset += padded

    def _put(self, fmt: str, value: Any) -> None:
        size = struct.calcsize(fmt)
        self._reserve(size)
        struct.pack_into(fmt, self.body, self.offset, value)
        self.offset += size

    def put_blob(self, v: bytes) -> None:
        """Append a length-prefixed, word-padded byte string."""
        data = bytes(v)
        self.put_uint64(len(data))
        self._put_bytes(data, align_up(len(data), WORD_SIZE))

    def put_string(self, v: str) -> None:
        """Append a nul-terminated, word-padded string."""
        data = v.encode("utf-8") + b"\0"
        self._put_bytes(data, align_up(len(data), WORD_SIZE))

    def put_uint8(self, v: int) -> None:
        self._put("<B", v)

    def put_uint16(self, v: int) -> None:
        self._put("<H", v)

    def put_uint32(self, v: int) -> None:
        self._put("<I", v)

    def put_uint64(self, v: int) -> None:
        self._put("<Q", v)

    def put_int64(self, v: int) -> None:
        self._put("<q", v)

    def put_float64(self, v: float) -> None:
        self._put("<d", v)

    def _put_values(self, values: Sequence[Any]) -> None:
        codes = [_value_code(value) for value in values]
        for code in codes:
            self.put_uint8(code)

        trailing = self.offset % WORD_SIZE
        if trailing:
            self._put_bytes(b"", WORD_SIZE - trailing)

        for code, value in zip(codes, values):
            if code == INTEGER:
                self.put_int64(value)
            elif code == FLOAT:
                self.put_float64(value)
            elif code == BOOLEAN:
                self.put_uint64(1 if value else 0)
            elif code == BLOB:
                self.put_blob(value)
            elif code == TEXT:
                self.put_string(value)
            elif code == NULL:
                self.put_int64(0)
            else:
                self.put_string(_format_time(value))

    def put_named_values(self, values: Sequence[Any]) -> None:
        """Encode statement parameters with an 8-bit parameter count."""
        values = list(values)
        if not values:
            return
        if len(values) > 0xFF:
            raise ValueError("too many parameters")
        self.put_uint8(len(values))
        self._put_values(values)

    def put_named_values32(self, values: Sequence[Any]) -> None:
        """Encode statement parameters with a 32-bit parameter count."""
        values = list(values)
        if not values:
            return
        if len(values) > 0xFFFFFFFF:
            raise ValueError("too many parameters")
        self.put_uint32(len(values))
        self._put_values(values)

    def put_header(self, mtype: int, schema: int) -> None:
        """Finalize the message with its type, schema and body word count."""
        if self.offset <= 0:
            raise ValueError("static offset is not positive")
        if self.offset % WORD_SIZE != 0:
            raise ValueError("static body is not aligned")
        self.mtype = mtype
        self.schema = schema
        self.extra = 0
        self.words = self.offset // WORD_SIZE
        self._finalize()

    def _finalize(self) -> None:
        if self.words == 0:
            raise ValueError("empty message body")
        _HEADER.pack_into(self.header, 0, self.words, self.mtype, self.schema, self.extra)

    # Decoding.

    def _size(self) -> int:
        return self.words * WORD_SIZE

    def _check_get(self) -> None:
        if self.offset >= self._size():
            raise ProtocolError(
                f"short message: type={self.mtype} words={self.words} off={self.offset}"
            )

    def _get(self, fmt: str) -> Any:
        self._check_get()
        (value,) = struct.unpack_from(fmt, self.body, self.offset)
        self.offset += struct.calcsize(fmt)
        return value

    def get_string(self) -> str:
        """Read a nul-terminated, word-padded string."""
        self._check_get()
        end = self.body.find(b"\0", self.offset)
        if end == -1:
            raise ProtocolError("no string found")
        text = self.body[self.offset:end].decode("utf-8", errors="replace")
        self.offset += align_up(end - self.offset + 1, WORD_SIZE)
        return text

    def get_blob(self) -> bytes:
        """Read a length-prefixed, word-padded byte string."""
        size = self.get_uint64()
        self._check_get()
        data = bytes(self.body[self.offset:self.offset + size])
        self.offset += align_up(size, WORD_SIZE)
        return data

    def get_uint8(self) -> int:
        self._check_get()
        value = self.body[self.offset]
        self.offset += 1
        return value

    def get_uint32(self) -> int:
        return self._get("<I")

    def get_uint64(self) -> int:
        return self._get("<Q")

    def get_int64(self) -> int:
        return self._get("<q")

    def get_float64(self) -> float:
        return self._get("<d")

    def get_nodes(self) -> list[NodeInfo]:
        """Read a list of node descriptions."""
        return [self._get_node() for _ in range(self.get_uint64())]

    def _get_node(self) -> NodeInfo:
        node_id = self.get_uint64()
        address = self.get_string()
        raw_role = self.get_uint64()
        try:
            role: Any = NodeRole(raw_role)
        except ValueError:
            role = raw_role
        return NodeInfo(node_id, address, role)

    def get_result(self) -> Result:
        return Result(last_insert_id=self.get_uint64(), rows_affected=self.get_uint64())

    def get_rows(self) -> "Rows":
        """Read the column names of a result set; rows are read from the returned object."""
        columns = [self.get_string() for _ in range(self.get_uint64())]
        return Rows(columns, self)

    def get_files(self) -> "Files":
        return Files(self.get_uint64(), self)

    def has_been_consumed(self) -> bool:
        return self.offset == self._size()

    def last_byte(self) -> int:
        return self.body[self._size() - 1]


class _Marker(Enum):
    ROW = "row"
    PART = "part"
    EOF = "eof"


class Rows:
    """A result set encoded in a message body."""

    def __init__(self, columns: list[str], message: Message) -> None:
        self.columns = columns
        self.message = message
        self._types: Optional[list[int]] = None

    def _column_types(self, save: bool) -> tuple[list[int], _Marker]:
        if save and self._types is not None:
            return self._types, _Marker.ROW
        if self._types is None:
            self._types = [0] * len(self.columns)
        types = self._types

        if not types:
            return types, _Marker.EOF

        header_size = align_up(len(types) * 4, WORD_BITS) // WORD_BITS * WORD_SIZE

        for i in range(header_size):
            slot = self.message.get_uint8()
            if slot in (_ROWS_MORE_MARKER, _ROWS_EOF_MARKER):
                if save:
                    self.message.offset -= i + 1
                marker = _Marker.PART if slot == _ROWS_MORE_MARKER else _Marker.EOF
                return types, marker
            index = i * 2
            if index < len(types):
                types[index] = slot & 0x0F
            if index + 1 < len(types):
                types[index + 1] = slot >> 4

        if save:
            self.message.offset -= header_size
        return types, _Marker.ROW

    def next(self) -> list[Any]:
        """Decode the next row.

        Raises EndOfRows when the result set is exhausted and RowsPartError
        when more rows follow in another response.
        """
        types, marker = self._column_types(save=False)
        if marker is _Marker.EOF:
            raise EndOfRows()
        if marker is _Marker.PART:
            raise RowsPartError()
        return [self._decode(code) for code in types]

    def _decode(self, code: int) -> Any:
        message = self.message
        if code == INTEGER:
            return message.get_int64()
        if code == FLOAT:
            return message.get_float64()
        if code == BLOB:
            return message.get_blob()
        if code == TEXT:
            return message.get_string()
        if code == NULL:
            message.get_uint64()
            return None
        if code == UNIX_TIME:
            return datetime.fromtimestamp(message.get_int64(), tz=timezone.utc)
        if code == ISO8601:
            value = message.get_string()
            if not value:
                return None
            if value.endswith("Z"):
                value = value[:-1]
            return _parse_time(value)
        if code == BOOLEAN:
            return message.get_int64() != 0
        raise ProtocolError("unknown data type")

    def column_types(self) -> list[str]:
        """Return the declared kind of each column without consuming a row."""
        types, _ = self._column_types(save=True)
        kinds = []
        for code in types:
            kind = _KIND_NAMES.get(code)
            if kind is None:
                raise ProtocolError(f"unknown data type: {code}")
            kinds.append(kind)
        return kinds

    def close(self) -> None:
        """Reset the underlying message.

        Raises RowsPartError if unread rows follow in another response, and
        ProtocolError if the message ends without a row marker.
        """
        error: Optional[Exception] = None
        if not self.message.has_been_consumed():
            slot = self.message.last_byte()
            if slot == _ROWS_MORE_MARKER:
                error = RowsPartError()
            elif slot != _ROWS_EOF_MARKER:
                error = ProtocolError("unexpected end of message")
        self.message.reset()
        if error is not None:
            raise error


class Files:
    """A set of files encoded in a message body; iterate for (name, data) pairs."""

    def __init__(self, count: int, message: Message) -> None:
        self._remaining = count
        self.message = message

    def __iter__(self) -> Iterator[tuple[str, bytes]]:
        while self._remaining:
            self._remaining -= 1
            name = self.message.get_string()
            length = self.message.get_uint64()
            if length:
                self.message._check_get()
                end = self.message.offset + length
                if end > self.message._size():
                    raise ProtocolError("short message: file data truncated")
                data = bytes(self.message.body[self.message.offset:end])
                self.message.offset = end
            else:
                data = b""
            yield name, data

    def close(self) -> None:
        self.message.reset()
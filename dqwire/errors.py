"""Errors raised by the client protocol."""

from __future__ import annotations


class ProtocolError(Exception):
    """Base class for errors of the client protocol."""


class NoAvailableLeaderError(ProtocolError):
    """No leader server could be found in the cluster."""

    def __init__(self, message: str = "no available dqlite leader server found") -> None:
        super().__init__(message)


class RequestError(ProtocolError):
    """A request failed on the server side."""

    def __init__(self, code: int, description: str) -> None:
        super().__init__(code, description)
        self.code = code
        self.description = description

    def __str__(self) -> str:
        return f"{self.description} ({self.code})"


class SQLiteError(ProtocolError):
    """An error reported by SQLite."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


class RowsPartError(ProtocolError):
    """The current batch of rows is done, but more rows follow in another response."""

    def __init__(self, message: str = "not all rows were returned in this response") -> None:
        super().__init__(message)


class EndOfRows(ProtocolError):
    """The result set holds no more rows."""

    def __init__(self, message: str = "EOF") -> None:
        super().__init__(message)
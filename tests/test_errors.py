import pytest

from dqwire.errors import (
    EndOfRows,
    NoAvailableLeaderError,
    ProtocolError,
    RequestError,
    RowsPartError,
    SQLiteError,
)


def test_no_available_leader_message():
    assert str(NoAvailableLeaderError()) == "no available dqlite leader server found"


def test_request_error_format():
    err = RequestError(1, "boom")
    assert str(err) == "boom (1)"
    assert err.code == 1
    assert err.description == "boom"


def test_sqlite_error_uses_message():
    err = SQLiteError(21, "bad parameter or other API misuse")
    assert str(err) == "bad parameter or other API misuse"
    assert err.code == 21


def test_rows_part_message():
    assert str(RowsPartError()) == "not all rows were returned in this response"


@pytest.mark.parametrize(
    "error",
    [
        NoAvailableLeaderError(),
        RequestError(2, "x"),
        SQLiteError(1, "y"),
        RowsPartError(),
        EndOfRows(),
    ],
)
def test_all_errors_are_protocol_errors(error):
    with pytest.raises(ProtocolError) as info:
        raise error
    assert info.value is error
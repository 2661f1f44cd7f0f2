"""Forward-only query cursor over a single asyncpg connection."""

from __future__ import annotations

import asyncio
import io
import logging
import struct
import time
from contextlib import contextmanager
from datetime import date, datetime, time as dt_time, timedelta
from functools import partial
from typing import Any, Callable, Coroutine, Iterator, Sequence, TypeVar

import asyncpg

from .connstring import connect_kwargs
from .models import CursorState, Parameter
from .runner import EventLoopThread, default_runner
from .sql import affected_rows, bind_parameters

LOG = logging.getLogger(__name__)

T = TypeVar("T")

Column = int | str

DEFAULT_DATETIME_FORMATS: tuple[str, ...] = ("%Y-%m-%d %H:%M:%S",)
DEFAULT_TIMEDELTA_FORMATS: tuple[str, ...] = (
    "%d-%m-%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%d-%m-%Y",
    "%Y-%m-%d",
)

_COUNT_BATCH_SIZE = 500


class CursorError(RuntimeError):
    """Base class for cursor failures raised by this module."""


class InvalidStateError(CursorError):
    """Raised when an operation needs a cursor state the cursor is not in."""


class AlreadyOpenError(InvalidStateError):
    """Raised when opening a cursor that already holds a reader."""


class NotOpenError(InvalidStateError):
    """Raised when reading from or closing a cursor without a reader."""


class UnknownColumnError(CursorError, LookupError):
    """Raised when a column name is not part of the result set."""


class DuplicateParameterError(CursorError, ValueError):
    """Raised when a placeholder already has a pending parameter."""


class FormatError(CursorError, ValueError):
    """Raised when a date/time field matches none of the allowed formats."""


class FieldTypeError(CursorError, TypeError):
    """Raised when a field is NULL or cannot be converted to the requested type."""


class DatabaseConnectionError(CursorError, ConnectionError):
    """Raised when the database connection cannot be established."""


class _Reader:
    """Forward-only view over an asyncpg server-side cursor."""

    def __init__(self, statement: Any, cursor: Any) -> None:
        attributes = statement.get_attributes()
        self.columns: tuple[str, ...] = tuple(attr.name for attr in attributes)
        self.types: tuple[str, ...] = tuple(attr.type.name for attr in attributes)
        self.row: Any = None
        self.exhausted = False
        self.closed = False
        self._cursor = cursor
        self._pending: Any = None
        self._seen_rows = False

    async def advance(self, timeout: float | None) -> bool:
        if self._pending is not None:
            self.row, self._pending = self._pending, None
            return True
        if self.exhausted:
            return False
        row = await self._cursor.fetchrow(timeout=timeout)
        if row is None:
            self.exhausted = True
            self.row = None
            return False
        self.row = row
        self._seen_rows = True
        return True

    async def has_rows(self, timeout: float | None) -> bool:
        """Whether the result set has any row, buffering one row if needed."""

        if self._seen_rows or self._pending is not None:
            return True
        if self.exhausted:
            return False
        row = await self._cursor.fetchrow(timeout=timeout)
        if row is None:
            self.exhausted = True
            return False
        self._pending = row
        self._seen_rows = True
        return True


class QueryCursor:
    """Single-use cursor: one connection, one command, one forward-only result set.

    The cursor opens its own connection, executes a command and hands out
    typed accessors for the current row. Once closed it cannot be reopened.
    Use it as a context manager to guarantee the connection is released::

        with QueryCursor(connection_string, "SELECT name FROM accounts") as cursor:
            while cursor.read():
                print(cursor.field_string("name"))
    """

    def __init__(
        self,
        connection_string: str,
        command: str | None = None,
        *,
        timeout: float | None = None,
        connect_timeout: float = 5.0,
        runner: EventLoopThread | None = None,
    ) -> None:
        self._connection_string = connection_string
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._runner = runner or default_runner()
        self._parameters: list[Parameter] = []
        self._connection: Any = None
        self._transaction: Any = None
        self._statement: Any = None
        self._reader: _Reader | None = None
        self._args: tuple[object, ...] = ()
        self._state = CursorState.CLOSED
        self._elapsed: float | None = None
        self._retired = False
        self._reader_timeout: float | None = None
        if command is not None:
            self.open(command)

    def __enter__(self) -> QueryCursor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._reader_is_valid():
            self.close()

    # -- state -----------------------------------------------------------------

    @property
    def state(self) -> CursorState:
        return self._state

    @property
    def is_closed(self) -> bool:
        """Whether the cursor currently has no readable result set."""

        return not self._reader_is_valid()

    @property
    def elapsed_ms(self) -> int:
        """Execution time of the most recent command, in milliseconds."""

        if self._elapsed is None:
            raise InvalidStateError("Cannot determine execution time if no query has been executed")
        return int(self._elapsed * 1000)

    @property
    def parameters(self) -> tuple[Parameter, ...]:
        return tuple(self._parameters)

    @property
    def field_count(self) -> int:
        self._require_reader("count fields")
        return len(self._reader.columns)

    @property
    def server_version(self) -> str:
        self._require_reader("read the server version")
        version = self._connection.get_server_version()
        return f"{version.major}.{version.minor}"

    @property
    def database(self) -> str:
        """Name of the database the cursor is connected to."""

        self._require_reader("read the database name")
        return self._run(self._connection.fetchval("SELECT current_database()", timeout=self._reader_timeout))

    @property
    def has_rows(self) -> bool:
        """Whether the result set has at least one row; does not move the cursor."""

        self._require_reader("check for rows")
        return self._run(self._reader.has_rows(self._reader_timeout))

    @property
    def record_count(self) -> int:
        return self.get_record_count()

    # -- parameters --------------------------------------------------------------

    def add_parameter(self, parameter: Parameter) -> None:
        """Queue a parameter for the next command this cursor runs."""

        if any(existing.key == parameter.key for existing in self._parameters):
            raise DuplicateParameterError(f"Parameter '@{parameter.key}' already exists in cursor")
        self._parameters.append(parameter)

    def remove_parameter(self, parameter: Parameter) -> None:
        if parameter in self._parameters:
            self._parameters.remove(parameter)

    # -- execution ---------------------------------------------------------------

    def open(self, command: str, timeout: float | None = None) -> None:
        """Connect, execute ``command`` and position the reader before the first row."""

        if self._reader_is_valid():
            raise AlreadyOpenError("Cannot open a cursor that is already open")
        self._require_usable("open")
        statement = _require_sql(command)
        sql, args = bind_parameters(statement, self._parameters)
        self._state = CursorState.EXECUTING
        try:
            effective = self._effective_timeout(timeout)
            self._run(self._open(sql, args, effective))
        except Exception:
            self._state = CursorState.CLOSED
            raise
        self._args = args
        self._reader_timeout = effective
        self._state = CursorState.OPEN

    def execute(self, commands: str | Sequence[str], timeout: float | None = None) -> None:
        """Run one or more commands that return no rows, each on its own connection."""

        self._run_non_query(commands, timeout)

    def get_affected_record_count(self, commands: str | Sequence[str], timeout: float | None = None) -> int:
        """Run non-query command(s) and return the total number of affected rows."""

        return sum(self._run_non_query(commands, timeout))

    def execute_scalar(self, command: str, timeout: float | None = None) -> Any:
        """Return the first column of the first row, or ``None`` when there are no rows."""

        self._require_usable("execute a scalar command")
        sql, args = bind_parameters(_require_sql(command), self._parameters)
        with self._executing():
            return self._run(self._fetch_scalar(sql, args, self._effective_timeout(timeout)))

    def get_record_count(self) -> int:
        """Count every row by re-executing the command, then reset the reader.

        Runs the command twice more, so it is expensive, and any rows already
        consumed are replayed afterwards. Call it before reading.
        """

        self._require_reader("count records")
        with self._executing():
            return self._run(self._recount(self._reader_timeout))

    def close(self) -> None:
        """Release the reader, the prepared command and the parameters, then disconnect."""

        if not self._reader_is_valid():
            raise NotOpenError("Cannot close a cursor that is not open")
        transaction, connection = self._transaction, self._connection
        self._state = CursorState.CLOSED
        self._retired = True
        self._reader.closed = True
        self._reader = None
        self._statement = None
        self._transaction = None
        self._connection = None
        self._parameters = []
        self._args = ()
        self._run(_release(transaction, connection))

    # -- row navigation ------------------------------------------------------------

    def read(self) -> bool:
        """Advance to the next row; ``False`` once the result set is exhausted."""

        self._require_reader("read")
        return self._run(self._reader.advance(self._reader_timeout))

    async def read_async(self, cancel: asyncio.Event | None = None) -> bool:
        """Advance to the next row without blocking the caller's event loop.

        Cancelling the awaiting task, or setting ``cancel``, abandons the
        pending fetch and raises :class:`asyncio.CancelledError`.
        """

        self._require_reader("read asynchronously")
        future = asyncio.wrap_future(self._runner.submit(self._reader.advance(self._reader_timeout)))
        if cancel is None:
            return await future
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            future.cancel()
            raise
        finally:
            waiter.cancel()
        if future in done:
            return future.result()
        future.cancel()
        raise asyncio.CancelledError("Read cancelled by caller")

    def list_of_fields(self, column: Column) -> list[str]:
        """Read the remaining rows and collect one column as strings."""

        self._require_reader("list fields")
        ordinal = self._ordinal(column)
        values: list[str] = []
        with self._executing():
            while self.read():
                values.append(self.field_string(ordinal))
        return values

    def column_as_csv(self, column: Column) -> str:
        """Read the remaining rows and join one column with ``", "``."""

        self._require_reader("read column")
        return ", ".join(self.list_of_fields(column))

    def get_record(self, include_last: bool = False) -> list[str]:
        """Return the current row as strings.

        The last column is left out unless ``include_last`` is set, matching
        what existing callers of ``columns()`` expect.
        """

        self._require_row("read record")
        return [self.field_string(index) for index in range(self._column_span(include_last))]

    def columns(self, include_last: bool = False) -> dict[int, str]:
        """Map ordinals to column names, leaving out the last column by default."""

        self._require_reader("list columns")
        return {index: self._reader.columns[index] for index in range(self._column_span(include_last))}

    # -- column metadata -------------------------------------------------------------

    def field_name(self, index: int) -> str:
        self._require_reader("read field name")
        return self._reader.columns[self._ordinal(index)]

    def field_ordinal(self, name: str) -> int:
        self._require_reader("resolve field ordinal")
        return self._ordinal(name)

    def field_type(self, column: Column) -> str:
        """PostgreSQL type name of a column, e.g. ``int4`` or ``text``."""

        self._require_reader("read field type")
        return self._reader.types[self._ordinal(column)]

    # -- field accessors -------------------------------------------------------------

    def field(self, column: Column) -> Any:
        """Raw value of a column in the current row, as decoded by asyncpg."""

        return self._value(column, "read field")

    def field_is_null(self, column: Column) -> bool:
        return self._value(column, "check field for NULL") is None

    def field_bool(self, column: Column) -> bool:
        return self._typed(column, "bool", _to_bool)

    def field_byte(self, column: Column) -> int:
        return self._typed(column, "byte", partial(_to_ranged_int, low=0, high=255))

    def field_short(self, column: Column) -> int:
        return self._typed(column, "short", partial(_to_ranged_int, low=-(2**15), high=2**15 - 1))

    def field_int(self, column: Column) -> int:
        return self._typed(column, "int", partial(_to_ranged_int, low=-(2**31), high=2**31 - 1))

    def field_long(self, column: Column) -> int:
        return self._typed(column, "long", partial(_to_ranged_int, low=-(2**63), high=2**63 - 1))

    def field_double(self, column: Column) -> float:
        return self._typed(column, "double", float)

    def field_float(self, column: Column) -> float:
        return self._typed(column, "float", _to_single)

    def field_string(self, column: Column) -> str:
        return self._typed(column, "string", lambda value: value if isinstance(value, str) else str(value))

    def field_bytes(self, column: Column, offset: int = 0, length: int | None = None) -> bytes:
        """Return the binary value of a column, optionally sliced."""

        data = self._typed(column, "bytes", _to_bytes)
        end = None if length is None else offset + length
        return data[offset:end]

    def field_stream(self, column: Column) -> io.BytesIO:
        return io.BytesIO(self._typed(column, "stream", _to_bytes))

    def field_datetime(self, column: Column, formats: Sequence[str] = DEFAULT_DATETIME_FORMATS) -> datetime:
        """Return a timestamp column, parsing text values with ``formats``."""

        return self._typed(column, "datetime", partial(_to_datetime, formats=formats))

    def field_timedelta(self, column: Column, formats: Sequence[str] = DEFAULT_TIMEDELTA_FORMATS) -> timedelta:
        """Return an interval column.

        ``interval`` and ``time`` values convert directly. Text and timestamp
        values are read as a date and the day of month, hour, minute and
        second become the duration.
        """

        return self._typed(column, "timedelta", partial(_to_timedelta, formats=formats))

    # -- internals -------------------------------------------------------------------

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        return self._runner.run(coro)

    def _effective_timeout(self, timeout: float | None) -> float | None:
        value = self._timeout if timeout is None else timeout
        return value or None

    def _reader_is_valid(self) -> bool:
        if self._connection is None or self._connection.is_closed():
            return False
        if self._reader is None:
            return False
        return not self._reader.closed

    def _require_usable(self, operation: str) -> None:
        if self._retired:
            raise InvalidStateError(f"Cannot {operation}: cursor has been closed and cannot be reused")

    def _require_reader(self, operation: str) -> None:
        if not self._reader_is_valid():
            raise NotOpenError(f"Cannot {operation}: cursor is not open")

    def _require_row(self, operation: str) -> None:
        self._require_reader(operation)
        if self._reader.row is None:
            raise InvalidStateError(f"Cannot {operation}: no current row, call read() first")

    def _ordinal(self, column: Column) -> int:
        columns = self._reader.columns
        if isinstance(column, str):
            try:
                return columns.index(column)
            except ValueError:
                raise UnknownColumnError(f"Column '{column}' is not in the result set") from None
        if not 0 <= column < len(columns):
            raise IndexError(f"Column index {column} is out of range for {len(columns)} column(s)")
        return column

    def _column_span(self, include_last: bool) -> int:
        count = len(self._reader.columns)
        return count if include_last else max(count - 1, 0)

    def _value(self, column: Column, operation: str) -> Any:
        self._require_row(operation)
        return self._reader.row[self._ordinal(column)]

    def _typed(self, column: Column, kind: str, convert: Callable[[Any], T]) -> T:
        value = self._value(column, f"read {kind} field")
        if value is None:
            raise FieldTypeError(f"Column {column!r} is NULL; check field_is_null() before reading it as {kind}")
        try:
            return convert(value)
        except FormatError:
            raise
        except (TypeError, ValueError, OverflowError, struct.error) as exc:
            raise FieldTypeError(f"Column {column!r} cannot be read as {kind}: {value!r}") from exc

    @contextmanager
    def _executing(self) -> Iterator[None]:
        previous = self._state
        self._state = CursorState.EXECUTING
        try:
            yield
        finally:
            self._state = previous

    def _run_non_query(self, commands: str | Sequence[str], timeout: float | None) -> list[int]:
        self._require_usable("execute commands")
        batch = [commands] if isinstance(commands, str) else list(commands)
        effective = self._effective_timeout(timeout)
        counts: list[int] = []
        with self._executing():
            for command in batch:
                sql, args = bind_parameters(_require_sql(command), self._parameters)
                counts.append(self._run(self._execute_once(sql, args, effective)))
        return counts

    async def _connect(self) -> Any:
        kwargs = connect_kwargs(self._connection_string, timeout=self._connect_timeout)
        try:
            connection = await asyncpg.connect(**kwargs)
        except Exception as exc:
            raise DatabaseConnectionError(f"Failed to connect to database: {exc}") from exc
        LOG.debug("Connected to %s", kwargs.get("host") or kwargs.get("dsn", "<default>"))
        return connection

    async def _open(self, sql: str, args: tuple[object, ...], timeout: float | None) -> None:
        connection = await self._connect()
        try:
            transaction = connection.transaction()
            await transaction.start()
            started = time.perf_counter()
            statement = await connection.prepare(sql, timeout=timeout)
            cursor = await statement.cursor(*args, timeout=timeout)
            elapsed = time.perf_counter() - started
        except Exception:
            await connection.close()
            raise
        self._connection = connection
        self._transaction = transaction
        self._statement = statement
        self._reader = _Reader(statement, cursor)
        self._elapsed = elapsed
        LOG.debug("Opened cursor in %.1f ms", elapsed * 1000)

    async def _execute_once(self, sql: str, args: tuple[object, ...], timeout: float | None) -> int:
        connection = await self._connect()
        try:
            started = time.perf_counter()
            status = await connection.execute(sql, *args, timeout=timeout)
            self._elapsed = time.perf_counter() - started
        finally:
            await connection.close()
        LOG.debug("Executed command (%s) in %.1f ms", status, self._elapsed * 1000)
        return affected_rows(status)

    async def _fetch_scalar(self, sql: str, args: tuple[object, ...], timeout: float | None) -> Any:
        connection = await self._connect()
        try:
            started = time.perf_counter()
            value = await connection.fetchval(sql, *args, timeout=timeout)
            self._elapsed = time.perf_counter() - started
        finally:
            await connection.close()
        return value

    async def _recount(self, timeout: float | None) -> int:
        statement = self._statement
        counter = await statement.cursor(*self._args, timeout=timeout)
        count = 0
        while batch := await counter.fetch(_COUNT_BATCH_SIZE, timeout=timeout):
            count += len(batch)
        cursor = await statement.cursor(*self._args, timeout=timeout)
        self._reader.closed = True
        self._reader = _Reader(statement, cursor)
        return count


async def _release(transaction: Any, connection: Any) -> None:
    try:
        await transaction.commit()
    finally:
        await connection.close()


def _require_sql(command: str) -> str:
    statement = command.strip()
    if not statement:
        raise ValueError("Provide SQL to execute.")
    return statement


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise TypeError(f"{type(value).__name__} is not a boolean")


def _to_ranged_int(value: Any, *, low: int, high: int) -> int:
    if isinstance(value, bool):
        raise TypeError("bool is not an integer column")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{value} is not integral")
    number = int(value)
    if not low <= number <= high:
        raise OverflowError(f"{number} is outside [{low}, {high}]")
    return number


def _to_single(value: Any) -> float:
    return struct.unpack("f", struct.pack("f", float(value)))[0]


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"{type(value).__name__} is not binary data")


def _to_datetime(value: Any, *, formats: Sequence[str]) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, dt_time())
    if not isinstance(value, str):
        raise TypeError(f"{type(value).__name__} is not a date/time value")
    for fmt in formats:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise FormatError(f"{value!r} does not match any of the allowed formats {tuple(formats)}")


def _to_timedelta(value: Any, *, formats: Sequence[str]) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, dt_time):
        return timedelta(
            hours=value.hour,
            minutes=value.minute,
            seconds=value.second,
            microseconds=value.microsecond,
        )
    moment = _to_datetime(value, formats=formats)
    return timedelta(days=moment.day, hours=moment.hour, minutes=moment.minute, seconds=moment.second)


__all__ = [
    "AlreadyOpenError",
    "CursorError",
    "DatabaseConnectionError",
    "DEFAULT_DATETIME_FORMATS",
    "DEFAULT_TIMEDELTA_FORMATS",
    "DuplicateParameterError",
    "FieldTypeError",
    "FormatError",
    "InvalidStateError",
    "NotOpenError",
    "QueryCursor",
    "UnknownColumnError",
]

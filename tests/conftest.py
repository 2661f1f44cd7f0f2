"""In-memory stand-ins for the asyncpg objects the cursor talks to."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

import pytest


@dataclass(frozen=True)
class _FakeType:
    name: str


@dataclass(frozen=True)
class _FakeAttribute:
    name: str
    type: _FakeType


@dataclass
class _ResultSet:
    columns: tuple[tuple[str, str], ...]
    rows: list[tuple[Any, ...]]


@dataclass(frozen=True)
class _ServerVersion:
    major: int
    minor: int
    micro: int = 0


class _FakeCursor:
    def __init__(self, rows: list[tuple[Any, ...]], delay: float = 0.0) -> None:
        self._rows = rows
        self._position = 0
        self._delay = delay

    async def fetchrow(self, *, timeout: float | None = None) -> tuple[Any, ...] | None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._position >= len(self._rows):
            return None
        row = self._rows[self._position]
        self._position += 1
        return row

    async def fetch(self, n: int, *, timeout: float | None = None) -> list[tuple[Any, ...]]:
        batch = self._rows[self._position : self._position + n]
        self._position += len(batch)
        return batch


class _FakeStatement:
    def __init__(self, server: FakeServer, sql: str, result: _ResultSet) -> None:
        self._server = server
        self._sql = sql
        self._result = result

    def get_attributes(self) -> tuple[_FakeAttribute, ...]:
        return tuple(_FakeAttribute(name, _FakeType(kind)) for name, kind in self._result.columns)

    async def cursor(self, *args: object, timeout: float | None = None) -> _FakeCursor:
        self._server.executions.append((self._sql, args))
        self._server.cursor_timeouts.append(timeout)
        return _FakeCursor(list(self._result.rows), self._server.fetch_delay)


class _FakeTransaction:
    def __init__(self) -> None:
        self.started = False
        self.committed = False

    async def start(self) -> None:
        self.started = True

    async def commit(self) -> None:
        self.committed = True


class FakeConnection:
    def __init__(self, server: FakeServer, kwargs: dict[str, object]) -> None:
        self.server = server
        self.kwargs = kwargs
        self.closed = False
        self.transactions: list[_FakeTransaction] = []

    def is_closed(self) -> bool:
        return self.closed

    def transaction(self) -> _FakeTransaction:
        transaction = _FakeTransaction()
        self.transactions.append(transaction)
        return transaction

    def get_server_version(self) -> _ServerVersion:
        return _ServerVersion(16, 2)

    async def prepare(self, sql: str, *, timeout: float | None = None) -> _FakeStatement:
        self.server.prepared.append((sql, timeout))
        return _FakeStatement(self.server, sql, self.server.result_for(sql))

    async def execute(self, sql: str, *args: object, timeout: float | None = None) -> str:
        self.server.executions.append((sql, args))
        if sql in self.server.failures:
            raise self.server.failures[sql]
        return self.server.statuses.get(sql, "UPDATE 0")

    async def fetchval(self, sql: str, *args: object, timeout: float | None = None) -> Any:
        self.server.executions.append((sql, args))
        rows = self.server.result_for(sql).rows
        return rows[0][0] if rows else None

    async def close(self) -> None:
        self.closed = True


class FakeQueryError(RuntimeError):
    """Stands in for asyncpg.PostgresError raised by the server."""


@dataclass
class FakeServer:
    """Fake database answering the statements registered on it."""

    results: dict[str, _ResultSet] = field(default_factory=dict)
    statuses: dict[str, str] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)
    connections: list[FakeConnection] = field(default_factory=list)
    executions: list[tuple[str, tuple[object, ...]]] = field(default_factory=list)
    prepared: list[tuple[str, float | None]] = field(default_factory=list)
    cursor_timeouts: list[float | None] = field(default_factory=list)
    connect_error: Exception | None = None
    fetch_delay: float = 0.0

    def add_result(self, sql: str, columns: Sequence[str | tuple[str, str]], rows: Sequence[Sequence[Any]]) -> None:
        normalized = tuple(column if isinstance(column, tuple) else (column, "text") for column in columns)
        self.results[sql] = _ResultSet(normalized, [tuple(row) for row in rows])

    def result_for(self, sql: str) -> _ResultSet:
        if sql in self.failures:
            raise self.failures[sql]
        try:
            return self.results[sql]
        except KeyError:
            raise FakeQueryError(f"relation for {sql!r} does not exist") from None

    async def connect(self, **kwargs: object) -> FakeConnection:
        if self.connect_error is not None:
            raise self.connect_error
        connection = FakeConnection(self, kwargs)
        self.connections.append(connection)
        return connection


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    server = FakeServer()
    monkeypatch.setattr("recordset.query.asyncpg.connect", server.connect)
    return server

"""Shared dataclasses used across the registry and cursor modules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Environment(str, Enum):
    """Well-known profile keys an application can register strings for."""

    LIVE = "Live"
    DEV = "Dev"


class CursorState(str, Enum):
    """Lifecycle of a query cursor."""

    CLOSED = "closed"
    EXECUTING = "executing"
    OPEN = "open"


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """A named connection string pointing at one database environment."""

    name: str
    connection_string: str


@dataclass(frozen=True, slots=True)
class Parameter:
    """Value bound to an ``@name`` placeholder in a SQL command."""

    name: str
    value: object = None

    @property
    def key(self) -> str:
        return self.name.lstrip("@")


__all__ = ["ConnectionProfile", "CursorState", "Environment", "Parameter"]

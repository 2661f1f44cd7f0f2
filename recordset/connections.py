"""Connection-string registry shared by the cursors of an application."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import ClassVar, Mapping

from .config import AppConfig, load_config
from .connstring import looks_like_connection_string
from .models import ConnectionProfile, Environment
from .query import QueryCursor
from .runner import EventLoopThread

LOG = logging.getLogger(__name__)

LIST_DATABASES_QUERY = "SELECT datname AS name FROM pg_catalog.pg_database ORDER BY datname ASC"

ProfileKey = Environment | str


class RegistryError(RuntimeError):
    """Base class for registry failures."""


class ConfigurationError(RegistryError):
    """Raised when the registry is missing or cannot be built."""


class UninitializedError(ConfigurationError):
    """Raised when the shared registry is requested before it exists."""


class UnknownProfileError(RegistryError, LookupError):
    """Raised when a profile key has no registered connection string."""


class ConnectionRegistry:
    """Maps environment names to connection strings and hands out cursors.

    Construct one at startup and pass it to whatever needs database access.
    ``get_instance`` keeps a process-wide instance for code that cannot be
    handed one explicitly.
    """

    _instance: ClassVar[ConnectionRegistry | None] = None

    def __init__(
        self,
        profiles: Mapping[str, str],
        default: ProfileKey | None = None,
        *,
        command_timeout: float | None = None,
        connect_timeout: float = 5.0,
        runner: EventLoopThread | None = None,
    ) -> None:
        self._profiles: Mapping[str, str] = MappingProxyType(dict(profiles))
        self._command_timeout = command_timeout
        self._connect_timeout = connect_timeout
        self._runner = runner
        if default is None:
            if not self._profiles:
                raise ConfigurationError(
                    "Registry needs at least one profile or an explicit default connection string."
                )
            default = next(iter(self._profiles))
        self._default = self._connection_string_for(default)
        LOG.debug("Connection registry ready with %d profile(s)", len(self._profiles))

    @classmethod
    def from_config(cls, config: AppConfig, default: ProfileKey | None = None) -> ConnectionRegistry:
        """Build a registry from loaded configuration."""

        return cls(
            config.connection_strings(),
            default if default is not None else config.default_profile,
            command_timeout=config.command_timeout,
            connect_timeout=config.connect_timeout,
        )

    @classmethod
    def get_instance(
        cls,
        profile: ProfileKey | None = None,
        *,
        config: AppConfig | None = None,
    ) -> ConnectionRegistry:
        """Return the process-wide registry, creating it on the first call.

        Arguments only matter on the call that creates the instance; later
        calls return the existing registry unchanged.
        """

        if cls._instance is None:
            if profile is None and config is None:
                raise UninitializedError("Connection registry has not been initialized.")
            cls._instance = cls.from_config(config or load_config(), default=profile)
        return cls._instance

    @classmethod
    def is_available(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the process-wide registry (testing helper)."""

        cls._instance = None

    @property
    def default_connection_string(self) -> str:
        return self._default

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        return tuple(ConnectionProfile(name, value) for name, value in self._profiles.items())

    def list_profiles(self) -> list[str]:
        """Every registered profile name, in registration order."""

        return list(self._profiles)

    def resolve(self, key: ProfileKey) -> str:
        """Return the connection string registered under ``key``."""

        name = key.value if isinstance(key, Environment) else key
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownProfileError(f"Unknown connection profile '{name}'") from None

    def cursor(
        self,
        command: str | None = None,
        *,
        profile: ProfileKey | None = None,
        timeout: float | None = None,
    ) -> QueryCursor:
        """Create a cursor bound to ``profile`` or the default connection."""

        connection_string = self._default if profile is None else self._connection_string_for(profile)
        return QueryCursor(
            connection_string,
            command,
            timeout=self._command_timeout if timeout is None else timeout,
            connect_timeout=self._connect_timeout,
            runner=self._runner,
        )

    def list_databases(self, connection: ProfileKey | None = None) -> list[str]:
        """Names of every database on the server, in ascending order."""

        with self.cursor(LIST_DATABASES_QUERY, profile=connection) as cursor:
            return cursor.list_of_fields("name")

    def _connection_string_for(self, key: ProfileKey) -> str:
        if isinstance(key, Environment) or key in self._profiles:
            return self.resolve(key)
        if looks_like_connection_string(key):
            return key
        raise UnknownProfileError(f"Unknown connection profile '{key}'")


__all__ = [
    "ConfigurationError",
    "ConnectionRegistry",
    "LIST_DATABASES_QUERY",
    "RegistryError",
    "UninitializedError",
    "UnknownProfileError",
]

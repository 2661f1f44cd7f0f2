"""Connection string rendering and translation into asyncpg connect arguments."""

from __future__ import annotations

CONNECTION_STRING_TEMPLATE = (
    "Data Source={host};Initial Catalog={database};User ID={user};"
    "Password={password};MultipleActiveResultSets=False"
)

_URI_PREFIXES = ("postgres://", "postgresql://")

_KEY_ALIASES: dict[str, str] = {
    "data source": "host",
    "server": "host",
    "address": "host",
    "host": "host",
    "initial catalog": "database",
    "database": "database",
    "user id": "user",
    "uid": "user",
    "user": "user",
    "password": "password",
    "pwd": "password",
    "port": "port",
}


def build_connection_string(host: str, database: str = "", user: str = "", password: str = "") -> str:
    """Render the standard connection string template."""

    return CONNECTION_STRING_TEMPLATE.format(host=host, database=database, user=user, password=password)


def looks_like_connection_string(value: str) -> bool:
    """Whether ``value`` is a literal connection string rather than a profile name."""

    return "=" in value or value.startswith(_URI_PREFIXES)


def connect_kwargs(connection_string: str, *, timeout: float | None = None) -> dict[str, object]:
    """Translate a connection string into keyword arguments for ``asyncpg.connect``."""

    kwargs: dict[str, object] = {}
    text = connection_string.strip()
    if not text:
        raise ValueError("Connection string is empty.")
    if text.startswith(_URI_PREFIXES):
        kwargs["dsn"] = text
    else:
        for segment in text.split(";"):
            if not segment.strip():
                continue
            key, sep, value = segment.partition("=")
            if not sep:
                raise ValueError(f"Malformed connection string segment: {segment.strip()!r}")
            target = _KEY_ALIASES.get(key.strip().lower())
            value = value.strip()
            if target is None or not value:
                continue
            if target == "host" and "," in value:
                value, port = (part.strip() for part in value.split(",", 1))
                kwargs["port"] = _parse_port(port)
            if target == "port":
                kwargs["port"] = _parse_port(value)
            else:
                kwargs[target] = value
    if timeout is not None:
        kwargs["timeout"] = timeout
    return kwargs


def _parse_port(value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid port in connection string: {value!r}") from exc


__all__ = [
    "CONNECTION_STRING_TEMPLATE",
    "build_connection_string",
    "connect_kwargs",
    "looks_like_connection_string",
]

"""Tests for the connection registry."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from recordset import config as config_module
from recordset.config import AppConfig, ProfileConfig
from recordset.connections import (
    LIST_DATABASES_QUERY,
    ConfigurationError,
    ConnectionRegistry,
    UninitializedError,
    UnknownProfileError,
)
from recordset.models import ConnectionProfile, Environment
from recordset.query import QueryCursor

DEV = "Data Source=localhost;Initial Catalog=app;User ID=dev;Password=dev;MultipleActiveResultSets=False"
LIVE = "Data Source=db.prod;Initial Catalog=app;User ID=svc;Password=s3cret;MultipleActiveResultSets=False"


@pytest.fixture(autouse=True)
def _reset_singleton() -> Iterator[None]:
    ConnectionRegistry.reset_instance()
    yield
    ConnectionRegistry.reset_instance()


def test_resolve_returns_registered_strings() -> None:
    registry = ConnectionRegistry({"Dev": DEV, "Live": LIVE})

    assert registry.resolve("Dev") == DEV
    assert registry.resolve(Environment.LIVE) == LIVE
    with pytest.raises(UnknownProfileError):
        registry.resolve("Prod")


def test_unknown_profile_is_a_lookup_error() -> None:
    registry = ConnectionRegistry({"Dev": DEV})

    with pytest.raises(LookupError):
        registry.resolve("Staging")


def test_default_connection_string_selection() -> None:
    assert ConnectionRegistry({"Dev": DEV, "Live": LIVE}).default_connection_string == DEV
    assert ConnectionRegistry({"Dev": DEV, "Live": LIVE}, "Live").default_connection_string == LIVE
    assert ConnectionRegistry({"Dev": DEV, "Live": LIVE}, Environment.LIVE).default_connection_string == LIVE
    assert ConnectionRegistry({}, "postgresql://localhost/app").default_connection_string == "postgresql://localhost/app"


def test_invalid_default_raises() -> None:
    with pytest.raises(ConfigurationError):
        ConnectionRegistry({})
    with pytest.raises(UnknownProfileError):
        ConnectionRegistry({"Dev": DEV}, "Prod")


def test_list_profiles_keeps_registration_order() -> None:
    registry = ConnectionRegistry({"Live": LIVE, "Dev": DEV})

    assert registry.list_profiles() == ["Live", "Dev"]
    assert registry.profiles == (ConnectionProfile("Live", LIVE), ConnectionProfile("Dev", DEV))


def test_registry_mapping_is_read_only() -> None:
    source = {"Dev": DEV}
    registry = ConnectionRegistry(source)
    source["Live"] = LIVE

    assert registry.list_profiles() == ["Dev"]


def test_get_instance_requires_initialization() -> None:
    assert ConnectionRegistry.is_available() is False

    with pytest.raises(UninitializedError):
        ConnectionRegistry.get_instance()


def test_get_instance_ignores_later_arguments() -> None:
    config = AppConfig(profiles=[ProfileConfig(name="Dev", connection_string=DEV), ProfileConfig(name="Live", connection_string=LIVE)])

    first = ConnectionRegistry.get_instance(Environment.LIVE, config=config)
    second = ConnectionRegistry.get_instance("Dev", config=config)

    assert first is second
    assert second.default_connection_string == LIVE
    assert ConnectionRegistry.get_instance() is first
    assert ConnectionRegistry.is_available() is True


def test_get_instance_loads_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        f"""
default_profile = "Live"
command_timeout = 15

[[profiles]]
name = "Dev"
connection_string = "{DEV}"

[[profiles]]
name = "Live"
connection_string = "{LIVE}"
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    registry = ConnectionRegistry.get_instance("Dev")

    assert registry.list_profiles() == ["Dev", "Live"]
    assert registry.default_connection_string == DEV


def test_from_config_uses_config_default() -> None:
    config = AppConfig(
        default_profile="Live",
        profiles=[ProfileConfig(name="Dev", host="localhost"), ProfileConfig(name="Live", connection_string=LIVE)],
    )

    registry = ConnectionRegistry.from_config(config)

    assert registry.default_connection_string == LIVE
    assert registry.resolve("Dev").startswith("Data Source=localhost;")


def test_cursor_uses_registry_settings(fake_server) -> None:  # type: ignore[no-untyped-def]
    fake_server.add_result("SELECT 1", ["one"], [(1,)])
    registry = ConnectionRegistry({"Dev": DEV, "Live": LIVE}, command_timeout=9, connect_timeout=1.5)

    with registry.cursor("SELECT 1", profile=Environment.LIVE) as cursor:
        assert isinstance(cursor, QueryCursor)
        assert cursor.read() is True

    assert fake_server.connections[0].kwargs["host"] == "db.prod"
    assert fake_server.connections[0].kwargs["timeout"] == 1.5
    assert fake_server.prepared == [("SELECT 1", 9)]


def test_list_databases_returns_names_and_closes(fake_server) -> None:  # type: ignore[no-untyped-def]
    fake_server.add_result(LIST_DATABASES_QUERY, ["name"], [("AppDB",), ("master",), ("tempdb",)])
    registry = ConnectionRegistry({"Dev": DEV})

    names = registry.list_databases()

    assert names == ["AppDB", "master", "tempdb"]
    assert len(fake_server.connections) == 1
    assert fake_server.connections[0].closed is True


def test_list_databases_targets_given_connection(fake_server) -> None:  # type: ignore[no-untyped-def]
    fake_server.add_result(LIST_DATABASES_QUERY, ["name"], [("postgres",)])
    registry = ConnectionRegistry({"Dev": DEV, "Live": LIVE})

    registry.list_databases("Live")
    registry.list_databases("postgresql://analytics.internal/postgres")

    assert fake_server.connections[0].kwargs["host"] == "db.prod"
    assert fake_server.connections[1].kwargs["dsn"] == "postgresql://analytics.internal/postgres"

"""Registry configuration loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from pydantic import BaseModel, Field

from .connstring import build_connection_string

CONFIG_FILE = Path.home() / ".config" / "recordset" / "config.toml"


class ProfileConfig(BaseModel):
    """Connection profile stored in config.toml.

    Either give a full ``connection_string`` or the parts used to render the
    standard template.
    """

    name: str
    connection_string: str | None = None
    host: str | None = None
    database: str = ""
    user: str = ""
    password: str = ""

    def render(self) -> str:
        """Return the connection string this profile points at."""

        if self.connection_string:
            return self.connection_string
        return build_connection_string(self.host or "localhost", self.database, self.user, self.password)


class AppConfig(BaseModel):
    """Shape of the configuration file."""

    default_profile: str | None = None
    command_timeout: float | None = None
    connect_timeout: float = 5.0
    profiles: list[ProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))

    def connection_strings(self) -> dict[str, str]:
        """Profile name to connection string, in file order."""

        return {profile.name: profile.render() for profile in self.profiles}

    def with_default_profile(self, name: str) -> AppConfig:
        """Return a copy with the default profile updated."""

        return self.model_copy(update={"default_profile": name})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()

    profiles_data = data.get("profiles")
    profiles: list[ProfileConfig] | None = None
    if isinstance(profiles_data, list):
        profiles = [ProfileConfig(**profile) for profile in profiles_data if isinstance(profile, dict)]

    return AppConfig(
        default_profile=data.get("default_profile"),
        command_timeout=data.get("command_timeout"),
        connect_timeout=data.get("connect_timeout", AppConfig.model_fields["connect_timeout"].default),
        profiles=profiles if profiles is not None else list(_default_profiles()),
    )


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    if config.default_profile:
        lines.append(f"default_profile = {_quote(config.default_profile)}")
    if config.command_timeout is not None:
        lines.append(f"command_timeout = {config.command_timeout}")
    lines.append(f"connect_timeout = {config.connect_timeout}")
    for profile in config.profiles:
        lines.append("")
        lines.append("[[profiles]]")
        lines.append(f"name = {_quote(profile.name)}")
        if profile.connection_string:
            lines.append(f"connection_string = {_quote(profile.connection_string)}")
        if profile.host:
            lines.append(f"host = {_quote(profile.host)}")
        for key in ("database", "user", "password"):
            value = getattr(profile, key)
            if value:
                lines.append(f"{key} = {_quote(value)}")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _quote(value: str) -> str:
    """Render ``value`` as a TOML basic string."""

    escaped: list[str] = []
    for char in value:
        if char in ('"', "\\"):
            escaped.append("\\" + char)
        elif char == "\n":
            escaped.append("\\n")
        elif char == "\t":
            escaped.append("\\t")
        elif char == "\r":
            escaped.append("\\r")
        elif ord(char) < 0x20 or ord(char) == 0x7F:
            escaped.append(f"\\u{ord(char):04X}")
        else:
            escaped.append(char)
    return '"' + "".join(escaped) + '"'


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    default_profile = raw.get("default_profile")
    if isinstance(default_profile, str):
        data["default_profile"] = default_profile
    for key in ("command_timeout", "connect_timeout"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = float(value)
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed_profiles: list[dict[str, object]] = []
        for profile in profiles:
            if not isinstance(profile, dict):
                continue
            parsed: dict[str, object] = {}
            for key in ("name", "connection_string", "host", "database", "user", "password"):
                value = profile.get(key)
                if isinstance(value, str):
                    parsed[key] = value
            if parsed.get("name"):
                parsed_profiles.append(parsed)
        if parsed_profiles:
            data["profiles"] = parsed_profiles
    return data


def _default_profiles() -> tuple[ProfileConfig, ...]:
    """Profiles available before the config file is customized."""

    return (
        ProfileConfig(
            name="Dev",
            host="localhost",
            database="postgres",
            user="postgres",
        ),
    )


__all__ = ["AppConfig", "CONFIG_FILE", "ProfileConfig", "load_config", "save_config"]

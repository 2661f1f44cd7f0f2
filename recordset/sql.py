"""SQL text helpers: named parameter binding and command status parsing."""

from __future__ import annotations

import re
from typing import Sequence

from .models import Parameter

# String literals, dollar-quoted bodies, quoted identifiers and comments are
# matched first so that placeholders inside them are left alone.
_PLACEHOLDER_PATTERN = re.compile(
    r"'(?:[^']|'')*'"
    r"|\$(?P<tag>(?:[A-Za-z_]\w*)?)\$.*?\$(?P=tag)\$"
    r'|"(?:[^"]|"")*"'
    r"|--[^\n]*"
    r"|/\*.*?\*/"
    r"|(?<![@\w])@(?P<name>[A-Za-z_]\w*)",
    re.DOTALL,
)


def bind_parameters(command: str, parameters: Sequence[Parameter]) -> tuple[str, tuple[object, ...]]:
    """Rewrite ``@name`` placeholders to ``$n`` and return the positional arguments.

    Arguments are numbered in order of first use in the command. Placeholders
    with no matching parameter, and parameters the command never mentions,
    are left out.
    """

    if not parameters:
        return command, ()
    lookup = {parameter.key: parameter for parameter in parameters}
    positions: dict[str, int] = {}
    args: list[object] = []

    def _substitute(match: re.Match[str]) -> str:
        name = match.group("name")
        if name is None or name not in lookup:
            return match.group(0)
        if name not in positions:
            args.append(lookup[name].value)
            positions[name] = len(args)
        return f"${positions[name]}"

    return _PLACEHOLDER_PATTERN.sub(_substitute, command), tuple(args)


def affected_rows(status: str | None) -> int:
    """Row count reported in a command status tag such as ``INSERT 0 3``."""

    if not status:
        return 0
    tail = status.rsplit(None, 1)[-1]
    return int(tail) if tail.isdigit() else 0


__all__ = ["affected_rows", "bind_parameters"]

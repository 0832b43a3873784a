"""Variable substitution for ``$NAME``, ``${NAME}``, ``${NAME:-word}`` and ``${NAME:+word}``."""

from __future__ import annotations

import re
from collections.abc import Mapping

from layersmith.core.errors import UndefinedArgumentError

_REFERENCE = re.compile(
    r"\\\$"
    r"|\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:[-+])(?P<word>[^}]*))?\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


def substitute(text: str, scope: Mapping[str, str | None]) -> str:
    """Expand variable references in ``text`` against ``scope``.

    A name mapped to None is declared but unset.  ``\\$`` yields a literal
    dollar sign.

    Raises
    ------
    UndefinedArgumentError
        A plain reference names an undeclared or unset variable.
    """

    def _replace(match: re.Match[str]) -> str:
        if match.group(0) == "\\$":
            return "$"
        name = match.group("braced") or match.group("bare")
        value = scope.get(name)
        op = match.group("op")
        if op == ":-":
            return value if value else match.group("word")
        if op == ":+":
            return match.group("word") if value else ""
        if value is None:
            raise UndefinedArgumentError(name)
        return value

    return _REFERENCE.sub(_replace, text)


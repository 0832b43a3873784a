"""Build-file parser: text in, typed instruction sequence per stage out.

Handles line continuations, comments, case-insensitive keywords, the three
argument forms (plain/shell, JSON exec arrays, KEY=value pairs) and the
structural checks that can be made without executing anything.
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Iterator

from layersmith.core.errors import DockerfileSyntaxError
from layersmith.models.instructions import (
    KEYWORDS,
    ArgumentForm,
    Instruction,
    InstructionKind,
)
from layersmith.models.stages import BuildFile, StageDefinition

_ARG_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_STAGE_ALIAS = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")
_PORT_SPEC = re.compile(r"^\d{1,5}(/(tcp|udp))?$", re.IGNORECASE)
_OCTAL_MODE = re.compile(r"^[0-7]{3,4}$")

# Flags each kind accepts; anything else is a syntax error.
_ALLOWED_FLAGS: dict[InstructionKind, frozenset[str]] = {
    InstructionKind.BASE_IMAGE: frozenset({"platform"}),
    InstructionKind.COPY: frozenset({"from", "chmod"}),
    InstructionKind.ADD: frozenset({"chmod"}),
}


def parse_build_file(text: str) -> BuildFile:
    """Parse build-file text into a ``BuildFile``.

    Raises
    ------
    DockerfileSyntaxError
        Unknown keyword, bad arity, bad flag, instruction before the first
        FROM (other than ARG), or duplicate stage alias.
    """
    global_args: list[Instruction] = []
    stages: list[tuple[str, str | None, list[Instruction]]] = []
    seen_aliases: set[str] = set()

    for lineno, logical in _logical_lines(text):
        parts = logical.split(None, 1)
        keyword = parts[0].upper()
        rest = parts[1].strip() if len(parts) > 1 else ""

        kind = KEYWORDS.get(keyword)
        if kind is None:
            raise DockerfileSyntaxError(
                f"Unknown instruction {parts[0]!r}: {logical}", line=lineno
            )
        if not rest:
            raise DockerfileSyntaxError(
                f"{keyword} requires at least one argument", line=lineno
            )

        flags, rest = _split_flags(kind, rest, lineno)
        parsed = _parse_arguments(kind, rest, lineno)

        if kind is InstructionKind.BASE_IMAGE:
            image, alias = parsed
            base = Instruction(
                kind=kind, args=(image,), flags=flags, line=lineno, source=logical
            )
            body = [base]
            if alias is not None:
                if alias.lower() in seen_aliases:
                    raise DockerfileSyntaxError(
                        f"Duplicate stage alias {alias!r}", line=lineno
                    )
                seen_aliases.add(alias.lower())
                body.append(
                    Instruction(
                        kind=InstructionKind.STAGE_ALIAS,
                        args=(alias,),
                        line=lineno,
                        source=logical,
                    )
                )
            stages.append((image, alias, body))
            continue

        args, form = parsed
        instruction = Instruction(
            kind=kind, args=args, flags=flags, form=form, line=lineno, source=logical
        )
        if not stages:
            if kind is InstructionKind.ARG:
                global_args.append(instruction)
                continue
            raise DockerfileSyntaxError(
                f"{keyword} before the first FROM; a stage must start with FROM",
                line=lineno,
            )
        stages[-1][2].append(instruction)

    if not stages:
        raise DockerfileSyntaxError("Build file declares no FROM instruction")

    return BuildFile(
        global_args=tuple(global_args),
        stages=tuple(
            StageDefinition(index=i, alias=alias, base=image, instructions=tuple(body))
            for i, (image, alias, body) in enumerate(stages)
        ),
    )


# ---------------------------------------------------------------------------
# Lexing
# ---------------------------------------------------------------------------


def _logical_lines(text: str) -> Iterator[tuple[int, str]]:
    """Yield (first physical line number, joined logical line).

    Trailing backslashes join lines; comment and blank lines are skipped,
    including those inside a continuation.
    """
    buffer: list[str] = []
    start = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if not buffer:
            start = lineno
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        yield start, " ".join(p for p in buffer if p)
        buffer = []
    if buffer:
        yield start, " ".join(p for p in buffer if p)


def _split_flags(
    kind: InstructionKind, rest: str, lineno: int
) -> tuple[dict[str, str], str]:
    """Peel leading ``--name=value`` flags off an argument string."""
    flags: dict[str, str] = {}
    allowed = _ALLOWED_FLAGS.get(kind, frozenset())
    while rest.startswith("--"):
        token, _, rest = rest.partition(" ")
        rest = rest.strip()
        name, sep, value = token[2:].partition("=")
        if not sep or not name or not value:
            raise DockerfileSyntaxError(
                f"Malformed flag {token!r}; expected --name=value", line=lineno
            )
        if name not in allowed:
            raise DockerfileSyntaxError(
                f"Unknown flag --{name} for {kind.value}", line=lineno
            )
        if name == "chmod" and not _OCTAL_MODE.match(value):
            raise DockerfileSyntaxError(
                f"--chmod expects an octal mode, got {value!r}", line=lineno
            )
        flags[name] = value
    if not rest:
        raise DockerfileSyntaxError(
            f"{kind.value} has flags but no arguments", line=lineno
        )
    return flags, rest


def _json_array(rest: str) -> list[str] | None:
    """Return the exec-form array if ``rest`` is a JSON list of strings."""
    if not rest.startswith("["):
        return None
    try:
        value = json.loads(rest)
    except json.JSONDecodeError:
        return None
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    return None


# ---------------------------------------------------------------------------
# Per-kind argument parsing and arity
# ---------------------------------------------------------------------------


def _parse_arguments(kind: InstructionKind, rest: str, lineno: int):
    if kind is InstructionKind.BASE_IMAGE:
        return _parse_from(rest, lineno)
    if kind is InstructionKind.WORKDIR:
        return (rest,), ArgumentForm.PLAIN
    if kind in (InstructionKind.COPY, InstructionKind.ADD):
        return _parse_paths(kind, rest, lineno)
    if kind in (InstructionKind.RUN, InstructionKind.CMD, InstructionKind.ENTRYPOINT):
        return _parse_command(kind, rest, lineno)
    if kind is InstructionKind.ENV:
        return _parse_env(rest, lineno)
    if kind is InstructionKind.ARG:
        return _parse_arg(rest, lineno)
    if kind is InstructionKind.EXPOSE:
        return _parse_expose(rest, lineno)
    raise DockerfileSyntaxError(f"Unsupported instruction {kind.value}", line=lineno)


def _parse_from(rest: str, lineno: int) -> tuple[str, str | None]:
    tokens = rest.split()
    if len(tokens) == 1:
        return tokens[0], None
    if len(tokens) == 3 and tokens[1].lower() == "as":
        alias = tokens[2]
        if not _STAGE_ALIAS.match(alias):
            raise DockerfileSyntaxError(
                f"Invalid stage alias {alias!r}", line=lineno
            )
        return tokens[0], alias
    raise DockerfileSyntaxError(
        "FROM expects 'image' or 'image AS name'", line=lineno
    )


def _parse_paths(
    kind: InstructionKind, rest: str, lineno: int
) -> tuple[tuple[str, ...], ArgumentForm]:
    array = _json_array(rest)
    if array is not None:
        paths, form = array, ArgumentForm.EXEC
    else:
        paths, form = rest.split(), ArgumentForm.PLAIN
    if len(paths) < 2:
        raise DockerfileSyntaxError(
            f"{kind.value} requires at least one source and a destination",
            line=lineno,
        )
    if len(paths) > 2 and not paths[-1].endswith("/"):
        raise DockerfileSyntaxError(
            f"{kind.value} with more than one source needs a destination ending in '/'",
            line=lineno,
        )
    return tuple(paths), form


def _parse_command(
    kind: InstructionKind, rest: str, lineno: int
) -> tuple[tuple[str, ...], ArgumentForm]:
    array = _json_array(rest)
    if array is None:
        return (rest,), ArgumentForm.SHELL
    if not array and kind is InstructionKind.RUN:
        raise DockerfileSyntaxError("RUN exec form must not be empty", line=lineno)
    return tuple(array), ArgumentForm.EXEC


def _split_pairs(rest: str, lineno: int) -> list[str]:
    try:
        return shlex.split(rest)
    except ValueError as exc:
        raise DockerfileSyntaxError(f"Cannot tokenize {rest!r}: {exc}", line=lineno) from exc


def _parse_env(rest: str, lineno: int) -> tuple[tuple[str, ...], ArgumentForm]:
    first = rest.split(None, 1)
    if "=" not in first[0]:
        # Legacy form: ENV KEY value with spaces
        if len(first) < 2:
            raise DockerfileSyntaxError(
                f"ENV {first[0]} is missing a value", line=lineno
            )
        key, value = first[0], first[1]
        _check_name(key, lineno)
        return (f"{key}={value}",), ArgumentForm.KEY_VALUE

    pairs = _split_pairs(rest, lineno)
    for pair in pairs:
        key, sep, _ = pair.partition("=")
        if not sep:
            raise DockerfileSyntaxError(
                f"ENV expects KEY=value pairs, got {pair!r}", line=lineno
            )
        _check_name(key, lineno)
    return tuple(pairs), ArgumentForm.KEY_VALUE


def _parse_arg(rest: str, lineno: int) -> tuple[tuple[str, ...], ArgumentForm]:
    pairs = _split_pairs(rest, lineno)
    for pair in pairs:
        _check_name(pair.partition("=")[0], lineno)
    return tuple(pairs), ArgumentForm.KEY_VALUE


def _parse_expose(rest: str, lineno: int) -> tuple[tuple[str, ...], ArgumentForm]:
    ports = rest.split()
    for port in ports:
        if "$" not in port and not _PORT_SPEC.match(port):
            raise DockerfileSyntaxError(
                f"Invalid port specification {port!r}", line=lineno
            )
    return tuple(ports), ArgumentForm.PLAIN


def _check_name(name: str, lineno: int) -> None:
    if not _ARG_NAME.match(name):
        raise DockerfileSyntaxError(f"Invalid variable name {name!r}", line=lineno)


def normalize_port(spec: str) -> str | None:
    """Return ``"N/proto"`` for a valid port spec, None otherwise."""
    if not _PORT_SPEC.match(spec):
        return None
    number, _, proto = spec.partition("/")
    if not 0 < int(number) <= 65535:
        return None
    return f"{int(number)}/{(proto or 'tcp').lower()}"

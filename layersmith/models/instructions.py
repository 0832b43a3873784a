"""Instruction models: the closed set of build-file instruction kinds."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class InstructionKind(str, Enum):
    """Every instruction the parser can produce.

    The set is closed: the executor's dispatch table is checked against it
    at import time.
    """

    BASE_IMAGE = "base-image"
    WORKDIR = "workdir"
    COPY = "copy"
    ADD = "add"
    RUN = "run"
    ENV = "env"
    EXPOSE = "expose"
    CMD = "cmd"
    ENTRYPOINT = "entrypoint"
    ARG = "arg"
    STAGE_ALIAS = "stage-alias"

    @property
    def creates_layer(self) -> bool:
        """Whether executing this kind appends a layer to the stage."""
        return self is not InstructionKind.STAGE_ALIAS


class ArgumentForm(str, Enum):
    """How an instruction's arguments were written."""

    PLAIN = "plain"  # whitespace-separated tokens
    SHELL = "shell"  # one string handed to /bin/sh -c
    EXEC = "exec"  # JSON array
    KEY_VALUE = "kv"  # KEY=value pairs


# Build-file keyword -> kind.  ``AS`` inside FROM produces STAGE_ALIAS.
KEYWORDS: dict[str, InstructionKind] = {
    "FROM": InstructionKind.BASE_IMAGE,
    "WORKDIR": InstructionKind.WORKDIR,
    "COPY": InstructionKind.COPY,
    "ADD": InstructionKind.ADD,
    "RUN": InstructionKind.RUN,
    "ENV": InstructionKind.ENV,
    "EXPOSE": InstructionKind.EXPOSE,
    "CMD": InstructionKind.CMD,
    "ENTRYPOINT": InstructionKind.ENTRYPOINT,
    "ARG": InstructionKind.ARG,
}


class Instruction(BaseModel):
    """One parsed instruction.

    ``args`` holds the raw (unsubstituted) arguments.  For KEY_VALUE forms
    each argument is ``"KEY=value"``; ARG without a default is just
    ``"KEY"``.  ``line`` is the first physical line of the logical line.
    """

    model_config = ConfigDict(frozen=True)

    kind: InstructionKind
    args: tuple[str, ...] = ()
    flags: dict[str, str] = {}
    form: ArgumentForm = ArgumentForm.PLAIN
    line: int = 0
    source: str = ""  # original logical line, for error reports

    def describe(self) -> str:
        """Short human-readable form used in logs and the ledger."""
        flags = " ".join(f"--{k}={v}" for k, v in sorted(self.flags.items()))
        body = " ".join(self.args)
        return " ".join(p for p in (self.kind.value.upper(), flags, body) if p)

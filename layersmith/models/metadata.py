"""Immutable build metadata threaded through each instruction."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BuildMetadata(BaseModel):
    """Accumulated stage metadata as of some instruction.

    Never mutated: every step returns a copy via ``model_copy(update=...)``.
    ``args`` maps declared ARG names to their value, or None when declared
    without a default and not supplied.
    """

    model_config = ConfigDict(frozen=True)

    env: dict[str, str] = {}
    args: dict[str, str | None] = {}
    exposed_ports: tuple[str, ...] = ()
    workdir: str = "/"
    entrypoint: tuple[str, ...] | None = None
    cmd: tuple[str, ...] | None = None

    def with_env(self, pairs: dict[str, str]) -> BuildMetadata:
        return self.model_copy(update={"env": {**self.env, **pairs}})

    def with_arg(self, name: str, value: str | None) -> BuildMetadata:
        return self.model_copy(update={"args": {**self.args, name: value}})

    def with_port(self, port: str) -> BuildMetadata:
        if port in self.exposed_ports:
            return self
        ports = tuple(sorted((*self.exposed_ports, port), key=_port_sort_key))
        return self.model_copy(update={"exposed_ports": ports})

    def process_env(self) -> dict[str, str]:
        """Environment handed to run commands: bound args, then env."""
        bound = {k: v for k, v in self.args.items() if v is not None}
        return {**bound, **self.env}


def _port_sort_key(spec: str) -> tuple[int, str]:
    number, _, proto = spec.partition("/")
    return (int(number), proto)

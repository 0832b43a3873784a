"""Image manifest: the artifact handed to registry-push and runtime launchers."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class CommandRule(str, Enum):
    """How a runtime should compose the default process.

    The assembler records the rule; it never resolves the final argv.
    """

    NONE = "none"
    CMD_ONLY = "cmd"
    ENTRYPOINT_ONLY = "entrypoint"
    CMD_APPENDED_TO_ENTRYPOINT = "entrypoint+cmd"


class ImageConfig(BaseModel):
    """Metadata snapshot of the target stage as of its last instruction."""

    model_config = ConfigDict(frozen=True)

    env: dict[str, str] = {}
    exposed_ports: tuple[str, ...] = ()
    workdir: str = "/"
    entrypoint: tuple[str, ...] | None = None
    cmd: tuple[str, ...] | None = None
    command_rule: CommandRule = CommandRule.NONE


class ImageManifest(BaseModel):
    """Ordered layer fingerprints plus image configuration.

    ``digest`` is the content address of the manifest without the digest
    field itself; two builds producing the same layers and configuration
    produce the same digest.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: int = 1
    target_stage: str
    layers: tuple[str, ...]
    config: ImageConfig
    digest: str = ""

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

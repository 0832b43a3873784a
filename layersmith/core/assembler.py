"""Image assembler: target stage result -> ``ImageManifest``."""

from __future__ import annotations

import logging

from layersmith.core.errors import IncompleteStageError
from layersmith.core.executor import StageOutput
from layersmith.core.hasher import content_address
from layersmith.models.manifest import CommandRule, ImageConfig, ImageManifest
from layersmith.models.metadata import BuildMetadata

logger = logging.getLogger(__name__)


def command_rule(metadata: BuildMetadata) -> CommandRule:
    """How a runtime composes the default process from entrypoint and cmd."""
    if metadata.entrypoint is not None and metadata.cmd is not None:
        return CommandRule.CMD_APPENDED_TO_ENTRYPOINT
    if metadata.entrypoint is not None:
        return CommandRule.ENTRYPOINT_ONLY
    if metadata.cmd is not None:
        return CommandRule.CMD_ONLY
    return CommandRule.NONE


class ImageAssembler:
    """Builds the manifest from the target stage's layers and final metadata."""

    def assemble(self, output: StageOutput | None, *, target: str) -> ImageManifest:
        """Return the manifest for the completed target stage.

        Raises
        ------
        IncompleteStageError
            The target stage has no result or did not reach its last
            instruction.
        """
        if output is None or not output.complete:
            raise IncompleteStageError(
                f"Target stage {target} did not complete", stage=target
            )

        metadata = output.state.metadata
        config = ImageConfig(
            env=dict(metadata.env),
            exposed_ports=metadata.exposed_ports,
            workdir=metadata.workdir,
            entrypoint=metadata.entrypoint,
            cmd=metadata.cmd,
            command_rule=command_rule(metadata),
        )
        manifest = ImageManifest(
            target_stage=output.name,
            layers=tuple(layer.fingerprint for layer in output.layers),
            config=config,
        )
        digest = content_address(manifest.model_dump(mode="json", exclude={"digest"}))
        logger.info(
            "Assembled %s: %d layers, digest %s", output.name, len(manifest.layers), digest[:19]
        )
        return manifest.model_copy(update={"digest": digest})

"""layersmith data models (Pydantic v2, frozen)."""

from layersmith.models.config import BuildOptions
from layersmith.models.instructions import (
    KEYWORDS,
    ArgumentForm,
    Instruction,
    InstructionKind,
)
from layersmith.models.layers import Layer
from layersmith.models.ledger import LayerStatus, LedgerEntry
from layersmith.models.manifest import CommandRule, ImageConfig, ImageManifest
from layersmith.models.metadata import BuildMetadata
from layersmith.models.stages import BuildFile, BuildPlan, StageDefinition, StageNode

__all__ = [
    # instructions
    "InstructionKind",
    "ArgumentForm",
    "Instruction",
    "KEYWORDS",
    # stages
    "StageDefinition",
    "BuildFile",
    "StageNode",
    "BuildPlan",
    # metadata
    "BuildMetadata",
    # layers
    "Layer",
    # manifest
    "CommandRule",
    "ImageConfig",
    "ImageManifest",
    # ledger
    "LayerStatus",
    "LedgerEntry",
    # config
    "BuildOptions",
]

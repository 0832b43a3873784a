"""Stage and build-plan models.

Stages refer to one another by index only, so a plan is plain data: it
can be serialized, compared, and checked for cycles without walking live
object references.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from layersmith.models.instructions import Instruction


class StageDefinition(BaseModel):
    """A group of instructions that starts with a base-image declaration."""

    model_config = ConfigDict(frozen=True)

    index: int
    alias: str | None = None
    base: str  # raw FROM reference, before arg substitution
    instructions: tuple[Instruction, ...]

    @property
    def name(self) -> str:
        """Alias when declared, otherwise the stage index as a string."""
        return self.alias or str(self.index)

    @property
    def line(self) -> int:
        return self.instructions[0].line if self.instructions else 0


class BuildFile(BaseModel):
    """Parser output: the global ARG preamble plus declared stages."""

    model_config = ConfigDict(frozen=True)

    global_args: tuple[Instruction, ...] = ()
    stages: tuple[StageDefinition, ...] = ()

    def stage_by_name(self, name: str) -> StageDefinition | None:
        """Look a stage up by alias (case-insensitive) or index."""
        lowered = name.lower()
        for stage in self.stages:
            if stage.alias is not None and stage.alias.lower() == lowered:
                return stage
        if name.isdigit():
            idx = int(name)
            if 0 <= idx < len(self.stages):
                return self.stages[idx]
        return None


class StageNode(BaseModel):
    """A planned stage: resolved base plus its dependency edges."""

    model_config = ConfigDict(frozen=True)

    index: int
    name: str
    base_image: str | None = None  # external image reference, substituted
    base_stage: int | None = None  # index of the stage used as base
    copy_sources: dict[str, int] = {}  # --from reference -> stage index
    dependencies: tuple[int, ...] = ()  # sorted, de-duplicated


class BuildPlan(BaseModel):
    """Deterministic build plan produced by the planner.

    ``order`` is a topological order restricted to the target and its
    transitive dependencies; ``waves`` groups that order into sets of
    stages with no dependency relation between them.
    """

    model_config = ConfigDict(frozen=True)

    nodes: tuple[StageNode, ...]
    order: tuple[int, ...]
    waves: tuple[tuple[int, ...], ...]
    target: int

    def node(self, index: int) -> StageNode:
        return self.nodes[index]

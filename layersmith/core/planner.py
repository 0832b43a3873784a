"""Stage DAG planner.

The planner enforces, before anything executes:
- every FROM and ``copy --from`` reference resolves to a declared stage or
  an image the image source knows about;
- the stage graph has no cycles;
- a stage is scheduled only after every stage it uses as base or copy
  source.

It returns a deterministic ``BuildPlan`` restricted to the target stage
and its transitive dependencies, grouped into waves of mutually
independent stages.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping

from layersmith.core.errors import (
    CyclicDependencyError,
    UndefinedArgumentError,
    UnresolvedStageError,
)
from layersmith.core.images import SCRATCH, ImageSource
from layersmith.core.variables import substitute
from layersmith.models.instructions import Instruction, InstructionKind
from layersmith.models.stages import BuildFile, BuildPlan, StageDefinition, StageNode

logger = logging.getLogger(__name__)


def global_arg_scope(
    build_file: BuildFile, build_args: Mapping[str, str]
) -> dict[str, str | None]:
    """Bindings from the ARG preamble before the first FROM."""
    scope: dict[str, str | None] = {}
    for instruction in build_file.global_args:
        scope.update(bind_args(instruction, scope, build_args))
    return scope


def bind_args(
    instruction: Instruction,
    scope: Mapping[str, str | None],
    build_args: Mapping[str, str],
) -> dict[str, str | None]:
    """Resolve one ARG instruction's declarations.

    A supplied build arg wins over the declared default; a declaration with
    neither binds the name to None (declared but unset).
    """
    bound: dict[str, str | None] = {}
    for pair in instruction.args:
        name, sep, default = pair.partition("=")
        if name in build_args:
            bound[name] = build_args[name]
        elif sep:
            try:
                bound[name] = substitute(default, {**scope, **bound})
            except UndefinedArgumentError as exc:
                raise exc.with_location(line=instruction.line)
        else:
            bound[name] = None
    return bound


class Planner:
    """Turns a parsed build file into a ``BuildPlan``.

    Parameters
    ----------
    images:
        Source of external base images, consulted only for existence.
    """

    def __init__(self, images: ImageSource) -> None:
        self._images = images

    def plan(
        self,
        build_file: BuildFile,
        *,
        target: str | None = None,
        build_args: Mapping[str, str] | None = None,
    ) -> BuildPlan:
        build_args = build_args or {}
        scope = global_arg_scope(build_file, build_args)
        nodes = [self._resolve_stage(build_file, stage, scope) for stage in build_file.stages]

        order = _topological_order(nodes)
        target_index = self._resolve_target(build_file, nodes, target)
        needed = _ancestors(nodes, target_index)
        order = [i for i in order if i in needed]
        waves = _waves(nodes, order)

        logger.info(
            "Planned %d of %d stages for target %s in %d wave(s)",
            len(order),
            len(nodes),
            nodes[target_index].name,
            len(waves),
        )
        return BuildPlan(
            nodes=tuple(nodes),
            order=tuple(order),
            waves=tuple(tuple(w) for w in waves),
            target=target_index,
        )

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def _resolve_target(
        self, build_file: BuildFile, nodes: list[StageNode], target: str | None
    ) -> int:
        if target is None:
            return _default_target(nodes)
        stage = build_file.stage_by_name(target)
        if stage is None:
            raise UnresolvedStageError(f"Target stage {target!r} is not declared")
        return stage.index

    def _resolve_stage(
        self,
        build_file: BuildFile,
        stage: StageDefinition,
        scope: Mapping[str, str | None],
    ) -> StageNode:
        try:
            base_ref = substitute(stage.base, scope)
        except UndefinedArgumentError as exc:
            raise exc.with_location(stage=stage.name, line=stage.line)

        base_stage: int | None = None
        base_image: str | None = None
        referenced = build_file.stage_by_name(base_ref)
        if referenced is not None and referenced.index != stage.index:
            base_stage = referenced.index
        elif self._is_image(base_ref):
            base_image = base_ref
        elif referenced is not None:
            raise CyclicDependencyError([stage.name, stage.name])
        else:
            raise UnresolvedStageError(
                f"FROM {base_ref!r} names neither a declared stage nor a known image",
                stage=stage.name,
                line=stage.line,
            )

        copy_sources: dict[str, int] = {}
        for instruction in stage.instructions:
            if instruction.kind is not InstructionKind.COPY:
                continue
            source = instruction.flags.get("from")
            if source is None:
                continue
            referenced = build_file.stage_by_name(source)
            if referenced is not None:
                if referenced.index == stage.index:
                    raise CyclicDependencyError([stage.name, stage.name])
                copy_sources[source] = referenced.index
            elif not self._is_image(source):
                raise UnresolvedStageError(
                    f"COPY --from={source!r} names neither a declared stage nor a known image",
                    stage=stage.name,
                    line=instruction.line,
                )

        deps = set(copy_sources.values())
        if base_stage is not None:
            deps.add(base_stage)
        return StageNode(
            index=stage.index,
            name=stage.name,
            base_image=base_image,
            base_stage=base_stage,
            copy_sources=copy_sources,
            dependencies=tuple(sorted(deps)),
        )

    def _is_image(self, ref: str) -> bool:
        return ref == SCRATCH or self._images.exists(ref)


# ---------------------------------------------------------------------------
# Graph algorithms (pure, over stage indices)
# ---------------------------------------------------------------------------


def _topological_order(nodes: list[StageNode]) -> list[int]:
    """Kahn's algorithm, ties broken by declaration index."""
    in_degree = {n.index: len(n.dependencies) for n in nodes}
    dependents: dict[int, list[int]] = {n.index: [] for n in nodes}
    for n in nodes:
        for dep in n.dependencies:
            dependents[dep].append(n.index)

    ready = sorted(i for i, deg in in_degree.items() if deg == 0)
    queue = deque(ready)
    result: list[int] = []
    while queue:
        node = queue.popleft()
        result.append(node)
        released = []
        for dep in dependents[node]:
            in_degree[dep] -= 1
            if in_degree[dep] == 0:
                released.append(dep)
        # Keep the queue globally sorted so the order is reproducible.
        queue = deque(sorted([*queue, *released]))

    if len(result) != len(nodes):
        raise CyclicDependencyError(_find_cycle(nodes, set(result)))
    return result


def _find_cycle(nodes: list[StageNode], acyclic: set[int]) -> list[str]:
    """Return one cycle among the nodes Kahn's algorithm could not order."""
    names = {n.index: n.name for n in nodes}
    deps = {n.index: n.dependencies for n in nodes}
    start = min(i for i in deps if i not in acyclic)

    path: list[int] = []
    position: dict[int, int] = {}
    node = start
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = min(d for d in deps[node] if d not in acyclic)
    cycle = path[position[node]:] + [node]
    return [names[i] for i in cycle]


def _default_target(nodes: list[StageNode]) -> int:
    """The stage no other stage depends on.

    Declaration order only decides between several unrelated sinks, where
    the last declared one wins.
    """
    depended_on = {dep for n in nodes for dep in n.dependencies}
    sinks = [n.index for n in nodes if n.index not in depended_on]
    return max(sinks)


def _ancestors(nodes: list[StageNode], target: int) -> set[int]:
    needed = {target}
    queue = deque([target])
    while queue:
        for dep in nodes[queue.popleft()].dependencies:
            if dep not in needed:
                needed.add(dep)
                queue.append(dep)
    return needed


def _waves(nodes: list[StageNode], order: list[int]) -> list[list[int]]:
    """Group stages by depth; stages in one wave share no dependency path."""
    depth: dict[int, int] = {}
    for index in order:
        deps = nodes[index].dependencies
        depth[index] = 1 + max((depth[d] for d in deps), default=-1)
    waves: list[list[int]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for index in order:
        waves[depth[index]].append(index)
    return waves

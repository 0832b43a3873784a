"""Layer executor: one instruction applied to a stage state.

Execution is split in two so the cache can sit in between:

``prepare``
    Pure with respect to the stage filesystem.  Substitutes variables,
    resolves copy/add sources, computes the new metadata and the
    normalized form and input hashes that make up the fingerprint.
``execute``
    Only on a cache miss.  Produces the new snapshot: runs the command for
    run instructions, otherwise applies the prepared filesystem change.

Dispatch is a table keyed by ``InstructionKind``; a kind without a
handler fails at import time.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from layersmith.core.context import BuildContext, translate_glob
from layersmith.core.errors import (
    BuildError,
    BuildFailedError,
    DockerfileSyntaxError,
    IncompleteStageError,
    SourceNotFoundError,
)
from layersmith.core.fetcher import RemoteFetcher, is_archive, is_remote, unpack_archive
from layersmith.core.hasher import content_address
from layersmith.core.images import ImageSource, normalize_reference
from layersmith.core.parser import normalize_port
from layersmith.core.planner import bind_args
from layersmith.core.runner import CommandResult, CommandRunner
from layersmith.core.snapshot import (
    EMPTY_SNAPSHOT,
    FileNode,
    NodeType,
    Snapshot,
    normalize_path,
    parent_dirs,
)
from layersmith.core.variables import substitute
from layersmith.models.instructions import ArgumentForm, Instruction, InstructionKind
from layersmith.models.layers import Layer
from layersmith.models.metadata import BuildMetadata
from layersmith.models.stages import StageNode

logger = logging.getLogger(__name__)

SHELL = ("/bin/sh", "-c")
_GLOB_CHARS = frozenset("*?[")


# ---------------------------------------------------------------------------
# Stage state
# ---------------------------------------------------------------------------


class StageState(BaseModel):
    """Filesystem and metadata of a stage as of some instruction."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    snapshot: Snapshot = Field(default_factory=lambda: EMPTY_SNAPSHOT)
    metadata: BuildMetadata = BuildMetadata()
    fingerprint: str = ""  # last layer's fingerprint, "" before the base image


class StageOutput(BaseModel):
    """Result of executing one stage."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    index: int
    name: str
    state: StageState
    layers: tuple[Layer, ...]
    complete: bool = False  # reached its last instruction


class StepScope(NamedTuple):
    """Stage-level inputs every instruction of the stage can see."""

    node: StageNode
    outputs: Mapping[int, StageOutput]
    build_args: Mapping[str, str]
    global_args: Mapping[str, str | None]


class PreparedStep(NamedTuple):
    instruction: Instruction
    normalized: dict[str, Any]
    inputs: list[str]
    metadata: BuildMetadata
    mutate: Callable[[Snapshot], Snapshot] | None = None
    argv: tuple[str, ...] | None = None


class StepOutcome(NamedTuple):
    snapshot: Snapshot
    result: CommandResult | None = None


class _Match(NamedTuple):
    """One resolved copy/add source: a file, or a directory's contents."""

    name: str
    is_dir: bool
    members: list[tuple[str, str, Callable[[], FileNode]]]  # (relpath, digest, loader)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class LayerExecutor:
    """Applies instructions to stage states.

    Parameters
    ----------
    context:
        Build context for copy/add sources.
    images:
        External base images for base-image and ``copy --from=<image>``.
    runner:
        Backend that executes run instructions.
    fetcher:
        Downloads remote add sources.
    timeout:
        Per-instruction timeout in seconds for run commands and remote
        add downloads.
    """

    def __init__(
        self,
        *,
        context: BuildContext,
        images: ImageSource,
        runner: CommandRunner,
        fetcher: RemoteFetcher,
        timeout: float | None = None,
    ) -> None:
        self.context = context
        self.images = images
        self.runner = runner
        self.fetcher = fetcher
        self.timeout = timeout

    def prepare(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        return _PREPARERS[instruction.kind](self, instruction, state, scope)

    def execute(self, step: PreparedStep, snapshot: Snapshot) -> StepOutcome:
        if step.argv is not None:
            return self._run(step, snapshot)
        if step.mutate is not None:
            return StepOutcome(step.mutate(snapshot))
        return StepOutcome(snapshot)

    # ------------------------------------------------------------------
    # base-image / stage-alias
    # ------------------------------------------------------------------

    def _prepare_base_image(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        node = scope.node
        normalized: dict[str, Any] = {}
        if "platform" in instruction.flags:
            normalized["platform"] = instruction.flags["platform"]

        if node.base_stage is not None:
            base = _completed(scope, node.base_stage)
            normalized["stage"] = base.state.fingerprint
            return PreparedStep(
                instruction,
                normalized,
                [],
                BuildMetadata(),
                mutate=lambda _: base.state.snapshot,
            )

        ref = node.base_image or ""
        snapshot, config = self.images.load(ref)
        normalized["image"] = normalize_reference(ref)
        normalized["digest"] = self.images.digest(ref)
        metadata = BuildMetadata(
            env=config.env,
            exposed_ports=config.exposed_ports,
            workdir=config.workdir,
            entrypoint=config.entrypoint,
            cmd=config.cmd,
        )
        return PreparedStep(
            instruction, normalized, [], metadata, mutate=lambda _: snapshot
        )

    def _prepare_stage_alias(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        return PreparedStep(instruction, {"alias": instruction.args[0]}, [], state.metadata)

    # ------------------------------------------------------------------
    # Metadata-only kinds
    # ------------------------------------------------------------------

    def _prepare_env(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        variables = _variables(state.metadata)
        pairs: dict[str, str] = {}
        for pair in instruction.args:
            key, _, value = pair.partition("=")
            pairs[key] = substitute(value, variables)
        return PreparedStep(
            instruction,
            {"env": [[k, v] for k, v in pairs.items()]},
            [],
            state.metadata.with_env(pairs),
        )

    def _prepare_arg(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        bound = bind_args(instruction, _variables(state.metadata), scope.build_args)
        metadata = state.metadata
        declared = []
        for name, value in bound.items():
            if value is None and "=" not in _declaration(instruction, name):
                # A bare in-stage ARG picks up the global preamble's value.
                value = scope.global_args.get(name)
            metadata = metadata.with_arg(name, value)
            declared.append(name if value is None else f"{name}={value}")
        return PreparedStep(instruction, {"args": declared}, [], metadata)

    def _prepare_expose(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        variables = _variables(state.metadata)
        metadata = state.metadata
        ports = []
        for spec in instruction.args:
            port = normalize_port(substitute(spec, variables))
            if port is None:
                raise DockerfileSyntaxError(
                    f"Invalid port specification {spec!r}", line=instruction.line
                )
            ports.append(port)
            metadata = metadata.with_port(port)
        return PreparedStep(instruction, {"ports": ports}, [], metadata)

    def _prepare_cmd(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        argv = _argv(instruction)
        return PreparedStep(
            instruction,
            {"argv": list(argv)},
            [],
            state.metadata.model_copy(update={"cmd": argv}),
        )

    def _prepare_entrypoint(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        argv = _argv(instruction)
        return PreparedStep(
            instruction,
            {"argv": list(argv)},
            [],
            state.metadata.model_copy(update={"entrypoint": argv}),
        )

    # ------------------------------------------------------------------
    # workdir
    # ------------------------------------------------------------------

    def _prepare_workdir(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        raw = substitute(instruction.args[0], _variables(state.metadata))
        path = normalize_path(raw, state.metadata.workdir)

        def mutate(snapshot: Snapshot) -> Snapshot:
            if snapshot.is_dir(path):
                return snapshot
            if snapshot.get(path) is not None:
                raise BuildError(f"WORKDIR {path} exists and is not a directory")
            return snapshot.with_entries({path: FileNode.directory()})

        return PreparedStep(
            instruction,
            {"path": path},
            [],
            state.metadata.model_copy(update={"workdir": path}),
            mutate=mutate,
        )

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def _prepare_run(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        argv = _argv(instruction)
        visible = {k: v for k, v in sorted(state.metadata.args.items()) if v is not None}
        return PreparedStep(
            instruction,
            {"argv": list(argv), "args": visible},
            [],
            state.metadata,
            argv=argv,
        )

    def _run(self, step: PreparedStep, snapshot: Snapshot) -> StepOutcome:
        metadata = step.metadata
        workspace = Path(tempfile.mkdtemp(prefix="layersmith-run-"))
        try:
            rootfs = workspace / "rootfs"
            rootfs.mkdir()
            snapshot.materialize(rootfs)
            result = self.runner.run(
                rootfs,
                step.argv or (),
                env=metadata.process_env(),
                workdir=metadata.workdir,
                timeout=self.timeout,
            )
            if result.exit_code != 0:
                raise BuildFailedError(
                    f"Command {list(step.argv or ())!r} exited with code {result.exit_code}",
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            captured = Snapshot.capture(rootfs)
        finally:
            _remove_workspace(workspace)
        return StepOutcome(captured, result)

    # ------------------------------------------------------------------
    # copy / add
    # ------------------------------------------------------------------

    def _prepare_copy(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        variables = _variables(state.metadata)
        sources = [substitute(s, variables) for s in instruction.args[:-1]]
        dest = substitute(instruction.args[-1], variables)
        normalized: dict[str, Any] = {"sources": sources, "dest": dest}

        origin = instruction.flags.get("from")
        if origin is None:
            matches = [m for s in sources for m in self._context_matches(s)]
        else:
            snapshot, normalized["from"] = self._copy_origin(origin, scope)
            matches = [m for s in sources for m in _snapshot_matches(s, snapshot)]
        return self._place(instruction, state, matches, dest, normalized)

    def _prepare_add(
        self, instruction: Instruction, state: StageState, scope: StepScope
    ) -> PreparedStep:
        variables = _variables(state.metadata)
        sources = [substitute(s, variables) for s in instruction.args[:-1]]
        dest = substitute(instruction.args[-1], variables)
        matches: list[_Match] = []
        for source in sources:
            if is_remote(source):
                matches.append(self._remote_match(source))
            else:
                matches.extend(self._context_matches(source))
        return self._place(
            instruction, state, matches, dest, {"sources": sources, "dest": dest}
        )

    def _copy_origin(self, origin: str, scope: StepScope) -> tuple[Snapshot, dict[str, str]]:
        index = scope.node.copy_sources.get(origin)
        if index is not None:
            output = _completed(scope, index)
            return output.state.snapshot, {"stage": output.state.fingerprint}
        snapshot, _ = self.images.load(origin)
        return snapshot, {
            "image": normalize_reference(origin),
            "digest": self.images.digest(origin),
        }

    def _context_matches(self, source: str) -> list[_Match]:
        rel = normalize_path(source).lstrip("/")
        files = self.context.paths()
        dirs = {d.lstrip("/") for p in files for d in parent_dirs("/" + p)}

        if _GLOB_CHARS & set(rel):
            pattern = translate_glob(rel)
            hits = _outermost(c for c in sorted({*files, *dirs}) if pattern.match(c))
        elif rel in files or rel in dirs or rel == "":
            hits = [rel]
        else:
            hits = []
        if not hits:
            raise SourceNotFoundError(f"{source} not found in build context")

        matches = []
        for hit in hits:
            if hit in files:
                matches.append(
                    _Match(posixpath.basename(hit), False, [("", self.context.hash(hit), self._loader(hit))])
                )
            else:
                prefix = f"{hit}/" if hit else ""
                members = [
                    (p[len(prefix):], self.context.hash(p), self._loader(p))
                    for p in files
                    if p.startswith(prefix)
                ]
                matches.append(_Match(posixpath.basename(hit), True, members))
        return matches

    def _loader(self, path: str) -> Callable[[], FileNode]:
        def load() -> FileNode:
            with self.context.open(path) as stream:
                return FileNode.file(stream.read())

        return load

    def _remote_match(self, url: str) -> _Match:
        fetched = self.fetcher.fetch(url, timeout=self.timeout)
        if is_archive(fetched.filename):
            unpacked = unpack_archive(fetched.filename, fetched.data)
            members = [
                (rel, content_address([rel, *node.describe()]), _constant(node))
                for rel, node in sorted(unpacked.items())
            ]
            return _Match(fetched.filename, True, members)
        node = FileNode.file(fetched.data, 0o600)
        return _Match(fetched.filename, False, [("", fetched.digest, _constant(node))])

    def _place(
        self,
        instruction: Instruction,
        state: StageState,
        matches: list[_Match],
        dest: str,
        normalized: dict[str, Any],
    ) -> PreparedStep:
        """Map matches onto destination paths and build the step."""
        dest_path = normalize_path(dest, state.metadata.workdir)
        dest_is_dir = (
            dest.endswith("/") or state.snapshot.is_dir(dest_path) or len(matches) > 1
        )
        mode = int(instruction.flags["chmod"], 8) if "chmod" in instruction.flags else None
        if mode is not None:
            normalized["chmod"] = instruction.flags["chmod"]
        normalized["dest"] = dest_path

        placed: dict[str, tuple[str, Callable[[], FileNode]]] = {}
        if (dest_is_dir or any(m.is_dir for m in matches)) and not state.snapshot.is_dir(dest_path):
            directory = FileNode.directory()
            placed[dest_path] = ("dir", _constant(directory))
        for match in matches:
            for rel, digest, load in match.members:
                if match.is_dir:
                    target = normalize_path(rel, dest_path) if rel else dest_path
                elif dest_is_dir:
                    target = normalize_path(match.name, dest_path)
                else:
                    target = dest_path
                placed[target] = (digest, load)

        inputs = [f"{target}={digest}" for target, (digest, _) in sorted(placed.items())]

        def mutate(snapshot: Snapshot) -> Snapshot:
            return snapshot.with_entries(
                {target: _with_mode(load(), mode) for target, (_, load) in placed.items()}
            )

        return PreparedStep(instruction, normalized, inputs, state.metadata, mutate=mutate)


# Exhaustive dispatch over the closed instruction-kind set.
_PREPARERS: dict[InstructionKind, Callable[..., PreparedStep]] = {
    InstructionKind.BASE_IMAGE: LayerExecutor._prepare_base_image,
    InstructionKind.WORKDIR: LayerExecutor._prepare_workdir,
    InstructionKind.COPY: LayerExecutor._prepare_copy,
    InstructionKind.ADD: LayerExecutor._prepare_add,
    InstructionKind.RUN: LayerExecutor._prepare_run,
    InstructionKind.ENV: LayerExecutor._prepare_env,
    InstructionKind.EXPOSE: LayerExecutor._prepare_expose,
    InstructionKind.CMD: LayerExecutor._prepare_cmd,
    InstructionKind.ENTRYPOINT: LayerExecutor._prepare_entrypoint,
    InstructionKind.ARG: LayerExecutor._prepare_arg,
    InstructionKind.STAGE_ALIAS: LayerExecutor._prepare_stage_alias,
}

_unhandled = set(InstructionKind) - set(_PREPARERS)
if _unhandled:
    raise RuntimeError(
        f"No executor handler for instruction kind(s): {sorted(k.value for k in _unhandled)}"
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _variables(metadata: BuildMetadata) -> dict[str, str | None]:
    """Substitution scope: args, overlaid by env."""
    return {**metadata.args, **metadata.env}


def _argv(instruction: Instruction) -> tuple[str, ...]:
    if instruction.form is ArgumentForm.SHELL:
        return (*SHELL, instruction.args[0])
    return tuple(instruction.args)


def _declaration(instruction: Instruction, name: str) -> str:
    for pair in instruction.args:
        if pair.partition("=")[0] == name:
            return pair
    return name


def _completed(scope: StepScope, index: int) -> StageOutput:
    output = scope.outputs.get(index)
    if output is None or not output.complete:
        raise IncompleteStageError(
            f"Stage {scope.node.name} needs stage {index}, which has not completed"
        )
    return output


def _constant(node: FileNode) -> Callable[[], FileNode]:
    return lambda: node


def _with_mode(node: FileNode, mode: int | None) -> FileNode:
    if mode is None or node.type is NodeType.SYMLINK:
        return node
    return node.model_copy(update={"mode": mode})


def _outermost(paths) -> list[str]:
    """Drop paths nested under an earlier path in the (sorted) input."""
    kept: list[str] = []
    for path in paths:
        if not any(path.startswith(k + "/") for k in kept):
            kept.append(path)
    return kept


def _snapshot_matches(source: str, snapshot: Snapshot) -> list[_Match]:
    """Resolve a ``copy --from`` source against another stage's snapshot."""
    path = normalize_path(source)
    if _GLOB_CHARS & set(path):
        pattern = translate_glob(path.lstrip("/"))
        hits = _outermost(
            p for p in snapshot.paths() if pattern.match(p.lstrip("/"))
        )
    elif path in snapshot:
        hits = [path]
    else:
        hits = []
    if not hits:
        raise SourceNotFoundError(f"{source} not found in source stage")

    matches = []
    for hit in hits:
        if snapshot.is_dir(hit):
            members = [
                (p[len(hit):].lstrip("/"), content_address(n.describe()), _constant(n))
                for p, n in snapshot.walk(hit)
            ]
            matches.append(_Match(posixpath.basename(hit), True, members))
        else:
            node = snapshot.get(hit)
            matches.append(
                _Match(
                    posixpath.basename(hit),
                    False,
                    [("", content_address(node.describe()), _constant(node))],
                )
            )
    return matches


def _remove_workspace(path: Path) -> None:
    """Delete a run workspace, including directories the command locked down."""
    for current, dirnames, _ in os.walk(path):
        for name in dirnames:
            child = os.path.join(current, name)
            if not os.path.islink(child):
                os.chmod(child, 0o700)
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.warning("Could not remove run workspace %s: %s", path, exc)

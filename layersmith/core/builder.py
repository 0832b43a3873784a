"""Build orchestrator: parse -> plan -> (per stage, per layer) cache/execute -> assemble.

The Builder wires together the parser, planner, cache resolver, layer
executor, image assembler, layer store and build ledger.  Stages run on a
bounded thread pool: a stage is submitted as soon as every stage it
depends on has completed, and instructions inside a stage run strictly in
order.  The first failure cancels the remaining stages cooperatively at
their next instruction boundary.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from pydantic import BaseModel, ConfigDict

from layersmith.config import BuildSettings
from layersmith.core.assembler import ImageAssembler
from layersmith.core.build_ledger import BuildLedger
from layersmith.core.cache import CacheResolver
from layersmith.core.context import BuildContext
from layersmith.core.errors import BuildCancelledError, BuildError, BuildFailedError
from layersmith.core.executor import (
    LayerExecutor,
    StageOutput,
    StageState,
    StepScope,
)
from layersmith.core.fetcher import RemoteFetcher
from layersmith.core.hasher import compute_fingerprint
from layersmith.core.images import DirectoryImageSource, ImageSource
from layersmith.core.layer_store import DirectoryLayerStore, LayerStore
from layersmith.core.parser import parse_build_file
from layersmith.core.planner import Planner, global_arg_scope
from layersmith.core.runner import ChrootRunner, CommandRunner, HostRunner
from layersmith.models.config import BuildOptions
from layersmith.models.instructions import Instruction
from layersmith.models.layers import Layer
from layersmith.models.ledger import LayerStatus, LedgerEntry
from layersmith.models.manifest import ImageManifest
from layersmith.models.stages import BuildFile, BuildPlan

logger = logging.getLogger(__name__)


class BuildResult(BaseModel):
    """Everything a finished build produced."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    build_id: str
    manifest: ImageManifest
    plan: BuildPlan
    outputs: dict[int, StageOutput]

    @property
    def layers(self) -> tuple[Layer, ...]:
        """Layers of the target stage, in build order."""
        return self.outputs[self.plan.target].layers


class Builder:
    """Central build orchestrator.

    Parameters
    ----------
    settings:
        Engine settings.  Uses environment-driven defaults if not provided.
    store:
        Layer store.  Defaults to a ``DirectoryLayerStore`` at
        ``settings.store_path``.
    images:
        External base images.  Defaults to a ``DirectoryImageSource`` at
        ``settings.images_path``.
    runner:
        Run-instruction backend.  Defaults to ``ChrootRunner`` in production
        and ``HostRunner`` otherwise.
    fetcher:
        Remote add fetcher.  Defaults to one configured from ``settings``.
    ledger:
        Build ledger.  Defaults to ``settings.ledger_path``.
    """

    def __init__(
        self,
        settings: BuildSettings | None = None,
        *,
        store: LayerStore | None = None,
        images: ImageSource | None = None,
        runner: CommandRunner | None = None,
        fetcher: RemoteFetcher | None = None,
        ledger: BuildLedger | None = None,
    ) -> None:
        self.settings = settings or BuildSettings()
        self.store = store or DirectoryLayerStore(self.settings.store_path)
        self.images = images or DirectoryImageSource(self.settings.images_path)
        self.runner = runner or (
            ChrootRunner() if self.settings.is_production else HostRunner()
        )
        self.fetcher = fetcher or RemoteFetcher(
            max_attempts=self.settings.fetch_max_attempts,
            backoff_seconds=self.settings.fetch_backoff_seconds,
            backoff_cap_seconds=self.settings.fetch_backoff_cap_seconds,
            timeout=self.settings.instruction_timeout_seconds,
        )
        self.ledger = ledger or BuildLedger(self.settings.ledger_path)
        self.planner = Planner(self.images)
        self.assembler = ImageAssembler()
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(self, text: str, options: BuildOptions | None = None) -> tuple[BuildFile, BuildPlan]:
        """Parse and plan without executing anything."""
        options = options or BuildOptions()
        build_file = parse_build_file(text)
        plan = self.planner.plan(
            build_file, target=options.target, build_args=options.build_args
        )
        return build_file, plan

    def cancel(self) -> None:
        """Ask running stages to stop at their next instruction boundary."""
        logger.info("Cancellation requested")
        self._cancel.set()

    def build(
        self,
        text: str,
        context: BuildContext,
        options: BuildOptions | None = None,
    ) -> BuildResult:
        """Run a complete build and return its manifest.

        Raises
        ------
        BuildError
            Any planning or execution failure.  Planning errors are raised
            before any layer executes.  No manifest is produced on failure.
        """
        options = options or BuildOptions()
        self._cancel.clear()
        build_file, plan = self.plan(text, options)
        timeout = (
            options.instruction_timeout_seconds
            if options.instruction_timeout_seconds is not None
            else self.settings.instruction_timeout_seconds
        )
        executor = LayerExecutor(
            context=context,
            images=self.images,
            runner=self.runner,
            fetcher=self.fetcher,
            timeout=timeout,
        )
        global_args = global_arg_scope(build_file, options.build_args)

        logger.info(
            "Build %s: %d stage(s), target %s",
            options.build_id,
            len(plan.order),
            plan.node(plan.target).name,
        )
        outputs = self._run_stages(build_file, plan, executor, options, global_args)
        target = plan.node(plan.target).name
        manifest = self.assembler.assemble(outputs.get(plan.target), target=target)
        logger.info("Build %s finished: %s", options.build_id, manifest.digest)
        return BuildResult(
            build_id=options.build_id, manifest=manifest, plan=plan, outputs=outputs
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _run_stages(
        self,
        build_file: BuildFile,
        plan: BuildPlan,
        executor: LayerExecutor,
        options: BuildOptions,
        global_args: Mapping[str, str | None],
    ) -> dict[int, StageOutput]:
        workers = options.max_concurrency or self.settings.max_concurrency
        outputs: dict[int, StageOutput] = {}
        submitted: set[int] = set()
        running: dict[Future[StageOutput], int] = {}
        errors: list[BaseException] = []

        with ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="layersmith-stage"
        ) as pool:

            def submit_ready() -> None:
                for index in plan.order:
                    if index in submitted or self._cancel.is_set():
                        continue
                    if all(dep in outputs for dep in plan.node(index).dependencies):
                        submitted.add(index)
                        scope = StepScope(
                            node=plan.node(index),
                            outputs=dict(outputs),
                            build_args=options.build_args,
                            global_args=global_args,
                        )
                        future = pool.submit(
                            self._build_stage, build_file, index, executor, scope, options
                        )
                        running[future] = index

            try:
                submit_ready()
                while running:
                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                    for future in done:
                        index = running.pop(future)
                        try:
                            outputs[index] = future.result()
                        except Exception as exc:
                            errors.append(exc)
                            self._cancel.set()
                    submit_ready()
            except KeyboardInterrupt:
                # Let in-flight instructions finish, then stop every stage.
                self._cancel.set()
                raise

        if errors:
            # Prefer the failure that caused the cancellation.
            primary = next(
                (e for e in errors if not isinstance(e, BuildCancelledError)), errors[0]
            )
            raise primary
        if self._cancel.is_set() and plan.target not in outputs:
            raise BuildCancelledError("Build cancelled")
        return outputs

    # ------------------------------------------------------------------
    # One stage
    # ------------------------------------------------------------------

    def _build_stage(
        self,
        build_file: BuildFile,
        index: int,
        executor: LayerExecutor,
        scope: StepScope,
        options: BuildOptions,
    ) -> StageOutput:
        stage = build_file.stages[index]
        name = stage.name
        cache = CacheResolver(self.store, stage=name, no_cache=options.no_cache)
        state = StageState()
        layers: list[Layer] = []
        logger.info("Stage %s started (%d instructions)", name, len(stage.instructions))

        for instruction in stage.instructions:
            if self._cancel.is_set():
                raise BuildCancelledError("Build cancelled", stage=name, line=instruction.line)
            if not instruction.kind.creates_layer:
                continue

            started = time.monotonic()
            fingerprint = ""
            try:
                step = executor.prepare(instruction, state, scope)
                fingerprint = compute_fingerprint(
                    state.fingerprint, instruction.kind, step.normalized, step.inputs
                )
                cached = cache.lookup(fingerprint)
                cache_hit = cached is not None
                result = None
                if cached is None:
                    outcome = executor.execute(step, state.snapshot)
                    result = outcome.result
                    cached = cache.store(fingerprint, state.snapshot.diff(outcome.snapshot))
                # Hit or miss, the new state is the parent folded with the delta.
                snapshot = state.snapshot.apply(cached.delta)
            except BuildError as exc:
                exc.with_location(stage=name, line=instruction.line)
                self._record_failure(options, name, instruction, fingerprint, exc, started)
                raise

            layer = Layer(
                fingerprint=fingerprint,
                parent=state.fingerprint,
                kind=instruction.kind,
                stage=name,
                line=instruction.line,
                instruction=instruction.describe(),
                diff_digest=cached.diff_digest,
                size_bytes=cached.size_bytes,
                empty=cached.delta.is_empty,
                cache_hit=cache_hit,
            )
            layers.append(layer)
            self.ledger.append(
                LedgerEntry(
                    build_id=options.build_id,
                    stage=name,
                    line=instruction.line,
                    instruction=layer.instruction,
                    fingerprint=fingerprint,
                    status=LayerStatus.CACHED if layer.cache_hit else LayerStatus.BUILT,
                    exit_code=result.exit_code if result is not None else None,
                    stdout=result.stdout if result is not None else "",
                    stderr=result.stderr if result is not None else "",
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            )
            state = StageState(snapshot=snapshot, metadata=step.metadata, fingerprint=fingerprint)

        logger.info("Stage %s finished: %d layers", name, len(layers))
        return StageOutput(
            index=index, name=name, state=state, layers=tuple(layers), complete=True
        )

    def _record_failure(
        self,
        options: BuildOptions,
        stage: str,
        instruction: Instruction,
        fingerprint: str,
        exc: BuildError,
        started: float,
    ) -> None:
        failed = isinstance(exc, BuildFailedError)
        self.ledger.append(
            LedgerEntry(
                build_id=options.build_id,
                stage=stage,
                line=instruction.line,
                instruction=instruction.describe(),
                fingerprint=fingerprint,
                status=LayerStatus.FAILED,
                exit_code=exc.exit_code if failed else None,
                stdout=exc.stdout if failed else "",
                stderr=exc.stderr if failed else "",
                error=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        logger.error("Stage %s failed at line %s: %s", stage, instruction.line, exc.message)

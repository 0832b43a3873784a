"""``layersmith plan FILE``: show the stage plan without building."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from layersmith.cli.commands.build import parse_build_args
from layersmith.cli.renderer import BuildRenderer
from layersmith.config import BuildSettings
from layersmith.core.errors import BuildError
from layersmith.core.images import DirectoryImageSource
from layersmith.core.parser import parse_build_file
from layersmith.core.planner import Planner

console = Console()


def plan_cmd(
    file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="Build file to plan.",
    ),
    target: str = typer.Option(
        None,
        "--target",
        "-t",
        help="Stage alias or index to plan for (default: the stage nothing depends on).",
    ),
    build_arg: list[str] = typer.Option(
        [],
        "--build-arg",
        help="Build argument KEY=VALUE (repeatable).",
    ),
) -> None:
    """Parse FILE and print its stage DAG grouped into parallel waves.

    Reads no layers and touches neither the layer store nor the ledger.
    """
    renderer = BuildRenderer(console=console)
    settings = BuildSettings()
    try:
        build_file = parse_build_file(file.read_text(encoding="utf-8"))
        plan = Planner(DirectoryImageSource(settings.images_path)).plan(
            build_file, target=target, build_args=parse_build_args(build_arg)
        )
    except BuildError as exc:
        renderer.print_error(exc)
        raise typer.Exit(code=1)

    console.print(renderer.plan_table(plan))
    skipped = len(build_file.stages) - len(plan.order)
    if skipped:
        console.print(f"[dim]{skipped} stage(s) not needed for the target are skipped.[/dim]")

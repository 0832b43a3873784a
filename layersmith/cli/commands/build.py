"""``layersmith build FILE``: build an image from a build file.

Parses, plans, executes every stage against the layer cache and prints the
resulting manifest.  With ``--output`` the manifest JSON is also written
to a file for registry-push or runtime tooling.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from layersmith.cli.renderer import BuildRenderer
from layersmith.config import BuildSettings
from layersmith.core.builder import Builder
from layersmith.core.context import DirectoryContext
from layersmith.core.errors import BuildError
from layersmith.models.config import BuildOptions

console = Console()


def parse_build_args(values: list[str]) -> dict[str, str]:
    """``["K=V", ...]`` -> ``{"K": "V"}``."""
    build_args: dict[str, str] = {}
    for value in values:
        name, sep, arg = value.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {value!r}", param_hint="--build-arg")
        build_args[name] = arg
    return build_args


def build_cmd(
    file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="Build file to execute.",
    ),
    context_dir: Path = typer.Option(
        Path("."),
        "--context",
        "-c",
        help="Build context directory.",
    ),
    target: str = typer.Option(
        None,
        "--target",
        "-t",
        help="Stage alias or index to build (default: the stage nothing depends on).",
    ),
    build_arg: list[str] = typer.Option(
        [],
        "--build-arg",
        help="Build argument KEY=VALUE (repeatable).",
    ),
    no_cache: bool = typer.Option(
        False,
        "--no-cache",
        help="Execute every layer even when a cached one exists.",
    ),
    concurrency: int = typer.Option(
        None,
        "--concurrency",
        "-j",
        min=1,
        help="Maximum number of stages built in parallel.",
    ),
    output: Path = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the image manifest JSON to this file.",
    ),
) -> None:
    """Build the image described by FILE."""
    renderer = BuildRenderer(console=console)
    options = BuildOptions(
        target=target,
        build_args=parse_build_args(build_arg),
        no_cache=no_cache,
        max_concurrency=concurrency,
    )

    try:
        context = DirectoryContext(context_dir)
        builder = Builder(BuildSettings())
        result = builder.build(file.read_text(encoding="utf-8"), context, options)
    except BuildError as exc:
        renderer.print_error(exc)
        console.print(f"[dim]Build ID: {options.build_id}[/dim]")
        raise typer.Exit(code=1)
    except FileNotFoundError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(renderer.manifest_panel(result.manifest, result.layers))
    if output is not None:
        output.write_text(result.manifest.to_json() + "\n", encoding="utf-8")
        console.print(f"[dim]Manifest written to {output}[/dim]")

    # Print the digest plainly for scripting
    console.print(f"[bold]{result.manifest.digest}[/bold]")

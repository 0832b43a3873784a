"""Main Typer application: imports and registers all CLI commands.

Entry point: ``layersmith`` (configured via pyproject.toml console scripts).
"""

from __future__ import annotations

import logging

import typer

from layersmith.cli.commands.build import build_cmd
from layersmith.cli.commands.cache import cache_cmd
from layersmith.cli.commands.history import history_cmd, logs_cmd
from layersmith.cli.commands.plan import plan_cmd
from layersmith.config import BuildSettings

app = typer.Typer(
    name="layersmith",
    help="layersmith: Dockerfile interpreter and layered build-plan executor.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build an image from a build file.")(build_cmd)
app.command(name="plan", help="Show the stage plan of a build file.")(plan_cmd)
app.command(name="history", help="Show the ledger entries of a build.")(history_cmd)
app.command(name="logs", help="Show captured output of a layer.")(logs_cmd)
app.command(name="cache", help="List layers in the layer store.")(cache_cmd)


def main() -> None:
    """CLI entry point."""
    settings = BuildSettings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(levelname)s:%(name)s:%(message)s",
    )
    app()


if __name__ == "__main__":
    main()

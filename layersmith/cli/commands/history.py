"""``layersmith history`` and ``layersmith logs``: read the build ledger.

Both commands are read-only projections over the ledger: the per-layer
outcome of a build, and the captured output of a run layer.
"""

from __future__ import annotations

import typer
from rich.console import Console

from layersmith.cli.renderer import BuildRenderer
from layersmith.config import BuildSettings
from layersmith.core.build_ledger import BuildLedger, LedgerIntegrityError

console = Console()


def _open_ledger() -> BuildLedger:
    path = BuildSettings().ledger_path
    if not path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {path}")
        console.print("[dim]Run a build first with: layersmith build[/dim]")
        raise typer.Exit(code=1)
    return BuildLedger(path)


def history_cmd(
    build_id: str = typer.Argument(
        None,
        help="Build ID to show (default: the most recent build).",
    ),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the ledger hash chain of the build.",
    ),
) -> None:
    """Show every layer outcome recorded for a build."""
    ledger = _open_ledger()
    build_id = build_id or ledger.get_latest_build_id()
    entries = ledger.get_build_entries(build_id) if build_id else []
    if not entries:
        console.print(f"[bold red]Build not found:[/bold red] {build_id or '-'}")
        raise typer.Exit(code=1)

    console.print(BuildRenderer(console=console).history_table(build_id, entries))
    if verify_chain:
        try:
            ledger.verify_chain(build_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            raise typer.Exit(code=1)
        console.print("[green]Hash chain valid.[/green]")


def logs_cmd(
    fingerprint: str = typer.Argument(
        ...,
        help="Layer fingerprint (or a unique prefix, e.g. sha256:0123abcd).",
    ),
) -> None:
    """Show the captured stdout/stderr of a layer."""
    ledger = _open_ledger()
    entry = ledger.find_output(fingerprint)
    if entry is None:
        console.print(f"[bold red]No executed layer matches:[/bold red] {fingerprint}")
        raise typer.Exit(code=1)
    BuildRenderer(console=console).print_output(entry)

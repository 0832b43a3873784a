"""Rich terminal renderer for build plans, layers, the ledger and the cache.

Color scheme
------------
- green   : built
- cyan    : cached
- red     : failed
- dim     : metadata-only layers
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from layersmith.core.errors import BuildError
from layersmith.core.layer_store import StoredLayer
from layersmith.models.layers import Layer
from layersmith.models.ledger import LayerStatus, LedgerEntry
from layersmith.models.manifest import ImageManifest
from layersmith.models.stages import BuildPlan

_STATUS_ICONS: dict[LayerStatus, str] = {
    LayerStatus.BUILT: "[green]BUILT[/green]",
    LayerStatus.CACHED: "[cyan]CACHED[/cyan]",
    LayerStatus.FAILED: "[bold red]FAILED[/bold red]",
}


def short(fingerprint: str) -> str:
    """``sha256:0123456789ab`` form used in tables."""
    return fingerprint[:19] if fingerprint else "-"


class BuildRenderer:
    """Renders build results as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def plan_table(self, plan: BuildPlan) -> Table:
        table = Table(title="Build plan", header_style="bold cyan")
        table.add_column("Wave", justify="right", style="dim")
        table.add_column("#", justify="right")
        table.add_column("Stage", style="bold")
        table.add_column("Base")
        table.add_column("Depends on")

        for wave_no, wave in enumerate(plan.waves):
            for index in wave:
                node = plan.node(index)
                if node.base_stage is not None:
                    base = f"stage {plan.node(node.base_stage).name}"
                else:
                    base = node.base_image or "-"
                deps = ", ".join(plan.node(d).name for d in node.dependencies) or "[dim]-[/dim]"
                marker = " [yellow](target)[/yellow]" if index == plan.target else ""
                table.add_row(str(wave_no), str(index), f"{node.name}{marker}", base, deps)
        return table

    # ------------------------------------------------------------------
    # Build results
    # ------------------------------------------------------------------

    def layers_table(self, layers: tuple[Layer, ...] | list[Layer]) -> Table:
        table = Table(header_style="bold cyan", expand=True)
        table.add_column("Line", justify="right", style="dim", width=6)
        table.add_column("Instruction", ratio=3)
        table.add_column("Fingerprint", width=21)
        table.add_column("Size", justify="right", width=10)
        table.add_column("Cache", justify="center", width=8)

        for layer in layers:
            instruction = escape(layer.instruction)
            if layer.empty:
                instruction = f"[dim]{instruction}[/dim]"
            cache = "[cyan]hit[/cyan]" if layer.cache_hit else "[green]miss[/green]"
            table.add_row(
                str(layer.line), instruction, short(layer.fingerprint), str(layer.size_bytes), cache
            )
        return table

    def manifest_panel(self, manifest: ImageManifest, layers: tuple[Layer, ...]) -> Panel:
        config = manifest.config
        hits = sum(1 for layer in layers if layer.cache_hit)
        summary = "  |  ".join(
            [
                f"[bold]Target:[/bold] {manifest.target_stage}",
                f"[bold]Layers:[/bold] {len(manifest.layers)} ({hits} cached)",
                f"[bold]Workdir:[/bold] {config.workdir}",
                f"[bold]Ports:[/bold] {', '.join(config.exposed_ports) or '-'}",
                f"[bold]Command:[/bold] {config.command_rule.value}",
            ]
        )
        return Panel(
            Group(self.layers_table(layers), Text(""), Text.from_markup(summary)),
            title="[bold]Image built[/bold]",
            subtitle=manifest.digest,
            border_style="green",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Ledger and cache
    # ------------------------------------------------------------------

    def history_table(self, build_id: str, entries: list[LedgerEntry]) -> Table:
        table = Table(title=f"Build {build_id}", header_style="bold cyan", expand=True)
        table.add_column("Stage", style="bold")
        table.add_column("Line", justify="right", style="dim")
        table.add_column("Instruction", ratio=3)
        table.add_column("Fingerprint", width=21)
        table.add_column("Status", justify="center")
        table.add_column("ms", justify="right")

        for entry in entries:
            table.add_row(
                entry.stage,
                str(entry.line),
                escape(entry.instruction),
                short(entry.fingerprint),
                _STATUS_ICONS.get(entry.status, entry.status.value),
                str(entry.duration_ms),
            )
        return table

    def cache_table(self, layers: list[StoredLayer]) -> Table:
        table = Table(title="Layer store", header_style="bold cyan")
        table.add_column("Fingerprint")
        table.add_column("Size", justify="right")
        for layer in layers:
            table.add_row(layer.fingerprint, str(layer.size_bytes))
        return table

    def print_output(self, entry: LedgerEntry) -> None:
        header = (
            f"[bold]{escape(entry.instruction)}[/bold]  "
            f"[dim](stage {entry.stage}, line {entry.line}, exit {entry.exit_code})[/dim]"
        )
        self.console.print(header)
        if entry.stdout:
            self.console.print(Panel(Text(entry.stdout), title="stdout", border_style="blue"))
        if entry.stderr:
            self.console.print(Panel(Text(entry.stderr), title="stderr", border_style="red"))
        if not entry.stdout and not entry.stderr:
            self.console.print("[dim]No output captured.[/dim]")

    def print_error(self, exc: BuildError) -> None:
        body = [f"[bold red]{type(exc).__name__}:[/bold red] {escape(exc.message)}"]
        if exc.stage is not None:
            body.append(f"[bold]Stage:[/bold] {exc.stage}")
        if exc.line is not None:
            body.append(f"[bold]Line:[/bold] {exc.line}")
        stderr = getattr(exc, "stderr", "")
        if stderr:
            body.extend(["", "[bold]stderr:[/bold]", escape(stderr)])
        self.console.print(
            Panel("\n".join(body), title="[bold]Build failed[/bold]", border_style="red")
        )

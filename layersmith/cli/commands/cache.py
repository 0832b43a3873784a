"""``layersmith cache``: list layers in the content-addressed store."""

from __future__ import annotations

from rich.console import Console

from layersmith.cli.renderer import BuildRenderer
from layersmith.config import BuildSettings
from layersmith.core.layer_store import DirectoryLayerStore

console = Console()


def cache_cmd() -> None:
    """List stored layers and their sizes."""
    settings = BuildSettings()
    if not settings.store_path.exists():
        console.print("[dim]Layer store is empty.[/dim]")
        return
    layers = DirectoryLayerStore(settings.store_path).entries()
    if not layers:
        console.print("[dim]Layer store is empty.[/dim]")
        return
    console.print(BuildRenderer(console=console).cache_table(layers))
    total = sum(layer.size_bytes for layer in layers)
    console.print(f"[bold]{len(layers)}[/bold] layer(s), {total} bytes")

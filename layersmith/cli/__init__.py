"""layersmith CLI: Typer-based command-line interface.

Provides the ``layersmith`` command with subcommands for building images,
inspecting build plans, reading the build ledger and listing cached layers.

All output uses Rich for formatted terminal display.
"""

"""
Functions for formatting and displaying data in the console using Rich.
"""

import time
from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from engine_cache.models.config import EngineCacheConfig
from engine_cache.models.installation import EngineInstallation
from engine_cache.utils.formatting import format_age, format_size, format_timestamp


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "NotFoundError": [
            "• Check the version spelling; versions match exactly.",
            "• Run `engine-cache versions` to list published versions.",
            "• The build may not exist for your platform. Check `platform` in the config.",
        ],
        "InvalidVersionError": [
            "• Versions are used as directory names.",
            "• Remove path separators and leading dots from the version.",
        ],
        "NetworkError": [
            "• Check your internet connection.",
            "• The build server might be temporarily unavailable.",
            "• Verify `manifest_url` with `engine-cache --show-config`.",
        ],
        "CorruptError": [
            "• The package did not match its published signature twice.",
            "• A proxy or mirror may be serving a stale file.",
            "• Please try again in a few minutes.",
        ],
        "EngineIOError": [
            "• Check free disk space where engines are stored.",
            "• Make sure `engines_dir` is writable.",
        ],
        "EngineInUseError": [
            "• Close any session still running an engine, then try again.",
        ],
        "ConfigurationError": [
            "• Run `engine-cache validate` to see which setting is wrong.",
            "• Run `engine-cache init --force` to write a fresh configuration.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration."""
    console = Console()
    content = ""
    for key, value in sorted(config_data.items()):
        if value is None:
            value = "[dim]unlimited[/dim]"
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: EngineCacheConfig):
    """Displays a summary of the current settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    policy = config.cull_policy()
    keep = (
        str(policy.max_installations)
        if policy.max_installations is not None
        else "unlimited"
    )
    max_age = (
        f"{config.max_age_days:g} days" if config.max_age_days is not None else "unlimited"
    )

    table.add_row("Manifest:", f"[dim]{config.manifest_url}[/dim]")
    table.add_row("Platform:", f"[green]{config.platform}[/green]")
    table.add_row("Engines Dir:", f"[dim]{config.engines_dir}[/dim]")
    table.add_row("Keep At Most:", keep)
    table.add_row("Max Age:", max_age)
    table.add_row("Cull Every:", f"{config.cull_interval_minutes:g} min")
    table.add_row("Download Attempts:", str(config.download_attempts))
    table.add_row("Max Connections:", str(config.max_connections))

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_installations_table(
    installations: list[EngineInstallation], now: float | None = None
):
    """Displays installed engines, most recently used first."""
    console = Console()
    if not installations:
        console.print("[dim]No engines installed.[/dim]")
        return

    now = time.time() if now is None else now
    table = Table(title="Installed Engines", box=box.ROUNDED)
    table.add_column("Version", style="cyan", no_wrap=True)
    table.add_column("Size", justify="right", style="green")
    table.add_column("Installed")
    table.add_column("Last Used", style="magenta")
    table.add_column("Signature", style="dim")

    for installation in sorted(
        installations, key=lambda i: i.last_used_at, reverse=True
    ):
        table.add_row(
            installation.version,
            format_size(installation.size_bytes),
            format_timestamp(installation.installed_at),
            format_age(installation.last_used_at, now),
            f"{installation.signature[:16]}…",
        )

    total = sum(i.size_bytes for i in installations)
    console.print(table)
    console.print(
        f"[bold]Total:[/] [green]{len(installations)}[/green] engine(s), "
        f"[cyan]{format_size(total)}[/cyan]"
    )


def print_removed(removed: list[str], action: str):
    """Displays the versions removed by a cull or clear."""
    console = Console()
    if not removed:
        console.print(f"[dim]Nothing to {action}.[/dim]")
        return
    for version in removed:
        console.print(f"[yellow]-[/yellow] {version}")
    console.print(f"[green]✓ Removed {len(removed)} engine version(s).[/green]")

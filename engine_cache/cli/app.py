"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from engine_cache import __version__
from engine_cache.core.engine_manager import CachingEngineManager, build_engine_manager
from engine_cache.exceptions import ConfigurationError, EngineCacheError
from engine_cache.models.config import EngineCacheConfig
from engine_cache.storage.config_manager import ConfigManager, default_settings
from engine_cache.utils.path import get_config_dir

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_installations_table,
    print_removed,
    print_validation_table,
)
from .progress_manager import ProgressManager

T = TypeVar("T")

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("engine_cache")

app = typer.Typer(
    name="engine-cache",
    help=(
        "Downloads, verifies and caches game engine builds on demand. Use"
        " 'engine-cache <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _create_manager(config: EngineCacheConfig) -> CachingEngineManager:
    return build_engine_manager(config)


def _fail(error: Exception) -> None:
    console.print(format_error_with_suggestions(error))
    raise typer.Exit(code=1) from error


def _run_with_manager(
    operation: Callable[[CachingEngineManager], Awaitable[T]],
) -> T:
    """Loads the configuration, runs one operation against a fresh manager, then closes it."""

    async def _runner() -> T:
        config = ConfigManager(CONFIG_FILE).load_config()
        manager = _create_manager(config)
        try:
            return await operation(manager)
        finally:
            await manager.aclose()

    try:
        return asyncio.run(_runner())
    except EngineCacheError as e:
        _fail(e)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Engine Cache CLI"""
    if version:
        console.print(f"[bold]engine-cache[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "WARNING"
    if verbose >= 2:
        log_level = "DEBUG"
    elif verbose == 1:
        log_level = "INFO"
    log.setLevel(log_level)

    if show_config:
        try:
            config = ConfigManager(CONFIG_FILE).load_config()
        except ConfigurationError as e:
            _fail(e)
        config_data = {key: getattr(config, key) for key in config.get_ini_keys()}
        print_config(CONFIG_FILE, config_data)
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    engines_dir: str | None = typer.Option(
        None, "--engines-dir", "-d", help="Directory engines are installed into."
    ),
    manifest_url: str | None = typer.Option(
        None, "--manifest-url", help="URL of the build manifest."
    ),
    platform: str | None = typer.Option(
        None, "--platform", help="Runtime identifier to download builds for."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Write a configuration file with default settings."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings: dict[str, Any] = {
        key: value
        for key, value in {
            "engines_dir": engines_dir,
            "manifest_url": manifest_url,
            "platform": platform,
        }.items()
        if value is not None
    }
    try:
        EngineCacheConfig(**{**default_settings(), **settings})
    except ValidationError as e:
        _fail(ConfigurationError(f"Configuration validation failed:\n{e}"))

    try:
        ConfigManager(CONFIG_FILE).save_new_config(settings)
    except ConfigurationError as e:
        _fail(e)
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready! Try: [cyan]engine-cache install <VERSION>[/cyan]")


@app.command()
def install(
    versions: list[str] = typer.Argument(  # noqa: B008
        ..., help="One or more engine versions to install."
    ),
):
    """Download and install engine versions that are not installed yet."""
    versions = list(dict.fromkeys(versions))

    async def _install_async(manager: CachingEngineManager) -> dict[str, Exception]:
        failures: dict[str, Exception] = {}

        async with ProgressManager(console) as progress:

            async def _install_one(version: str) -> None:
                callback = progress.callback_for(version)
                try:
                    installed = await manager.download_engine_if_necessary(
                        version, progress=callback
                    )
                except EngineCacheError as e:
                    progress.finish(version, "failed")
                    failures[version] = e
                    return
                progress.finish(version, "installed" if installed else "cancelled")
                if not installed:
                    failures[version] = EngineCacheError(
                        f"Installation of '{version}' was cancelled."
                    )

            await asyncio.gather(*(_install_one(v) for v in versions))

        return failures

    failures = _run_with_manager(_install_async)
    if len(failures) == 1:
        _fail(next(iter(failures.values())))
    if failures:
        for version, error in failures.items():
            console.print(f"[red]✗ {version}:[/red] {error}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ {len(versions)} engine version(s) ready.[/green]")


@app.command()
def path(version: str = typer.Argument(..., help="An installed engine version.")):
    """Print the installation directory of an engine version."""

    async def _path(manager: CachingEngineManager):
        return manager.get_engine_path(version)

    console.print(
        str(_run_with_manager(_path)), soft_wrap=True, markup=False, highlight=False
    )


@app.command()
def signature(version: str = typer.Argument(..., help="An installed engine version.")):
    """Print the verified SHA-256 signature of an engine version."""

    async def _signature(manager: CachingEngineManager):
        return manager.get_engine_signature(version)

    console.print(
        _run_with_manager(_signature), soft_wrap=True, markup=False, highlight=False
    )


@app.command(name="list")
def list_command():
    """Show installed engine versions."""

    async def _installations(manager: CachingEngineManager):
        return manager.installations()

    print_installations_table(_run_with_manager(_installations))


@app.command()
def cull(
    pin: list[str] = typer.Option(  # noqa: B008
        [], "--pin", "-p", help="A version to keep regardless of policy (repeatable)."
    ),
):
    """Remove engines according to the configured retention policy."""

    async def _cull(manager: CachingEngineManager):
        return await manager.cull_maybe(pinned=pin)

    print_removed(_run_with_manager(_cull), "cull")


@app.command()
def clear(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Bypass the confirmation prompt.",
    ),
):
    """Remove every installed engine."""
    if not force and not typer.confirm(
        "Are you sure you want to remove every installed engine? "
        "They will be downloaded again when needed."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    async def _clear(manager: CachingEngineManager):
        return await manager.clear_all_engines()

    console.print("[cyan]Clearing installed engines...[/cyan]")
    print_removed(_run_with_manager(_clear), "clear")


@app.command()
def versions():
    """List engine versions published in the build manifest."""

    async def _versions(manager: CachingEngineManager):
        return await manager.resolver.available_versions()

    available = _run_with_manager(_versions)
    if not available:
        console.print("[dim]The build manifest lists no versions for this platform.[/dim]")
        return
    for version in available:
        console.print(version)


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config_manager = ConfigManager(CONFIG_FILE)
        config = config_manager.load_config()
        print_validation_table(config)
    except EngineCacheError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e

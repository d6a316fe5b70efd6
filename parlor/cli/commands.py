"""CLI commands for parlor."""

import json
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from parlor import __logo__, __version__
from parlor.config.schema import RuntimeSettings

app = typer.Typer(
    name="parlor",
    help=f"{__logo__} parlor - chat-agent runtime for LLM bots",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} parlor v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    log_level: str = typer.Option(None, "--log-level", help="Log level (defaults to PARLOR_LOG_LEVEL)"),
):
    """parlor - chat-agent runtime for LLM bots."""
    level = (log_level or RuntimeSettings().log_level).upper()
    logger.remove()
    logger.add(sys.stderr, level=level)


def _config_dir(config_dir: Path | None) -> Path:
    return config_dir or RuntimeSettings().config_dir


# ============================================================================
# Config
# ============================================================================


@app.command()
def config(
    bot: str = typer.Option(None, "--bot", "-b", help="Bot name (defaults to PARLOR_BOT_ID)"),
    guild: str = typer.Option(None, "--guild", "-g", help="Guild id for guild layers"),
    config_dir: Path = typer.Option(None, "--config-dir", "-c", help="Config directory"),
    pinned: list[Path] = typer.Option(None, "--pinned", "-p", help="YAML file applied as a pinned channel config"),
    json_output: bool = typer.Option(False, "--json", help="Output the merged config as JSON."),
):
    """Show the merged configuration for a bot."""
    from parlor.config.loader import ConfigSystem
    from parlor.errors import ConfigError

    bot_name = bot or RuntimeSettings().bot_id
    if not bot_name:
        console.print("[red]No bot given. Use --bot or set PARLOR_BOT_ID.[/red]")
        raise typer.Exit(1)

    channel_configs = [p.read_text(encoding="utf-8") for p in pinned or []]
    system = ConfigSystem(_config_dir(config_dir))
    try:
        bot_config = system.load_config(bot_name, guild, channel_configs)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    data = bot_config.model_dump(mode="json")
    if json_output:
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return

    table = Table(title=f"{__logo__} {bot_name}" + (f" in {guild}" if guild else ""))
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        shown = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        table.add_row(key, shown if len(shown) <= 120 else shown[:117] + "...")
    console.print(table)


@app.command()
def vendors(
    config_dir: Path = typer.Option(None, "--config-dir", "-c", help="Config directory"),
    model: str = typer.Option(None, "--model", "-m", help="Show which vendor serves this model"),
):
    """List configured LLM vendors and the model patterns they serve."""
    from parlor.config.loader import ConfigSystem
    from parlor.providers.router import matches_any

    configs = ConfigSystem(_config_dir(config_dir)).load_vendors()
    if not configs:
        console.print("No vendors configured.")
        return

    table = Table(title="Vendors")
    table.add_column("Vendor", style="cyan")
    table.add_column("Provides")
    table.add_column("Keys", style="dim")
    if model:
        table.add_column(f"Serves {model}")

    for name, vendor in configs.items():
        row = [name, "\n".join(vendor.provides) or "[dim]none[/dim]", ", ".join(sorted(vendor.config))]
        if model:
            row.append("[green]✓[/green]" if matches_any(model, vendor.provides) else "")
        table.add_row(*row)
    console.print(table)


@app.command()
def tools(
    plugin: list[str] = typer.Option(None, "--plugin", "-p", help="Only list these plugins"),
):
    """List the in-process plugin tools."""
    from parlor.agent.tools.plugins import AVAILABLE_PLUGINS, PluginLoader
    from parlor.agent.tools.registry import ToolRegistry

    names = list(plugin or AVAILABLE_PLUGINS)
    registry = ToolRegistry()
    PluginLoader().load(names, registry)

    if not len(registry):
        console.print("No tools found.")
        return

    table = Table(title="Plugin Tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Source")
    table.add_column("Description")
    table.add_column("Parameters", style="dim")
    for name in registry.tool_names:
        tool = registry.get(name)
        params = ", ".join((tool.parameters or {}).get("properties", {}))
        table.add_row(name, registry.source_of(name) or "", tool.description, params)
    console.print(table)


if __name__ == "__main__":
    app()

"""guildtrack config command - Inspect configuration."""

import os
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from guildtrack.cli.exit_codes import ExitCode

app = typer.Typer(help="Inspect guildtrack configuration.")
console = Console()


@app.command("show")
def show_config(
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, json).",
    ),
) -> None:
    """Show current configuration.

    Example:
        guildtrack config show
        guildtrack config show --format json
    """
    from guildtrack.config import _config_to_dict, export_config_json, get_config

    config = get_config()

    if format == "json":
        console.print(Syntax(export_config_json(config), "json", theme="monokai"))
        return
    if format != "table":
        console.print(f"[red]Unknown format: {format}[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    table = Table(title="Guildtrack Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in _config_to_dict(config).items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(f"{key}.{sub_key}", str(sub_value))
        else:
            table.add_row(key, str(value))

    console.print(table)


@app.command("path")
def config_path() -> None:
    """Show the configuration file location."""
    from guildtrack.config import DEFAULT_CONFIG_DIR, DEFAULT_CONFIG_FILE, ENV_PREFIX

    config_dir = Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", DEFAULT_CONFIG_DIR))
    path = config_dir / DEFAULT_CONFIG_FILE
    exists = "[green]exists[/green]" if path.exists() else "[yellow]not found[/yellow]"
    console.print(f"{path} ({exists})")


@app.command("validate")
def validate_config() -> None:
    """Validate current configuration.

    Example:
        guildtrack config validate
    """
    from guildtrack.config import get_config, validate_config as do_validate

    console.print("[bold]Validating configuration...[/bold]")
    console.print()

    issues = do_validate(get_config())
    all_passed = True

    for issue in issues:
        if issue.severity == "error":
            status = "[red]✗[/red]"
            all_passed = False
        else:
            status = "[yellow]![/yellow]"
        console.print(f"  {status} {escape(str(issue))}")

    console.print()
    if all_passed:
        console.print("[green]Configuration is valid[/green]")
    else:
        console.print("[red]Configuration has errors[/red]")
        raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR)

"""Doctor command: check the sops executable and effective configuration."""

from __future__ import annotations

import json
import sys

import click
from rich.panel import Panel
from rich.table import Table

from ..config import CONFIG_FILE, find_sops
from ._common import CliState, console, pass_state


def register_doctor_commands(main: click.Group) -> None:
    """Register the doctor command."""

    @main.command("doctor")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @pass_state
    def doctor(state: CliState, as_json: bool):
        """Check that sops is installed and show the effective configuration.

        Exits with status 1 when the sops executable cannot be found.
        """
        config = state.config
        sops_path = find_sops(config)
        report = {
            "sops_command": config.sops_command,
            "sops_path": sops_path,
            "config_file": str(state.home / CONFIG_FILE),
            "env_keys": sorted(config.env),
            "cache_size": config.cache_size,
            "throttle_interval": config.throttle_interval,
            "watch_interval": config.watch_interval,
            "temp_dir": str(config.temp_dir) if config.temp_dir else None,
        }

        if as_json:
            click.echo(json.dumps(report, indent=2))
        else:
            table = Table(show_header=False, box=None, padding=(0, 2))
            table.add_column("Key", style="dim")
            table.add_column("Value")
            table.add_row(
                "sops",
                f"[green]{sops_path}[/]" if sops_path
                else f"[bold red]NOT FOUND[/] ({config.sops_command})",
            )
            table.add_row("Config file", report["config_file"])
            table.add_row("Forwarded env", ", ".join(report["env_keys"]) or "[dim]—[/]")
            table.add_row("Max open documents", str(config.cache_size))
            table.add_row("Temp dir", report["temp_dir"] or "[dim]system default[/]")
            console.print()
            console.print(Panel(table, title="[bold]sopsfs doctor[/]", border_style="cyan"))
            console.print()

        if sops_path is None:
            sys.exit(1)

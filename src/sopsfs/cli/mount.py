"""FUSE mount commands: start, stop, status."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.panel import Panel
from rich.table import Table

from ..config import find_sops
from ._common import CliState, console, pass_state


def register_mount_commands(main: click.Group) -> None:
    """Register the mount command group."""

    @main.group()
    def mount():
        """Mount a SOPS document as a directory tree via FUSE.

        \b
        Mount:    sopsfs mount start secrets.sops.yaml --mount-point ~/secrets
        Debug:    sopsfs mount start secrets.sops.yaml --mount-point ~/secrets --foreground
        Unmount:  sopsfs mount stop --mount-point ~/secrets
        Status:   sopsfs mount status --mount-point ~/secrets
        """

    @mount.command("start")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.option(
        "--mount-point",
        required=True,
        type=click.Path(file_okay=False),
        help="Directory to mount the document at.",
    )
    @click.option(
        "--foreground",
        "foreground",
        is_flag=True,
        default=False,
        help="Run in foreground (blocks; useful for debugging).",
    )
    @pass_state
    def mount_start(state: CliState, document: str, mount_point: str, foreground: bool):
        """Mount DOCUMENT at the mount point.

        The document is decrypted once up front; mounting is refused when
        that fails.

        \b
        Requires: pip install sopsfs[fuse]
        """
        from ..fuse_mount import FUSEDaemon

        mount_path = Path(mount_point).expanduser()
        doc_path = Path(document)
        if find_sops(state.config) is None:
            console.print(
                f"[bold red]Can't find sops command[/] ({state.config.sops_command!r}), "
                "make sure it's installed."
            )

        daemon = FUSEDaemon(
            mount_point=mount_path, document=doc_path, home=state.home, config=state.config
        )

        if foreground:
            console.print(
                f"[bold cyan]Mounting [white]{doc_path.name}[/] at [white]{mount_path}[/] "
                f"[dim](foreground, Ctrl-C to unmount)[/]"
            )
        else:
            console.print(f"[bold cyan]Mounting [white]{doc_path.name}[/] at [white]{mount_path}[/] ...")

        ok = daemon.start(foreground=foreground)

        if ok and not foreground:
            console.print(
                f"[green]Mounted.[/] [dim]Unmount with: sopsfs mount stop --mount-point {mount_path}[/]"
            )
        elif not ok:
            console.print(
                f"[bold red]Mount failed.[/] {doc_path.name} might not be a valid SOPS file; "
                "try --foreground --verbose for details."
            )
            sys.exit(1)

    @mount.command("stop")
    @click.option(
        "--mount-point",
        required=True,
        type=click.Path(file_okay=False),
        help="Mount point to unmount.",
    )
    @pass_state
    def mount_stop(state: CliState, mount_point: str):
        """Unmount a mounted document."""
        from ..fuse_mount import FUSEDaemon

        mount_path = Path(mount_point).expanduser()
        daemon = FUSEDaemon(mount_point=mount_path, home=state.home, config=state.config)
        console.print(f"[bold cyan]Unmounting {mount_path} ...[/]")

        if daemon.stop():
            console.print("[green]Unmounted.[/]")
        else:
            console.print(
                "[bold red]Unmount failed.[/] "
                f"[dim]Try manually: fusermount -u {mount_path}[/]"
            )
            sys.exit(1)

    @mount.command("status")
    @click.option(
        "--mount-point",
        required=True,
        type=click.Path(file_okay=False),
        help="Mount point to check.",
    )
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @pass_state
    def mount_status(state: CliState, mount_point: str, as_json: bool):
        """Show whether a document is mounted at the mount point."""
        from ..fuse_mount import FUSEDaemon

        mount_path = Path(mount_point).expanduser()
        daemon = FUSEDaemon(mount_point=mount_path, home=state.home, config=state.config)
        status = daemon.status()

        if as_json:
            click.echo(json.dumps(status, indent=2))
            return

        mounted = status.get("mounted", False)
        icon = "[bold green]MOUNTED[/]" if mounted else "[bold red]NOT MOUNTED[/]"
        pid = status.get("pid")
        updated = status.get("updated_at")

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="dim")
        table.add_column("Value")

        table.add_row("Status", icon)
        table.add_row("Mount point", str(status.get("mount_point", "")))
        table.add_row("Document", status.get("document") or "[dim]—[/]")
        table.add_row("PID", str(pid) if pid else "[dim]—[/]")
        table.add_row("Last updated", updated or "[dim]—[/]")

        console.print()
        console.print(Panel(table, title="[bold]sopsfs Mount Status[/]", border_style="cyan"))
        console.print()

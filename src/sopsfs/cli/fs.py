"""Filesystem commands: ls, cat, stat, write, mkdir, rm, mv, address."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

import click
from rich.table import Table

from ..errors import SopsFsError
from ..models import FileKind
from ..registry import EngineRegistry
from ._common import CliState, console, namespace_path, open_registry, pass_state

T = TypeVar("T")


def _run(state: CliState, action: Callable[[EngineRegistry], T]) -> T:
    """Run *action* against a fresh registry, exiting 1 on filesystem errors."""
    registry = open_registry(state)
    try:
        return action(registry)
    except SopsFsError as exc:
        console.print(f"[bold red]Error:[/] {exc.strerror or exc}")
        sys.exit(1)
    finally:
        registry.dispose()


def register_fs_commands(main: click.Group) -> None:
    """Register the fs command group and the address command."""

    @main.group()
    def fs():
        """Read and edit a SOPS document without mounting it.

        \b
        PATH is a /-separated address inside the decrypted document;
        arrays are addressed by index (/hosts/0/name).

        \b
        List:    sopsfs fs ls secrets.sops.yaml /database
        Read:    sopsfs fs cat secrets.sops.yaml /database/password
        Write:   sopsfs fs write secrets.sops.yaml /database/password hunter2
        Delete:  sopsfs fs rm secrets.sops.yaml /database/password
        """

    @fs.command("ls")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("path", default="/")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @pass_state
    def fs_ls(state: CliState, document: str, path: str, as_json: bool):
        """List the entries of a directory node."""
        entries = _run(state, lambda r: r.read_directory(namespace_path(document, path)))

        if as_json:
            click.echo(json.dumps([{"name": n, "kind": k.value} for n, k in entries], indent=2))
            return

        for name, kind in entries:
            if kind is FileKind.DIRECTORY:
                console.print(f"[bold cyan]{name}/[/]")
            else:
                console.print(name, highlight=False)

    @fs.command("cat")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("path")
    @pass_state
    def fs_cat(state: CliState, document: str, path: str):
        """Print the decrypted value of a file node."""
        content = _run(state, lambda r: r.read_file(namespace_path(document, path)))
        click.echo(content, nl=False)

    @fs.command("stat")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("path", default="/")
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    @pass_state
    def fs_stat(state: CliState, document: str, path: str, as_json: bool):
        """Show the metadata of a node."""
        file_stat = _run(state, lambda r: r.stat(namespace_path(document, path)))

        if as_json:
            click.echo(file_stat.model_dump_json(indent=2))
            return

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="dim")
        table.add_column("Value")
        table.add_row("Path", path)
        table.add_row("Kind", file_stat.kind.value)
        table.add_row("Size", str(file_stat.size))
        table.add_row(
            "Modified",
            datetime.fromtimestamp(file_stat.mtime, tz=timezone.utc).isoformat(),
        )
        console.print(table)

    @fs.command("write")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("path")
    @click.argument("value", required=False)
    @click.option("--create/--no-create", default=True, show_default=True,
                  help="Allow creating a missing value.")
    @click.option("--overwrite/--no-overwrite", default=True, show_default=True,
                  help="Allow replacing an existing value.")
    @pass_state
    def fs_write(
        state: CliState,
        document: str,
        path: str,
        value: Optional[str],
        create: bool,
        overwrite: bool,
    ):
        """Write VALUE (or stdin) to a file node and re-encrypt.

        \b
        Writing the __sopsfs__ data file replaces the whole document.

        \b
        Examples:

            sopsfs fs write secrets.sops.json /api/token s3cr3t

            cat plain.json | sopsfs fs write secrets.sops.json /__sopsfs__.json
        """
        content = value.encode("utf-8") if value is not None else sys.stdin.buffer.read()
        _run(
            state,
            lambda r: r.write_file(
                namespace_path(document, path), content, create=create, overwrite=overwrite
            ),
        )
        console.print(f"[green]Wrote[/] {path}")

    @fs.command("mkdir")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("path")
    @pass_state
    def fs_mkdir(state: CliState, document: str, path: str):
        """Create an empty object at PATH."""
        _run(state, lambda r: r.create_directory(namespace_path(document, path)))
        console.print(f"[green]Created[/] {path}")

    @fs.command("rm")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("path")
    @pass_state
    def fs_rm(state: CliState, document: str, path: str):
        """Delete the value (or subtree) at PATH."""
        _run(state, lambda r: r.delete(namespace_path(document, path), recursive=True))
        console.print(f"[green]Deleted[/] {path}")

    @fs.command("mv")
    @click.argument("document", type=click.Path(exists=True, dir_okay=False))
    @click.argument("old_path")
    @click.argument("new_path")
    @click.option("--overwrite", is_flag=True, help="Replace an existing target.")
    @pass_state
    def fs_mv(state: CliState, document: str, old_path: str, new_path: str, overwrite: bool):
        """Move a value from OLD_PATH to NEW_PATH within the document."""
        _run(
            state,
            lambda r: r.rename(
                namespace_path(document, old_path),
                namespace_path(document, new_path),
                overwrite=overwrite,
            ),
        )
        console.print(f"[green]Moved[/] {old_path} -> {new_path}")

    @main.command("address")
    @click.argument("document", type=click.Path(dir_okay=False))
    @click.argument("path", default="/")
    def address(document: str, path: str):
        """Print the namespace address of PATH inside DOCUMENT."""
        click.echo(namespace_path(document, path))

"""
sopsfs CLI — browse and edit SOPS documents as files.

The main Click group lives here; each command group is defined in its
own module and registered through a ``register_*`` function.

Entry point: sopsfs.cli:main
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import click

from .. import __version__
from ._common import build_config, parse_env_pairs


@click.group()
@click.version_option(version=__version__, prog_name="sopsfs")
@click.option(
    "--home",
    default=None,
    type=click.Path(),
    help="sopsfs home directory (config.yaml, mount state). Default: ~/.sopsfs",
)
@click.option("--sops-command", default=None, help="sops executable name or path.")
@click.option(
    "--env",
    "env_pairs",
    multiple=True,
    metavar="KEY=VALUE",
    help="Environment variable forwarded to sops (repeatable).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    home: Optional[str],
    sops_command: Optional[str],
    env_pairs: Tuple[str, ...],
    verbose: bool,
):
    """sopsfs — SOPS-encrypted documents as a virtual filesystem.

    Every value in a decrypted document is a file, every object or
    array a directory. Writes are re-encrypted in place.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    ctx.obj = build_config(home, sops_command, parse_env_pairs(env_pairs))


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .doctor import register_doctor_commands
from .fs import register_fs_commands
from .mount import register_mount_commands

register_doctor_commands(main)
register_fs_commands(main)
register_mount_commands(main)

"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the context object holding the
effective configuration, and helpers for addressing documents.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import click
from rich.console import Console

from ..config import load_config, sopsfs_home
from ..models import SopsFsConfig
from ..registry import EngineRegistry, compose_path, document_uri

console = Console()


@dataclass
class CliState:
    """Per-invocation state stored on the Click context."""

    home: Path
    config: SopsFsConfig


pass_state = click.make_pass_decorator(CliState)


def parse_env_pairs(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` strings into a dict.

    Raises:
        click.BadParameter: A pair has no ``=`` or an empty key.
    """
    env: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def build_config(
    home: Optional[str], sops_command: Optional[str], env: Dict[str, str]
) -> CliState:
    home_path = sopsfs_home(Path(home) if home else None)
    config = load_config(home_path, sops_command=sops_command, env=env)
    return CliState(home=home_path, config=config)


def namespace_path(document: str, path: str = "/") -> str:
    """Namespace address of *path* inside *document*."""
    return compose_path(document_uri(Path(document)), path)


def open_registry(state: CliState) -> EngineRegistry:
    return EngineRegistry(state.config)

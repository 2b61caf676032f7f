"""
Configuration loading.

Settings come from ``<home>/config.yaml`` (home defaults to
``$SOPSFS_HOME`` or ``~/.sopsfs``), then ``SOPSFS_SOPS_COMMAND``, then
whatever the caller passes explicitly (CLI flags).
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from . import SOPSFS_HOME
from .models import SopsFsConfig

logger = logging.getLogger("sopsfs.config")

CONFIG_FILE = "config.yaml"


def sopsfs_home(home: Optional[Path] = None) -> Path:
    """Resolve the sopsfs home directory."""
    return (home or Path(SOPSFS_HOME)).expanduser()


def load_config(home: Optional[Path] = None, **overrides: Any) -> SopsFsConfig:
    """Load configuration from disk and apply overrides.

    Args:
        home: Override home directory. Defaults to ``~/.sopsfs``.
        **overrides: Field values taking precedence over the file.
            ``None`` values are ignored; ``env`` is merged over the
            file's ``env`` map rather than replacing it.

    Returns:
        The effective SopsFsConfig. Defaults are used when the file is
        missing or invalid.
    """
    data: dict[str, Any] = {}
    config_file = sopsfs_home(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                raise ValueError("top level must be a mapping")
        except (yaml.YAMLError, ValueError, OSError) as exc:
            logger.warning("Failed to load config %s: %s, using defaults", config_file, exc)
            data = {}

    command = os.environ.get("SOPSFS_SOPS_COMMAND")
    if command:
        data["sops_command"] = command

    extra_env = overrides.pop("env", None)
    if extra_env:
        data["env"] = {**(data.get("env") or {}), **extra_env}
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return SopsFsConfig(**data)
    except ValidationError as exc:
        logger.warning("Invalid config %s: %s, using defaults", config_file, exc)
        fallback = {k: v for k, v in overrides.items() if v is not None}
        if extra_env:
            fallback["env"] = dict(extra_env)
        return SopsFsConfig(**fallback)


def find_sops(config: SopsFsConfig) -> Optional[str]:
    """Return the resolved path of the sops executable, or None."""
    resolved = shutil.which(config.sops_command)
    if resolved is None:
        logger.error(
            "Cannot find sops command (%r), make sure it's installed", config.sops_command
        )
    return resolved

"""
Pydantic models shared by the engine, the registry and the hosts.

A snapshot is the engine's only cached state: the stable document's
stat, the decrypted bytes, and the parsed tree (absent for binary
documents). Everything a host sees (stats, listings, change events) is
derived from it.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SopsFormat(str, Enum):
    """Document format, valued by the extension sops infers it from."""

    JSON = ".json"
    YAML = ".yaml"
    INI = ".ini"
    DOTENV = ".env"
    BINARY = ".sops"

    @property
    def is_structured(self) -> bool:
        """Whether the format decrypts to a navigable tree."""
        return self is not SopsFormat.BINARY


class FileKind(str, Enum):
    """Kind of a virtual node."""

    FILE = "file"
    DIRECTORY = "directory"


class ChangeKind(str, Enum):
    """Kind of a change notification."""

    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


class FileStat(BaseModel):
    """Metadata of a virtual node.

    Times are inherited from the stable document. A directory's size is
    its entry count, a file's size its byte length.
    """

    model_config = ConfigDict(frozen=True)

    kind: FileKind
    size: int = 0
    mtime: float = 0.0
    ctime: float = 0.0

    @property
    def is_dir(self) -> bool:
        return self.kind is FileKind.DIRECTORY


class DocumentStat(BaseModel):
    """Stat of the stable (encrypted) document."""

    model_config = ConfigDict(frozen=True)

    size: int
    mtime: float
    ctime: float


class DocumentSnapshot(BaseModel):
    """Last known decrypted state of one document."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    stat: DocumentStat
    raw: bytes
    tree: Optional[Any] = None


class ChangeEvent(BaseModel):
    """A single change notification: a ``/``-rooted path and its kind."""

    model_config = ConfigDict(frozen=True)

    path: str
    kind: ChangeKind


class SopsFsConfig(BaseModel):
    """Configuration consumed by the registry and every engine."""

    sops_command: str = "sops"
    env: dict[str, str] = Field(default_factory=dict)
    cache_size: int = Field(default=64, ge=1)
    throttle_interval: float = Field(default=0.1, ge=0.0)
    watch_interval: float = Field(default=1.0, gt=0.0)
    temp_dir: Optional[Path] = None
    tool_timeout: Optional[float] = None

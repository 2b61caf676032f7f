"""
Path translation between filesystem paths and document-tree addresses.

A tree address is a tuple of string segments. Inside an array a segment
must be a canonical non-negative integer ("0", "1", ...); inside an
object it is a key. ``to_set_path`` renders an address in the bracket
syntax accepted by ``sops --set``: ``["key"][0]["nested"]``.
"""

from __future__ import annotations

import json
import os
from typing import Any, List, Sequence, Tuple

from .errors import InvalidPath
from .models import FileKind, SopsFormat

TreeAddress = Tuple[str, ...]

DATA_FILE_PREFIX = "__sopsfs__"

_EXTENSION_TO_FORMAT = {
    ".json": SopsFormat.JSON,
    ".yaml": SopsFormat.YAML,
    ".yml": SopsFormat.YAML,
    ".ini": SopsFormat.INI,
    ".env": SopsFormat.DOTENV,
}


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def parse_path(path: str) -> TreeAddress:
    """Split a ``/``-separated path into segments, dropping empty ones."""
    return tuple(p for p in path.split("/") if p)


def join_path(address: Sequence[str]) -> str:
    """Render an address as a ``/``-rooted path (root is ``/``)."""
    return "/" + "/".join(address)


def format_from_path(path: str) -> SopsFormat:
    """Infer the document format from its filename extension."""
    ext = os.path.splitext(path)[1]
    return _EXTENSION_TO_FORMAT.get(ext, SopsFormat.BINARY)


def data_filename(path: str) -> str:
    """Name of the synthetic raw-data entry for the document at *path*.

    ``secrets.sops.yaml`` -> ``__sopsfs__.yaml``; ``key.sops`` -> ``__sopsfs__``.
    """
    base = os.path.basename(path)
    if base.endswith(".sops"):
        base = base[: -len(".sops")]
    return DATA_FILE_PREFIX + os.path.splitext(base)[1]


def array_index(segment: str) -> int:
    """Parse *segment* as a canonical array index or raise InvalidPath."""
    if segment.isdigit() and segment.isascii() and str(int(segment)) == segment:
        return int(segment)
    raise InvalidPath(f'"{segment}" is not a valid array index')


def _child(value: Any, segment: str) -> Any:
    if isinstance(value, dict):
        return value.get(segment, MISSING)
    if isinstance(value, list):
        try:
            idx = array_index(segment)
        except InvalidPath:
            return MISSING
        return value[idx] if idx < len(value) else MISSING
    return MISSING


def resolve(tree: Any, address: Sequence[str]) -> Any:
    """Return the value at *address* in *tree*, or ``MISSING``."""
    value = tree
    for segment in address:
        value = _child(value, segment)
        if value is MISSING:
            return MISSING
    return value


def kind_of(value: Any) -> FileKind:
    """Objects and arrays are directories; every other value is a file."""
    if isinstance(value, (dict, list)):
        return FileKind.DIRECTORY
    return FileKind.FILE


def entries_of(value: Any) -> List[Tuple[str, FileKind]]:
    """Ordered ``(name, kind)`` listing of an object or array."""
    if isinstance(value, dict):
        return [(str(key), kind_of(child)) for key, child in value.items()]
    return [(str(idx), kind_of(child)) for idx, child in enumerate(value)]


def render_leaf(value: Any) -> bytes:
    """Byte content of a leaf: strings verbatim, other scalars as JSON text."""
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


def to_set_path(address: Sequence[str], tree: Any) -> str:
    """Render *address* as a sops ``--set`` path expression.

    Each segment's bracket form depends on the already-resolved parent:
    array parents take a numeric index, anything else a quoted key.

    Raises:
        InvalidPath: A segment under an array is not a canonical index.
    """
    parts: List[str] = []
    parent = tree
    for segment in address:
        if isinstance(parent, list):
            parts.append(f"[{array_index(segment)}]")
        else:
            parts.append(f'["{segment}"]')
        parent = _child(parent, segment)
    return "".join(parts)

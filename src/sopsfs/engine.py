"""
DocumentEngine — one encrypted document as a filesystem.

The engine caches one snapshot of the decrypted document and answers
stat/list/read from it. Mutations never touch the stable document
directly: the encrypted bytes are copied to a private temp file, sops
mutates that copy (one or more times), and only when every step
succeeded is the copy written back over the stable document. The
snapshot is then dropped and change events are announced through a
trailing-edge throttle.

Concurrent mutations of the same document are not serialized: two
overlapping calls may start from the same snapshot and the last
write-back wins.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from .errors import (
    FileExists,
    FileNotFound,
    InvalidPath,
    IsADirectory,
    NotADirectory,
    PermissionDenied,
    ToolFailure,
)
from .events import EventEmitter, Listener, Subscription, Throttle
from .markers import DELETED_MARKER, strip_markers
from .models import (
    ChangeEvent,
    ChangeKind,
    DocumentSnapshot,
    DocumentStat,
    FileKind,
    FileStat,
    SopsFsConfig,
    SopsFormat,
)
from .paths import (
    MISSING,
    TreeAddress,
    data_filename,
    entries_of,
    format_from_path,
    join_path,
    kind_of,
    parse_path,
    render_leaf,
    resolve,
    to_set_path,
)
from .sops import SopsTool, temporary_file
from .watch import DocumentWatcher

logger = logging.getLogger("sopsfs.engine")

PathLike = Union[str, Sequence[str]]


@dataclass
class TreeNode:
    """A resolved virtual node: directories carry entries, files content."""

    stat: FileStat
    entries: List[Tuple[str, FileKind]] = field(default_factory=list)
    content: bytes = b""

    @property
    def is_dir(self) -> bool:
        return self.stat.is_dir


def _address(path: PathLike) -> TreeAddress:
    if isinstance(path, str):
        return parse_path(path)
    return tuple(path)


class DocumentEngine:
    """Filesystem view of a single SOPS document.

    Args:
        document: Location of the encrypted document.
        tool: sops wrapper used for every decrypt/set/edit call.
        throttle_interval: Change-notification coalescing window (seconds).
        watch_interval: Poll interval of the external-change watch.
    """

    def __init__(
        self,
        document: Path,
        tool: Optional[SopsTool] = None,
        throttle_interval: float = 0.1,
        watch_interval: float = 1.0,
    ) -> None:
        self.document = Path(document)
        self.tool = tool or SopsTool()
        self.format = format_from_path(self.document.name)
        self.data_filename = data_filename(self.document.name)
        self.watch_interval = watch_interval

        self._snapshot: Optional[DocumentSnapshot] = None
        self._generation = 0
        self._lock = threading.Lock()
        self._changes: List[ChangeEvent] = []
        self._emitter = EventEmitter()
        self._emit_changed = Throttle(throttle_interval, self._flush_changes)
        self._watcher: Optional[DocumentWatcher] = None
        self._disposed = False

    @classmethod
    def from_config(cls, document: Path, config: SopsFsConfig) -> "DocumentEngine":
        return cls(
            document,
            tool=SopsTool.from_config(config),
            throttle_interval=config.throttle_interval,
            watch_interval=config.watch_interval,
        )

    # ------------------------------------------------------------------
    # Lifecycle and events
    # ------------------------------------------------------------------

    def on_did_change(self, listener: Listener) -> Subscription:
        """Subscribe to batches of change events (engine-relative paths)."""
        return self._emitter.subscribe(listener)

    def dispose(self) -> None:
        """Release the watch, pending notifications and the cached snapshot."""
        self._disposed = True
        if self._watcher is not None:
            self._watcher.dispose()
            self._watcher = None
        self._emit_changed.cancel()
        self._emitter.dispose()
        self._snapshot = None

    def flush_events(self) -> None:
        """Deliver a pending notification batch immediately."""
        self._emit_changed.flush()

    def _add_change(self, address: Sequence[str], kind: ChangeKind) -> None:
        with self._lock:
            self._changes.append(ChangeEvent(path=join_path(address), kind=kind))

    def _flush_changes(self) -> None:
        with self._lock:
            changes, self._changes = self._changes, []
        root = ChangeEvent(path="/", kind=ChangeKind.CHANGED)
        data = ChangeEvent(path=join_path([self.data_filename]), kind=ChangeKind.CHANGED)
        for extra in (root, data):
            if extra not in changes:
                changes.append(extra)
        logger.debug("Emitting %d change(s) for %s", len(changes), self.document)
        self._emitter.fire(changes)

    def invalidate(self) -> None:
        """Drop the cached snapshot and schedule a change notification."""
        with self._lock:
            self._snapshot = None
            self._generation += 1
        self._emit_changed()

    def _ensure_watcher(self) -> None:
        if self._watcher is not None or self._disposed:
            return
        with self._lock:
            if self._watcher is not None:
                return
            self._watcher = DocumentWatcher(
                self.document, self.invalidate, interval=self.watch_interval
            )
        self._watcher.start()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> DocumentSnapshot:
        """Return the cached snapshot, decrypting the document if needed."""
        with self._lock:
            cached, generation = self._snapshot, self._generation
        if cached is not None:
            return cached

        try:
            st = self.document.stat()
            content = self.document.read_bytes()
        except FileNotFoundError as exc:
            raise FileNotFound(path=str(self.document)) from exc

        with temporary_file(self.format.value, dir=self.tool.temp_dir) as sops_temp:
            sops_temp.write_bytes(content)
            raw = self.tool.decrypt(sops_temp)
            tree = self.tool.decrypt_tree(sops_temp) if self.format.is_structured else None

        snapshot = DocumentSnapshot(
            stat=DocumentStat(size=st.st_size, mtime=st.st_mtime, ctime=st.st_ctime),
            raw=raw,
            tree=tree,
        )
        with self._lock:
            if generation == self._generation:
                self._snapshot = snapshot
        return snapshot

    def is_data_file(self, path: PathLike) -> bool:
        address = _address(path)
        return len(address) == 1 and address[0] == self.data_filename

    def node(self, path: PathLike) -> TreeNode:
        """Resolve *path* against the current snapshot.

        Raises:
            FileNotFound: The path does not exist.
        """
        address = _address(path)
        snap = self.snapshot()
        kind: Optional[FileKind] = None
        entries: List[Tuple[str, FileKind]] = []
        content = b""

        if self.is_data_file(address):
            kind = FileKind.FILE
            content = snap.raw
        elif snap.tree is not None:
            value = resolve(snap.tree, address)
            if value is MISSING:
                raise FileNotFound(path=join_path(address))
            kind = kind_of(value)
            if kind is FileKind.DIRECTORY:
                entries = entries_of(value)
            else:
                content = render_leaf(value)

        if not address:
            if kind is FileKind.FILE:
                raise ToolFailure(f"{self.document} does not decrypt to an object")
            kind = FileKind.DIRECTORY
            entries.insert(0, (self.data_filename, FileKind.FILE))

        if kind is None:
            raise FileNotFound(path=join_path(address))

        self._ensure_watcher()
        size = len(entries) if kind is FileKind.DIRECTORY else len(content)
        stat = FileStat(kind=kind, size=size, mtime=snap.stat.mtime, ctime=snap.stat.ctime)
        return TreeNode(stat=stat, entries=entries, content=content)

    def _try_node(self, address: TreeAddress) -> Optional[TreeNode]:
        try:
            return self.node(address)
        except FileNotFound:
            return None

    # ------------------------------------------------------------------
    # Mutation protocol
    # ------------------------------------------------------------------

    def _mutate(
        self,
        steps: Callable[[Path], None],
        changes: Sequence[Tuple[TreeAddress, ChangeKind]],
    ) -> None:
        """Run *steps* on a private copy, then commit it over the document."""
        try:
            encrypted = self.document.read_bytes()
        except FileNotFoundError as exc:
            raise FileNotFound(path=str(self.document)) from exc
        with temporary_file(self.format.value, dir=self.tool.temp_dir) as sops_temp:
            sops_temp.write_bytes(encrypted)
            steps(sops_temp)
            self._commit(sops_temp)
        if self._watcher is not None:
            self._watcher.rebaseline()
        for address, kind in changes:
            self._add_change(address, kind)
        self.invalidate()

    def _commit(self, sops_temp: Path) -> None:
        """Replace the document with *sops_temp* in one rename."""
        with temporary_file(self.format.value, dir=self.document.parent) as staged:
            shutil.copyfile(sops_temp, staged)
            shutil.copymode(self.document, staged)
            os.replace(staged, self.document)

    def _set(self, sops_file: Path, address: TreeAddress, value: Any) -> None:
        if self.format is SopsFormat.BINARY:
            raise PermissionDenied("Set value on binary file is invalid", join_path(address))
        tree = self.snapshot().tree
        expression = to_set_path(address, tree if tree is not None else {})
        self.tool.set(sops_file, expression, value)

    def _strip_deleted(self, sops_file: Path) -> None:
        plaintext = self.tool.decrypt(sops_file).decode("utf-8")
        stripped = strip_markers(self.format, plaintext)
        self.tool.edit(sops_file, stripped.encode("utf-8"))

    def _check_parent(self, address: TreeAddress) -> None:
        parent = self._try_node(address[:-1])
        if parent is None:
            raise FileNotFound(path=join_path(address))
        if not parent.is_dir:
            raise NotADirectory(path=join_path(address[:-1]))

    # ------------------------------------------------------------------
    # Filesystem operations
    # ------------------------------------------------------------------

    def stat(self, path: PathLike) -> FileStat:
        return self.node(path).stat

    def list(self, path: PathLike) -> List[Tuple[str, FileKind]]:
        node = self.node(path)
        if not node.is_dir:
            raise NotADirectory(path=join_path(_address(path)))
        return list(node.entries)

    def read(self, path: PathLike) -> bytes:
        node = self.node(path)
        if node.is_dir:
            raise IsADirectory(path=join_path(_address(path)))
        return node.content

    def create_directory(self, path: PathLike) -> None:
        """Create an empty object at *path*."""
        address = _address(path)
        if not address or self.is_data_file(address):
            raise FileExists(path=join_path(address))
        self._check_parent(address)
        if self._try_node(address) is not None:
            raise FileExists(path=join_path(address))
        self._mutate(
            lambda sops_temp: self._set(sops_temp, address, {}),
            [(address, ChangeKind.CREATED)],
        )

    def write(
        self,
        path: PathLike,
        content: bytes,
        create: bool = True,
        overwrite: bool = True,
    ) -> None:
        """Write *content* to a leaf, or re-encrypt the whole document.

        Writing the synthetic data file replaces the complete plaintext.
        Writing any other path stores the UTF-8 text of *content* as a
        string value.

        Raises:
            FileNotFound: Missing node without *create*, or missing parent.
            FileExists: Existing node with *create* but not *overwrite*.
            IsADirectory: The node is a directory.
            InvalidPath: A tree value that is not valid UTF-8.
            PermissionDenied: Tree write on a binary document.
        """
        address = _address(path)
        parent = self._try_node(address[:-1]) if address else None
        node = self._try_node(address) if (parent is not None or not address) else None

        if node is None and not create:
            raise FileNotFound(path=join_path(address))
        if parent is None and node is None:
            raise FileNotFound(path=join_path(address))
        if parent is not None and not parent.is_dir:
            raise NotADirectory(path=join_path(address[:-1]))
        if node is not None and create and not overwrite:
            raise FileExists(path=join_path(address))
        if node is not None and node.is_dir:
            raise IsADirectory(path=join_path(address))

        data = bytes(content)
        is_data_file = self.is_data_file(address)
        text = None
        if not is_data_file and self.format.is_structured:
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvalidPath(
                    f"value for {join_path(address)} is not valid UTF-8", join_path(address)
                ) from exc

        def steps(sops_temp: Path) -> None:
            if is_data_file:
                self.tool.edit(sops_temp, data)
            else:
                self._set(sops_temp, address, text)

        kind = ChangeKind.CHANGED if node is not None else ChangeKind.CREATED
        self._mutate(steps, [(address, kind)])

    def delete(self, path: PathLike, recursive: bool = True) -> None:
        """Delete a node through the delete-marker round trip.

        Raises:
            FileNotFound: The node does not exist.
            PermissionDenied: The node is the data file or the root.
        """
        address = _address(path)
        self.node(address)
        if self.is_data_file(address):
            raise PermissionDenied("Deletion of data file is forbidden", join_path(address))
        if not address:
            raise PermissionDenied("Deletion of document root is forbidden", "/")

        def steps(sops_temp: Path) -> None:
            self._set(sops_temp, address, DELETED_MARKER)
            self._strip_deleted(sops_temp)

        self._mutate(steps, [(address, ChangeKind.DELETED)])

    def rename(self, old_path: PathLike, new_path: PathLike, overwrite: bool = False) -> None:
        """Move a value: set it at *new_path*, then delete *old_path*.

        Both steps run against the same private copy and are committed
        together.

        Raises:
            FileNotFound: *old_path* or the parent of *new_path* is missing.
            FileExists: *new_path* exists and *overwrite* is false.
            PermissionDenied: Either endpoint is the data file or the root.
            InvalidPath: *new_path* lies inside *old_path*.
        """
        old = _address(old_path)
        new = _address(new_path)
        snap = self.snapshot()
        self.node(old)
        new_node = self._try_node(new)

        if new_node is not None and not overwrite:
            raise FileExists(path=join_path(new))
        if self.is_data_file(old) or self.is_data_file(new):
            raise PermissionDenied("Renaming of data file is forbidden", join_path(old))
        if not old or not new:
            raise PermissionDenied("Renaming of document root is forbidden", "/")
        if old == new:
            return
        if new[: len(old)] == old:
            raise InvalidPath(f"cannot move {join_path(old)} into itself", join_path(new))
        self._check_parent(new)
        if snap.tree is None:
            raise PermissionDenied("Rename on binary file is invalid", join_path(old))
        value = resolve(snap.tree, old)

        def steps(sops_temp: Path) -> None:
            self._set(sops_temp, new, value)
            self._set(sops_temp, old, DELETED_MARKER)
            self._strip_deleted(sops_temp)

        new_kind = ChangeKind.CHANGED if new_node is not None else ChangeKind.CREATED
        self._mutate(steps, [(old, ChangeKind.DELETED), (new, new_kind)])

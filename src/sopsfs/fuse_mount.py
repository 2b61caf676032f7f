"""
FUSE Mount — a SOPS document as a POSIX directory tree.

Mounts one encrypted document so that ordinary tools (``ls``, ``cat``,
editors) can browse and edit its decrypted values::

    /mnt/secrets/
    ├── __sopsfs__.yaml      — the whole decrypted document
    ├── database/
    │   ├── user             — "admin"
    │   └── password         — "hunter2"
    └── api_keys/
        ├── 0
        └── 1

Writes are buffered per open file and committed (re-encrypted) when the
file is flushed or released. Nothing decrypted is written to the stable
document; it only ever receives sops output.

Dependencies (optional):
    pip install sopsfs[fuse]  # pulls in fusepy
"""

from __future__ import annotations

import errno
import json
import logging
import os
import stat
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import sopsfs_home
from .errors import FileNotFound, SopsFsError
from .models import ChangeEvent, FileKind, FileStat, SopsFsConfig
from .registry import EngineRegistry, compose_path, document_uri

logger = logging.getLogger("sopsfs.fuse")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stat_dict(file_stat: FileStat) -> Dict[str, Any]:
    """Build a stat dict for a virtual node.

    Directories are ``0o755`` with ``st_size`` equal to their entry count;
    files are ``0o600`` since they hold decrypted secrets. Times come
    from the encrypted document.

    Args:
        file_stat: Node metadata from the engine.

    Returns:
        Stat dictionary suitable for FUSE Operations.getattr().
    """
    if file_stat.kind is FileKind.DIRECTORY:
        mode = stat.S_IFDIR | 0o755
        nlink = 2
    else:
        mode = stat.S_IFREG | 0o600
        nlink = 1
    return {
        "st_mode": mode,
        "st_nlink": nlink,
        "st_uid": os.getuid(),
        "st_gid": os.getgid(),
        "st_size": file_stat.size,
        "st_atime": file_stat.mtime,
        "st_mtime": file_stat.mtime,
        "st_ctime": file_stat.ctime,
    }


_UNMOUNT_COMMANDS = (("fusermount", "-u"), ("umount",))


def _mounted_paths() -> List[str]:
    """Mount targets currently known to the system.

    Reads ``/proc/mounts`` where it exists and parses ``mount`` output
    (``<device> on <target> (<options>)``) elsewhere.
    """
    proc_mounts = Path("/proc/mounts")
    if proc_mounts.exists():
        try:
            lines = proc_mounts.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        return [fields[1] for fields in (line.split() for line in lines) if len(fields) >= 2]

    try:
        result = subprocess.run(["mount"], capture_output=True, text=True, timeout=5)
    except (subprocess.TimeoutExpired, OSError):
        return []
    targets = []
    for line in result.stdout.splitlines():
        if " on " in line:
            target = line.split(" on ", 1)[1]
            targets.append(target.split(" (", 1)[0].split(" type ", 1)[0])
    return targets


# ---------------------------------------------------------------------------
# SopsFuse
# ---------------------------------------------------------------------------


class SopsFuse:
    """FUSE Operations implementation for one SOPS document.

    Every FUSE path is translated into the namespace address of the
    mounted document and served by an EngineRegistry.

    This class is designed to be used with ``fusepy``:

    .. code-block:: python

        import fuse
        fs = SopsFuse(Path("secrets.sops.yaml"))
        fuse.FUSE(fs, mount_point, nothreads=True, foreground=True)

    Args:
        document: The encrypted document to expose.
        registry: Registry to route through; a new one is built from
            *config* when omitted.
        config: Configuration for a newly built registry.
    """

    def __init__(
        self,
        document: Path,
        registry: Optional[EngineRegistry] = None,
        config: Optional[SopsFsConfig] = None,
    ) -> None:
        self._uri = document_uri(document)
        self._registry = registry or EngineRegistry(config)
        # Pending writes: maps FUSE path -> full file content being edited
        self._buffers: Dict[str, bytearray] = {}
        self._dirty: set = set()
        self._subscription = self._registry.on_did_change(self._on_change)

    def __call__(self, op: str, *args: Any) -> Any:
        """Dispatch a fusepy operation by name."""
        handler = getattr(self, op, None)
        if op.startswith("_") or handler is None:
            raise OSError(errno.ENOSYS, f"{op} is not supported")
        return handler(*args)

    def _ns(self, path: str) -> str:
        return compose_path(self._uri, path)

    def _on_change(self, events: List[ChangeEvent]) -> None:
        for event in events:
            logger.debug("%s %s", event.kind.value, event.path)

    def _buffer(self, path: str) -> bytearray:
        """Return the write buffer for *path*, seeded with its current content."""
        buf = self._buffers.get(path)
        if buf is None:
            try:
                buf = bytearray(self._registry.read_file(self._ns(path)))
            except FileNotFound:
                buf = bytearray()
            self._buffers[path] = buf
        return buf

    def _commit(self, path: str) -> None:
        if path not in self._dirty:
            return
        content = bytes(self._buffers.get(path, b""))
        self._registry.write_file(self._ns(path), content, create=True, overwrite=True)
        self._dirty.discard(path)

    def destroy(self, path: str) -> None:
        """Called by fusepy on unmount."""
        self._subscription.dispose()
        self._registry.dispose()

    # ------------------------------------------------------------------
    # FUSE Operations
    # ------------------------------------------------------------------

    def getattr(self, path: str, fh: Optional[int] = None) -> Dict[str, Any]:
        """Return stat-like attributes for a path.

        Raises:
            OSError: With ``errno.ENOENT`` if the path does not exist.
        """
        result = _stat_dict(self._registry.stat(self._ns(path)))
        if path in self._buffers:
            result["st_size"] = len(self._buffers[path])
        return result

    def readdir(self, path: str, fh: Optional[int]) -> List[str]:
        """Return directory listing including ``.`` and ``..``."""
        entries = [".", ".."]
        entries.extend(name for name, _ in self._registry.read_directory(self._ns(path)))
        return entries

    def open(self, path: str, flags: int) -> int:
        """Open a virtual file; truncating opens start from an empty buffer."""
        file_stat = self._registry.stat(self._ns(path))
        if file_stat.is_dir:
            raise OSError(errno.EISDIR, "Is a directory", path)
        if flags & os.O_TRUNC:
            self._buffers[path] = bytearray()
            self._dirty.add(path)
        return 0

    def create(self, path: str, mode: int, fi: Optional[Any] = None) -> int:
        """Create an empty leaf value at *path*."""
        self._registry.write_file(self._ns(path), b"", create=True, overwrite=False)
        self._buffers[path] = bytearray()
        return 0

    def read(self, path: str, size: int, offset: int, fh: int) -> bytes:
        """Read bytes, preferring any unflushed write buffer."""
        if path in self._buffers:
            content = bytes(self._buffers[path])
        else:
            content = self._registry.read_file(self._ns(path))
        return content[offset : offset + size]

    def write(self, path: str, data: bytes, offset: int, fh: int) -> int:
        """Buffer a partial write; committed on flush/release."""
        buf = self._buffer(path)
        if offset > len(buf):
            buf.extend(b"\0" * (offset - len(buf)))
        buf[offset : offset + len(data)] = data
        self._dirty.add(path)
        return len(data)

    def truncate(self, path: str, length: int, fh: Optional[int] = None) -> None:
        """Truncate (or zero-extend) a file; commits at once without a handle."""
        buf = self._buffer(path)
        if length < len(buf):
            del buf[length:]
        else:
            buf.extend(b"\0" * (length - len(buf)))
        self._dirty.add(path)
        if fh is None:
            self._commit(path)
            self._buffers.pop(path, None)

    def flush(self, path: str, fh: int) -> int:
        """Re-encrypt buffered content for *path*."""
        self._commit(path)
        return 0

    def release(self, path: str, fh: int) -> int:
        """Commit anything left and drop the buffer."""
        try:
            self._commit(path)
        finally:
            self._buffers.pop(path, None)
            self._dirty.discard(path)
        return 0

    def mkdir(self, path: str, mode: int) -> None:
        self._registry.create_directory(self._ns(path))

    def rmdir(self, path: str) -> None:
        if not self._registry.stat(self._ns(path)).is_dir:
            raise OSError(errno.ENOTDIR, "Not a directory", path)
        if self._registry.read_directory(self._ns(path)):
            raise OSError(errno.ENOTEMPTY, "Directory not empty", path)
        self._registry.delete(self._ns(path), recursive=False)

    def unlink(self, path: str) -> None:
        if self._registry.stat(self._ns(path)).is_dir:
            raise OSError(errno.EISDIR, "Is a directory", path)
        self._registry.delete(self._ns(path), recursive=False)
        self._buffers.pop(path, None)
        self._dirty.discard(path)

    def rename(self, old: str, new: str) -> None:
        """POSIX rename replaces an existing target."""
        self._registry.rename(self._ns(old), self._ns(new), overwrite=True)

    # Pass-through stubs for operations that the kernel may call

    def chmod(self, path: str, mode: int) -> int:
        """Ignore chmod on the virtual filesystem."""
        return 0

    def chown(self, path: str, uid: int, gid: int) -> int:
        """Ignore chown on the virtual filesystem."""
        return 0

    def utimens(self, path: str, times: Optional[Tuple[float, float]] = None) -> int:
        """Ignore utimens on the virtual filesystem."""
        return 0


# ---------------------------------------------------------------------------
# FUSEDaemon — lifecycle manager
# ---------------------------------------------------------------------------


class FUSEDaemon:
    """Lifecycle manager for a SopsFuse mount.

    Args:
        document: Encrypted document to mount.
        mount_point: Directory to mount the filesystem at.
        home: sopsfs home directory (state files live in ``<home>/fuse``).
        config: Configuration passed to the mounted registry.
    """

    _STATE_FILE = "fuse_state.json"

    def __init__(
        self,
        mount_point: Path,
        document: Optional[Path] = None,
        home: Optional[Path] = None,
        config: Optional[SopsFsConfig] = None,
    ) -> None:
        self._mount_point = Path(mount_point).expanduser()
        self._document = Path(document).expanduser().resolve() if document else None
        self._home = sopsfs_home(home)
        self._state_dir = self._home / "fuse"
        self._config = config or SopsFsConfig()

    def _state_file(self) -> Path:
        # One state file per mount point.
        slug = str(self._mount_point).strip("/").replace("/", "_") or "root"
        return self._state_dir / f"{slug}.{self._STATE_FILE}"

    def _write_state(self, mounted: bool, pid: Optional[int] = None) -> None:
        """Persist the mount state to disk."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        state = {
            "mounted": mounted,
            "mount_point": str(self._mount_point),
            "document": str(self._document) if self._document else None,
            "pid": pid,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        self._state_file().write_text(json.dumps(state, indent=2), encoding="utf-8")

    def _read_state(self) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(self._state_file().read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _is_mounted(self) -> bool:
        return str(self._mount_point) in _mounted_paths()

    def validate(self) -> bool:
        """Decrypt the document once; False if it is not a usable SOPS file."""
        if self._document is None:
            return False
        registry = EngineRegistry(self._config)
        try:
            registry.stat(compose_path(document_uri(self._document)))
            return True
        except SopsFsError as exc:
            logger.error(
                "Mounting failed, %s might not be a valid SOPS file: %s",
                self._document.name,
                exc,
            )
            return False
        finally:
            registry.dispose()

    def _child_args(self) -> List[str]:
        # Forwarded env values stay out of argv; see _child_env.
        return [
            sys.executable, "-m", "sopsfs.cli",
            "--home", str(self._home),
            "--sops-command", self._config.sops_command,
            "mount", "start", str(self._document),
            "--mount-point", str(self._mount_point),
            "--foreground",
        ]

    def _child_env(self) -> Dict[str, str]:
        return {**os.environ, **self._config.env}

    def start(self, foreground: bool = False) -> bool:
        """Mount the document.

        Args:
            foreground: Block in this process until unmounted.

        Returns:
            True if the mount was initiated successfully.
        """
        try:
            import fuse as _fuse  # type: ignore[import]
        except ImportError:
            logger.error("fusepy is not installed. Install with: pip install sopsfs[fuse]")
            return False

        if self._is_mounted():
            logger.info("Already mounted at %s", self._mount_point)
            return True
        if not self.validate():
            return False

        self._mount_point.mkdir(parents=True, exist_ok=True)

        if foreground:
            logger.info("Mounting %s at %s (foreground)", self._document, self._mount_point)
            try:
                fs = SopsFuse(self._document, config=self._config)
                self._write_state(mounted=True, pid=os.getpid())
                _fuse.FUSE(
                    fs,
                    str(self._mount_point),
                    nothreads=True,
                    foreground=True,
                    allow_other=False,
                )
                self._write_state(mounted=False)
                return True
            except Exception as exc:
                logger.error("Failed to mount filesystem: %s", exc)
                self._write_state(mounted=False)
                return False

        logger.info("Mounting %s at %s (background)", self._document, self._mount_point)
        try:
            proc = subprocess.Popen(
                self._child_args(),
                env=self._child_env(),
                start_new_session=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            self._write_state(mounted=True, pid=proc.pid)
            logger.info("FUSE daemon started with pid %d", proc.pid)
            return True
        except OSError as exc:
            logger.error("Failed to start FUSE daemon: %s", exc)
            self._write_state(mounted=False)
            return False

    def stop(self) -> bool:
        """Unmount the document; True when nothing is left mounted."""
        if not self._is_mounted():
            logger.info("Nothing mounted at %s", self._mount_point)
            self._write_state(mounted=False)
            return True

        target = str(self._mount_point)
        for command in _UNMOUNT_COMMANDS:
            try:
                result = subprocess.run(
                    [*command, target], capture_output=True, text=True, timeout=10
                )
            except (subprocess.TimeoutExpired, OSError) as exc:
                logger.debug("%s unavailable: %s", command[0], exc)
                continue
            if result.returncode == 0:
                logger.info("Unmounted %s with %s", target, command[0])
                self._write_state(mounted=False)
                return True
            logger.debug("%s exited %d: %s", command[0], result.returncode, result.stderr.strip())

        logger.error("Could not unmount %s, try: fusermount -u %s", target, target)
        return False

    def status(self) -> Dict[str, Any]:
        """Return the mount status.

        Returns:
            Dictionary with ``mounted``, ``mount_point``, ``document``,
            ``pid`` and ``updated_at``.
        """
        state = self._read_state() or {}
        return {
            "mounted": self._is_mounted(),
            "mount_point": str(self._mount_point),
            "document": state.get("document"),
            "pid": state.get("pid"),
            "updated_at": state.get("updated_at"),
        }

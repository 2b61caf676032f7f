"""
Polling watch on the stable encrypted document.

A background thread compares a cheap stat signature of the file every
``interval`` seconds and calls back when it changes (edit, replace,
delete or re-create).
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Tuple

logger = logging.getLogger("sopsfs.watch")

StatSignature = Tuple[str, int, int, int]


def stat_signature(path: Path) -> StatSignature:
    """Return a stable stat tuple describing *path* existence and metadata."""
    try:
        st = path.stat()
    except FileNotFoundError:
        return ("missing", 0, 0, 0)
    except OSError:
        return ("error", 0, 0, 0)
    return ("ok", st.st_mtime_ns, st.st_size, st.st_ino)


class DocumentWatcher:
    """Watches one file and invokes *on_change* when its signature moves.

    Args:
        path: File to watch.
        on_change: Called from the watcher thread on every observed change.
        interval: Poll interval in seconds.
    """

    def __init__(
        self,
        path: Path,
        on_change: Callable[[], None],
        interval: float = 1.0,
    ) -> None:
        self.path = path
        self.interval = interval
        self._on_change = on_change
        self._lock = threading.Lock()
        self._signature = stat_signature(path)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, name=f"sopsfs-watch:{self.path.name}", daemon=True
        )
        self._thread.start()

    def rebaseline(self) -> None:
        """Accept the file's current state without reporting it as a change."""
        with self._lock:
            self._signature = stat_signature(self.path)

    def check(self) -> bool:
        """Poll once; return True (after calling back) if the file changed."""
        current = stat_signature(self.path)
        with self._lock:
            if current == self._signature:
                return False
            self._signature = current
        logger.debug("External change detected on %s", self.path)
        try:
            self._on_change()
        except Exception:
            logger.exception("Change handler for %s failed", self.path)
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.check()

    def dispose(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)

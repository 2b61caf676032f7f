"""
EngineRegistry — many documents behind one namespace.

A namespace path is ``/<document-id>/<sub/path>``, where ``document-id``
is the document's ``file://`` URI encoded as URL-safe base64 without
padding. Engines are opened lazily, kept in a bounded LRU, and torn down
explicitly on eviction. Their change events are re-addressed into the
namespace before being re-emitted.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple
from urllib.parse import urlparse
from urllib.request import url2pathname

from .engine import DocumentEngine
from .errors import CrossDocumentRename, FileNotFound, SopsFsError
from .events import EventEmitter, Listener, Subscription
from .models import ChangeEvent, FileKind, FileStat, SopsFsConfig
from .paths import join_path, parse_path

logger = logging.getLogger("sopsfs.registry")


def document_uri(document: Path) -> str:
    """Stable identity of a document: its absolute ``file://`` URI."""
    return Path(document).expanduser().resolve().as_uri()


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise FileNotFound(f"unsupported document location {uri!r}")
    return Path(url2pathname(parsed.path))


def encode_identity(uri: str) -> str:
    return base64.urlsafe_b64encode(uri.encode("utf-8")).decode("ascii").rstrip("=")


def decode_identity(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise FileNotFound(f"invalid document address {encoded!r}") from exc


def compose_path(uri: str, path: Optional[str] = None) -> str:
    """Namespace path for *path* inside the document identified by *uri*."""
    sub = join_path(parse_path(path or ""))
    return "/" + encode_identity(uri) + (sub if sub != "/" else "")


def parse_namespace_path(path: str) -> Tuple[str, str]:
    """Split a namespace path into ``(document uri, sub path)``.

    Raises:
        FileNotFound: The path names no document.
    """
    parts = parse_path(path)
    if not parts:
        raise FileNotFound(path=path)
    return decode_identity(parts[0]), join_path(parts[1:])


class EngineRegistry:
    """Routes namespace paths to lazily opened DocumentEngines.

    Args:
        config: Effective configuration; ``cache_size`` bounds open engines.
    """

    def __init__(self, config: Optional[SopsFsConfig] = None) -> None:
        self.config = config or SopsFsConfig()
        self._lock = threading.Lock()
        self._engines: "OrderedDict[str, Tuple[DocumentEngine, Subscription]]" = OrderedDict()
        self._emitter = EventEmitter()

    def on_did_change(self, listener: Listener) -> Subscription:
        """Subscribe to change batches carrying namespace paths."""
        return self._emitter.subscribe(listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._engines)

    def __contains__(self, uri: str) -> bool:
        with self._lock:
            return uri in self._engines

    def _make_engine(self, uri: str) -> DocumentEngine:
        return DocumentEngine.from_config(uri_to_path(uri), self.config)

    def _relay(self, uri: str) -> Listener:
        def relay(events: List[ChangeEvent]) -> None:
            self._emitter.fire(
                [ChangeEvent(path=compose_path(uri, e.path), kind=e.kind) for e in events]
            )

        return relay

    def engine(self, uri: str) -> DocumentEngine:
        """Return the engine for *uri*, opening it on first reference.

        A new engine is stat'ed once so undecryptable or missing
        documents fail here rather than on a later call.
        """
        with self._lock:
            entry = self._engines.get(uri)
            if entry is not None:
                self._engines.move_to_end(uri)
                return entry[0]

        engine = self._make_engine(uri)
        try:
            engine.stat("/")
        except Exception:
            engine.dispose()
            raise

        subscription = engine.on_did_change(self._relay(uri))
        evicted: List[Tuple[DocumentEngine, Subscription]] = []
        with self._lock:
            existing = self._engines.get(uri)
            if existing is None:
                self._engines[uri] = (engine, subscription)
                while len(self._engines) > self.config.cache_size:
                    old_uri, old_entry = self._engines.popitem(last=False)
                    logger.debug("Evicting engine for %s", old_uri)
                    evicted.append(old_entry)
            else:
                self._engines.move_to_end(uri)
                evicted.append((engine, subscription))
                engine = existing[0]
        for old_engine, old_subscription in evicted:
            old_subscription.dispose()
            old_engine.dispose()
        return engine

    def open(self, path: str) -> Tuple[DocumentEngine, str]:
        """Resolve a namespace path to ``(engine, engine-relative path)``."""
        uri, sub = parse_namespace_path(path)
        return self.engine(uri), sub

    def close(self, uri: str) -> None:
        """Dispose the engine for *uri* if it is open."""
        with self._lock:
            entry = self._engines.pop(uri, None)
        if entry is not None:
            entry[1].dispose()
            entry[0].dispose()

    def dispose(self) -> None:
        with self._lock:
            entries = list(self._engines.values())
            self._engines.clear()
        for engine, subscription in entries:
            subscription.dispose()
            engine.dispose()
        self._emitter.dispose()

    # ------------------------------------------------------------------
    # Filesystem contract
    # ------------------------------------------------------------------

    def watch(self, path: str, recursive: bool = True) -> Subscription:
        """No-op registration: every open document is always watched."""
        return Subscription(self._emitter, lambda events: None)

    def _call(self, op: str, path: str, fn: Callable[[DocumentEngine, str], Any]) -> Any:
        try:
            engine, sub = self.open(path)
            return fn(engine, sub)
        except FileNotFound as exc:
            logger.debug("%s %s: %s", op, path, exc)
            raise
        except SopsFsError as exc:
            logger.error("%s %s: %s", op, path, exc)
            raise

    def stat(self, path: str) -> FileStat:
        return self._call("stat", path, lambda engine, sub: engine.stat(sub))

    def read_directory(self, path: str) -> List[Tuple[str, FileKind]]:
        return self._call("readDirectory", path, lambda engine, sub: engine.list(sub))

    def create_directory(self, path: str) -> None:
        self._call("createDirectory", path, lambda engine, sub: engine.create_directory(sub))

    def read_file(self, path: str) -> bytes:
        return self._call("readFile", path, lambda engine, sub: engine.read(sub))

    def write_file(
        self, path: str, content: bytes, create: bool = True, overwrite: bool = True
    ) -> None:
        self._call(
            "writeFile",
            path,
            lambda engine, sub: engine.write(sub, content, create=create, overwrite=overwrite),
        )

    def delete(self, path: str, recursive: bool = True) -> None:
        self._call("delete", path, lambda engine, sub: engine.delete(sub, recursive=recursive))

    def rename(self, old_path: str, new_path: str, overwrite: bool = False) -> None:
        old_uri, _ = parse_namespace_path(old_path)
        new_uri, new_sub = parse_namespace_path(new_path)
        if old_uri != new_uri:
            raise CrossDocumentRename(
                f"cannot rename {old_path} to {new_path}, not the same sops file"
            )
        self._call(
            "rename",
            old_path,
            lambda engine, sub: engine.rename(sub, new_sub, overwrite=overwrite),
        )

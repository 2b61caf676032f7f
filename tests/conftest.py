"""Shared test fixtures for sopsfs.

``FakeSops`` stands in for the sops executable: its "encryption" is a
base64 envelope, and it implements decrypt, ``--set`` and the editor
re-encryption on top of real JSON/YAML/dotenv parsing so the engine can
be exercised end to end without sops or keys installed.
"""

from __future__ import annotations

import base64
import json
import re
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import pytest
import yaml

from sopsfs.engine import DocumentEngine
from sopsfs.errors import ToolFailure
from sopsfs.models import SopsFormat, SopsFsConfig
from sopsfs.paths import format_from_path
from sopsfs.registry import EngineRegistry, uri_to_path
from sopsfs.sops import SopsTool

_ENVELOPE = b"FAKESOPS:"
_SEGMENT_RE = re.compile(r'\[(\d+)\]|\["([^"]*)"\]')


def fake_encrypt(plaintext: bytes) -> bytes:
    return _ENVELOPE + base64.b64encode(plaintext) + b"\n"


def fake_decrypt(encrypted: bytes) -> bytes:
    if not encrypted.startswith(_ENVELOPE):
        raise ToolFailure("Error unmarshalling input: not a sops file", returncode=128)
    return base64.b64decode(encrypted[len(_ENVELOPE):].strip())


def _fmt(path: Path) -> SopsFormat:
    # Temp files carry the canonical extension of the document format.
    return format_from_path(path.name)


def _load(fmt: SopsFormat, text: str) -> Any:
    if fmt is SopsFormat.JSON:
        return json.loads(text)
    if fmt is SopsFormat.YAML:
        return yaml.safe_load(text) or {}
    if fmt is SopsFormat.DOTENV:
        pairs = (line.split("=", 1) for line in text.splitlines() if "=" in line)
        return {k: v for k, v in pairs}
    raise ToolFailure(f"fake sops cannot parse {fmt.value}")


def _dump(fmt: SopsFormat, tree: Any) -> str:
    if fmt is SopsFormat.JSON:
        return json.dumps(tree, indent="\t") + "\n"
    if fmt is SopsFormat.YAML:
        return yaml.safe_dump(tree, sort_keys=False, default_flow_style=False)
    return "".join(f"{k}={v}\n" for k, v in tree.items())


def apply_set(tree: Any, expression: str, value: Any) -> Any:
    """Apply a sops ``--set`` expression the way sops does."""
    segments: List[Any] = []
    for idx, key in _SEGMENT_RE.findall(expression):
        segments.append(int(idx) if idx else key)
    if not segments or "".join(m.group(0) for m in _SEGMENT_RE.finditer(expression)) != expression:
        raise ToolFailure(f"invalid set path {expression!r}")
    node = tree
    for seg in segments[:-1]:
        if isinstance(node, list):
            node = node[seg]
        else:
            node = node.setdefault(seg, {})
    last = segments[-1]
    if isinstance(node, list) and last == len(node):
        node.append(value)
    else:
        node[last] = value
    return tree


class FakeSops(SopsTool):
    """In-process stand-in for the sops executable."""

    def __init__(self) -> None:
        super().__init__(command="fake-sops")
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: set = set()

    def _check(self, op: str, sops_file: Path) -> None:
        self.calls.append((op, str(sops_file)))
        if op in self.fail_on:
            raise ToolFailure(f"fake sops {op} failure", returncode=1)

    def decrypt(self, sops_file: Path) -> bytes:
        self._check("decrypt", sops_file)
        return fake_decrypt(sops_file.read_bytes())

    def decrypt_tree(self, sops_file: Path) -> Any:
        self._check("decrypt_tree", sops_file)
        plaintext = fake_decrypt(sops_file.read_bytes()).decode("utf-8")
        try:
            return _load(_fmt(sops_file), plaintext)
        except ValueError as exc:
            raise ToolFailure(f"sops produced invalid JSON: {exc}") from exc

    def set(self, sops_file: Path, expression: str, value: Any) -> None:
        self._check("set", sops_file)
        fmt = _fmt(sops_file)
        tree = _load(fmt, fake_decrypt(sops_file.read_bytes()).decode("utf-8"))
        tree = apply_set(tree, expression, value)
        sops_file.write_bytes(fake_encrypt(_dump(fmt, tree).encode("utf-8")))

    def edit(self, sops_file: Path, content: bytes) -> None:
        self._check("edit", sops_file)
        fmt = _fmt(sops_file)
        if fmt.is_structured:
            _load(fmt, content.decode("utf-8"))
        sops_file.write_bytes(fake_encrypt(content))

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)


@pytest.fixture
def fake_sops() -> FakeSops:
    """Provide a fresh in-process fake sops."""
    return FakeSops()


@pytest.fixture
def make_document(tmp_path: Path) -> Callable[[str, Any], Path]:
    """Return a factory writing a fake-encrypted document.

    Structured content (dict/list) is serialized for the document's
    format; str/bytes content is stored verbatim.
    """

    def factory(name: str, content: Any) -> Path:
        path = tmp_path / name
        fmt = format_from_path(name)
        if isinstance(content, bytes):
            plaintext = content
        elif isinstance(content, str):
            plaintext = content.encode("utf-8")
        else:
            plaintext = _dump(fmt, content).encode("utf-8")
        path.write_bytes(fake_encrypt(plaintext))
        return path

    return factory


@pytest.fixture
def make_engine(fake_sops: FakeSops):
    """Return a factory for engines backed by the fake sops; disposed after the test."""
    engines: List[DocumentEngine] = []

    def factory(document: Path, **kwargs: Any) -> DocumentEngine:
        kwargs.setdefault("throttle_interval", 60.0)
        kwargs.setdefault("watch_interval", 60.0)
        engine = DocumentEngine(document, tool=fake_sops, **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.dispose()


@pytest.fixture
def decrypted() -> Callable[[Path], Any]:
    """Return a helper parsing the plaintext stored in a fake-encrypted document."""

    def parse(path: Path) -> Any:
        fmt = format_from_path(path.name)
        return _load(fmt, fake_decrypt(path.read_bytes()).decode("utf-8"))

    return parse


class FakeRegistry(EngineRegistry):
    """EngineRegistry whose engines all share one FakeSops."""

    def __init__(self, config: Optional[SopsFsConfig] = None, tool: Optional[FakeSops] = None) -> None:
        config = config or SopsFsConfig(throttle_interval=60.0, watch_interval=60.0)
        super().__init__(config)
        self.tool = tool or FakeSops()
        self.opened: List[DocumentEngine] = []

    def _make_engine(self, uri: str) -> DocumentEngine:
        engine = DocumentEngine(
            uri_to_path(uri),
            tool=self.tool,
            throttle_interval=self.config.throttle_interval,
            watch_interval=self.config.watch_interval,
        )
        self.opened.append(engine)
        return engine


@pytest.fixture
def make_registry(fake_sops: FakeSops):
    """Return a factory for fake-backed registries; disposed after the test."""
    registries: List[FakeRegistry] = []

    def factory(**config: Any) -> FakeRegistry:
        config.setdefault("throttle_interval", 60.0)
        config.setdefault("watch_interval", 60.0)
        registry = FakeRegistry(SopsFsConfig(**config), tool=fake_sops)
        registries.append(registry)
        return registry

    yield factory
    for registry in registries:
        registry.dispose()

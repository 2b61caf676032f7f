"""
Thin wrapper around the ``sops`` executable.

sops is treated as a point tool with four call shapes:

- ``sops --decrypt FILE``                       raw plaintext bytes
- ``sops --output-type json --decrypt FILE``    plaintext as JSON text
- ``sops --set 'EXPR VALUE' FILE``              set one value in place
- ``EDITOR=... sops FILE``                      re-encrypt replacement plaintext

Every call merges the configured environment over ``os.environ``. Temp
files used to stage content are removed on every exit path.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import ToolFailure
from .models import SopsFsConfig

logger = logging.getLogger("sopsfs.sops")

# https://pkg.go.dev/go.mozilla.org/sops/v3/cmd/sops/codes#FileHasNotBeenModified
EXIT_FILE_NOT_MODIFIED = 200


@contextmanager
def temporary_file(suffix: str = "", dir: Optional[Path] = None) -> Iterator[Path]:
    """Yield the path of a fresh empty temp file, unlinked on exit."""
    handle = tempfile.NamedTemporaryFile(
        prefix="sopsfs-", suffix=suffix, dir=dir, delete=False
    )
    handle.close()
    path = Path(handle.name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def copy_command(source: Path) -> str:
    """Build an ``EDITOR`` value that overwrites its argument with *source*."""
    if os.name == "nt":
        return f'cmd.exe /c copy /y "{source}"'
    return f"cp {shlex.quote(str(source))}"


class SopsTool:
    """Invokes sops synchronously; no timeout unless configured.

    Args:
        command: sops executable name or path.
        env: Extra environment variables (key-file locations etc.).
        timeout: Optional per-call timeout in seconds.
        temp_dir: Directory for staging files; system default if None.
    """

    def __init__(
        self,
        command: str = "sops",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        temp_dir: Optional[Path] = None,
    ) -> None:
        self.command = command
        self.env = dict(env or {})
        self.timeout = timeout
        self.temp_dir = temp_dir

    @classmethod
    def from_config(cls, config: SopsFsConfig) -> "SopsTool":
        return cls(
            command=config.sops_command,
            env=config.env,
            timeout=config.tool_timeout,
            temp_dir=config.temp_dir,
        )

    def _run(
        self,
        args: List[str],
        extra_env: Optional[Dict[str, str]] = None,
        allow_unmodified: bool = False,
    ) -> bytes:
        env = {**os.environ, **self.env, **(extra_env or {})}
        try:
            result = subprocess.run(
                [self.command, *args],
                capture_output=True,
                env=env,
                timeout=self.timeout,
                check=False,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ToolFailure(f"cannot execute {self.command!r}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ToolFailure(f"{self.command} timed out after {self.timeout}s") from exc

        if result.returncode == 0:
            return result.stdout
        if allow_unmodified and result.returncode == EXIT_FILE_NOT_MODIFIED:
            logger.debug("sops reported file not modified, treating as success")
            return result.stdout

        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise ToolFailure(
            f"{self.command} exited with status {result.returncode}: {stderr}",
            returncode=result.returncode,
            stderr=stderr,
        )

    def decrypt(self, sops_file: Path) -> bytes:
        """Decrypt *sops_file* to its raw plaintext bytes."""
        try:
            return self._run(["--decrypt", str(sops_file)])
        except ToolFailure as exc:
            logger.error("Failed to decrypt SOPS file: %s", exc)
            raise

    def decrypt_tree(self, sops_file: Path) -> Any:
        """Decrypt *sops_file* to JSON and parse it."""
        try:
            stdout = self._run(["--output-type", "json", "--decrypt", str(sops_file)])
            return json.loads(stdout)
        except ToolFailure as exc:
            logger.error("Failed to decrypt SOPS file to JSON: %s", exc)
            raise
        except ValueError as exc:
            logger.error("Failed to decrypt SOPS file to JSON: %s", exc)
            raise ToolFailure(f"sops produced invalid JSON: {exc}") from exc

    def set(self, sops_file: Path, expression: str, value: Any) -> None:
        """Assign the JSON encoding of *value* at *expression*, in place."""
        encoded = json.dumps(value, ensure_ascii=False)
        try:
            self._run(
                ["--set", f"{expression} {encoded}", str(sops_file)],
                allow_unmodified=True,
            )
        except ToolFailure as exc:
            logger.error("Failed to set %s on SOPS file: %s", expression, exc)
            raise

    def edit(self, sops_file: Path, content: bytes) -> None:
        """Replace the plaintext of *sops_file* with *content* and re-encrypt.

        sops opens ``$EDITOR`` on a decrypted copy; the editor here is a
        copy command that overwrites that copy with *content*.
        """
        with temporary_file(dir=self.temp_dir) as content_file:
            content_file.write_bytes(content)
            try:
                self._run(
                    [str(sops_file)],
                    extra_env={"EDITOR": copy_command(content_file)},
                    allow_unmodified=True,
                )
            except ToolFailure as exc:
                logger.error("Failed to edit SOPS file: %s", exc)
                raise

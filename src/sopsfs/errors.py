"""
Filesystem error conditions.

Each class is an ``OSError`` carrying the errno a kernel-facing host
would report, so FUSE bindings can raise them unchanged.
"""

from __future__ import annotations

import errno
from typing import Optional


class SopsFsError(OSError):
    """Base class for every sopsfs failure."""

    default_errno = errno.EIO
    default_message = "sopsfs error"

    def __init__(self, message: Optional[str] = None, path: Optional[str] = None):
        if path is None:
            super().__init__(self.default_errno, message or self.default_message)
        else:
            super().__init__(self.default_errno, message or self.default_message, path)


class FileNotFound(SopsFsError):
    """Path does not resolve in the current snapshot."""

    default_errno = errno.ENOENT
    default_message = "No such file or directory"


class FileExists(SopsFsError):
    """Create or rename collided with an existing node."""

    default_errno = errno.EEXIST
    default_message = "File exists"


class NotADirectory(SopsFsError):
    default_errno = errno.ENOTDIR
    default_message = "Not a directory"


class IsADirectory(SopsFsError):
    default_errno = errno.EISDIR
    default_message = "Is a directory"


class PermissionDenied(SopsFsError):
    """Operation is forbidden on this node or document format."""

    default_errno = errno.EACCES
    default_message = "Permission denied"


class InvalidPath(SopsFsError):
    """A path segment cannot address the tree (e.g. malformed array index)."""

    default_errno = errno.EINVAL
    default_message = "Invalid path"


class CrossDocumentRename(SopsFsError):
    default_errno = errno.EXDEV
    default_message = "Cannot rename across documents"


class ToolFailure(SopsFsError):
    """The sops executable failed or produced unusable output."""

    default_errno = errno.EIO
    default_message = "sops invocation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

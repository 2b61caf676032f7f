"""
Delete markers.

sops can set a value but cannot remove one. Deletion is simulated by
setting this sentinel at the target, decrypting, stripping the sentinel
textually, and re-encrypting the stripped plaintext.
"""

from __future__ import annotations

import re

from .models import SopsFormat

DELETED_MARKER = "sopsfs__deleted__ba2bfdb5-b5c2-460c-a1cd-4e257b05ebee"

# Optional leading comma, optional `"key":`, the marker string, optional
# trailing comma. Whitespace around each piece is consumed.
_JSON_MARKER_RE = re.compile(
    r'(,)?(\s*"[^"]+"\s*:)?\s*"' + re.escape(DELETED_MARKER) + r'"\s*(,)?'
)
_LINE_MARKER_RE = re.compile(r".*" + re.escape(DELETED_MARKER) + r".*\n?")


def _json_replacement(match: "re.Match[str]") -> str:
    # Middle element: both separators matched, keep exactly one.
    if match.group(1) and match.group(3):
        return ","
    return ""


def strip_markers(fmt: SopsFormat, content: str) -> str:
    """Remove every marked entry from decrypted plaintext.

    JSON entries are removed with their key and one separating comma so
    the result stays valid; other text formats drop every line that
    contains the marker. Content without markers is returned unchanged.

    Raises:
        ValueError: For the binary format, which has no entries.
    """
    if fmt is SopsFormat.BINARY:
        raise ValueError(f"strip_markers: unhandled format {fmt.value}")
    if fmt is SopsFormat.JSON:
        return _JSON_MARKER_RE.sub(_json_replacement, content)
    return _LINE_MARKER_RE.sub("", content)

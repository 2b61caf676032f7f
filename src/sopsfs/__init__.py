"""
sopsfs — SOPS-encrypted documents as a virtual filesystem.

Every leaf of a decrypted JSON/YAML/INI/dotenv document becomes a file,
every object or array a directory. Edits are re-encrypted in place by
the ``sops`` executable; plaintext never lands in the stable document.
"""

import os

__version__ = "0.1.0"

SOPSFS_HOME = os.environ.get("SOPSFS_HOME", "~/.sopsfs")

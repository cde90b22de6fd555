"""Directory layout under the snapshotter root."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class FileSystemMeta:
    """Paths of the working directories below a root directory."""

    root_dir: str

    def snapshot_root(self) -> str:
        return os.path.join(self.root_dir, "snapshots")

    def cache_root(self) -> str:
        return os.path.join(self.root_dir, "cache")

    def socket_root(self) -> str:
        return os.path.join(self.root_dir, "socket")

    def config_root(self) -> str:
        return os.path.join(self.root_dir, "config")

    def upper_path(self, snapshot_id: str) -> str:
        """Return the upper directory of a snapshot."""
        return os.path.join(self.root_dir, "snapshots", snapshot_id, "fs")
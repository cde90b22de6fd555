"""Helpers for fscache identifiers and mount point detection."""

from __future__ import annotations

import hashlib
import os


def fscache_id(snapshot_id: str) -> str:
    """Return the hex SHA-256 fscache id of a snapshot."""
    return hashlib.sha256(f"nydus-snapshot-{snapshot_id}".encode()).hexdigest()


def is_likely_not_mount_point(path: str) -> bool:
    """Return False if path lies on a different device than its parent.

    Raises OSError when path or its parent cannot be stat'ed.
    """
    stat = os.stat(path)
    trimmed = path[:-1] if path.endswith("/") else path
    parent = os.path.dirname(trimmed) or "."
    parent_stat = os.stat(parent)
    return stat.st_dev == parent_stat.st_dev
"""Persistent store for daemon records and blob cache bookkeeping."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

DATABASE_FILE_NAME = "nydus.db"

_TABLES = ("daemons", "snapshots", "blobs")


class NotFoundError(LookupError):
    """The requested object does not exist."""

    def __init__(self, message: str = "object not found"):
        super().__init__(message)


class AlreadyExistsError(Exception):
    """An object with the same key is already stored."""

    def __init__(self, message: str = "object already exists"):
        super().__init__(message)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SnapshotRecord:
    """Blobs referenced by an image."""

    image_id: str
    blobs: list[str] = field(default_factory=list)
    create_at: datetime = field(default_factory=_now)
    update_at: datetime = field(default_factory=_now)

    def _to_dict(self) -> dict[str, Any]:
        return {
            "image_id": self.image_id,
            "blobs": list(self.blobs),
            "create_at": self.create_at.isoformat(),
            "update_at": self.update_at.isoformat(),
        }

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> "SnapshotRecord":
        return cls(
            image_id=data["image_id"],
            blobs=list(data.get("blobs") or []),
            create_at=datetime.fromisoformat(data["create_at"]),
            update_at=datetime.fromisoformat(data["update_at"]),
        )


@dataclass
class BlobRecord:
    """Timestamps of a cached blob."""

    create_at: datetime = field(default_factory=_now)
    update_at: datetime = field(default_factory=_now)

    def _to_dict(self) -> dict[str, Any]:
        return {
            "create_at": self.create_at.isoformat(),
            "update_at": self.update_at.isoformat(),
        }

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> "BlobRecord":
        return cls(
            create_at=datetime.fromisoformat(data["create_at"]),
            update_at=datetime.fromisoformat(data["update_at"]),
        )


class Database:
    """Keeps records that must survive a restart, in root_dir/nydus.db."""

    def __init__(self, root_dir: str):
        path = os.path.join(root_dir, DATABASE_FILE_NAME)
        directory = os.path.dirname(path)
        if not os.path.exists(directory):
            os.makedirs(directory, mode=0o700, exist_ok=True)
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        try:
            with self._conn:
                for table in _TABLES:
                    self._conn.execute(
                        f"CREATE TABLE IF NOT EXISTS {table} "
                        "(key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                    )
        except sqlite3.Error as err:
            self._conn.close()
            raise RuntimeError(f"failed to initialize database: {err}") from err
        os.chmod(path, 0o600)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # Low level helpers; callers hold the lock and an open transaction.

    def _get(self, table: str, key: str) -> Any:
        row = self._conn.execute(
            f"SELECT value FROM {table} WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            raise NotFoundError()
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as err:
            raise ValueError(f"failed to unmarshall object with key {key!r}") from err

    def _put(self, table: str, key: str, value: Any) -> None:
        exists = self._conn.execute(
            f"SELECT 1 FROM {table} WHERE key = ?", (key,)
        ).fetchone()
        if exists is not None:
            raise AlreadyExistsError(f"object with key {key!r} already exists")
        self._update(table, key, value)

    def _update(self, table: str, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as err:
            raise ValueError(f"failed to marshall object with key {key!r}") from err
        self._conn.execute(
            f"INSERT OR REPLACE INTO {table} (key, value) VALUES (?, ?)", (key, encoded)
        )

    def _delete(self, table: str, key: str) -> None:
        self._conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,))

    def _values(self, table: str) -> list[tuple[str, str]]:
        return self._conn.execute(f"SELECT key, value FROM {table} ORDER BY key").fetchall()

    # Daemons

    def save_daemon(self, daemon_id: str, record: Mapping[str, Any]) -> None:
        """Store a new daemon record; raise AlreadyExistsError on a duplicate."""
        with self._lock, self._conn:
            try:
                self._get("daemons", daemon_id)
            except NotFoundError:
                self._put("daemons", daemon_id, dict(record))
                return
            raise AlreadyExistsError()

    def update_daemon(self, daemon_id: str, record: Mapping[str, Any]) -> None:
        """Replace a daemon record; raise NotFoundError if it is not stored."""
        with self._lock, self._conn:
            self._get("daemons", daemon_id)
            self._update("daemons", daemon_id, dict(record))

    def delete_daemon(self, daemon_id: str) -> None:
        with self._lock, self._conn:
            self._delete("daemons", daemon_id)

    def walk_daemons(self) -> Iterator[dict[str, Any]]:
        """Yield every stored daemon record in key order."""
        with self._lock:
            rows = self._values("daemons")
        for key, value in rows:
            try:
                yield json.loads(value)
            except json.JSONDecodeError as err:
                raise ValueError(f"failed to unmarshal {key}") from err

    def cleanup_daemons(self) -> None:
        """Delete all daemon records."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM daemons")

    # Cache bookkeeping

    def add_snapshot(self, image_id: str, snapshot: SnapshotRecord) -> None:
        """Insert a snapshot, or refresh the blobs of an existing one."""
        with self._lock, self._conn:
            try:
                existing = SnapshotRecord._from_dict(self._get("snapshots", image_id))
            except NotFoundError:
                self._put("snapshots", image_id, snapshot._to_dict())
                return
            existing.blobs = list(snapshot.blobs)
            existing.update_at = _now()
            self._update("snapshots", image_id, existing._to_dict())

    def add_blob(self, blob_id: str, blob: BlobRecord) -> None:
        """Insert a blob, or refresh the update time of an existing one."""
        with self._lock, self._conn:
            try:
                existing = BlobRecord._from_dict(self._get("blobs", blob_id))
            except NotFoundError:
                self._put("blobs", blob_id, blob._to_dict())
                return
            existing.update_at = _now()
            self._update("blobs", blob_id, existing._to_dict())

    def get_snapshot(self, image_id: str) -> Optional[SnapshotRecord]:
        """Return the stored snapshot, or None."""
        with self._lock:
            try:
                return SnapshotRecord._from_dict(self._get("snapshots", image_id))
            except NotFoundError:
                return None

    def del_snapshot(self, image_id: str) -> None:
        with self._lock, self._conn:
            self._delete("snapshots", image_id)

    def del_blob(self, blob_id: str) -> None:
        with self._lock, self._conn:
            self._delete("blobs", blob_id)

    def unused_blobs(self) -> list[str]:
        """Return blob ids that no snapshot references, in key order."""
        with self._lock:
            marked: set[str] = set()
            for _, value in self._values("snapshots"):
                marked.update(json.loads(value).get("blobs") or [])
            return [key for key, _ in self._values("blobs") if key not in marked]
"""Bookkeeping of cached blobs per image, with garbage collection."""

from __future__ import annotations

import threading
from typing import Callable, Iterable

from .database import BlobRecord, Database, SnapshotRecord


class GCError(Exception):
    """One or more blobs could not be collected."""

    def __init__(self, errors: list[BaseException]):
        self.errors = list(errors)
        message = "errors: " + "".join(
            f"error {index}: {error}\t" for index, error in enumerate(self.errors)
        )
        super().__init__(message)


class CacheStore:
    """Records which blobs each image uses and removes the unused ones."""

    def __init__(self, database: Database):
        self.database = database
        self._lock = threading.Lock()

    def add_snapshot(self, image_id: str, blobs: Iterable[str]) -> None:
        blob_ids = list(blobs)
        with self._lock:
            self.database.add_snapshot(image_id, SnapshotRecord(image_id=image_id, blobs=blob_ids))
            for blob_id in blob_ids:
                self.database.add_blob(blob_id, BlobRecord())

    def del_snapshot(self, image_id: str) -> None:
        with self._lock:
            self.database.del_snapshot(image_id)

    def gc(self, delete_blob: Callable[[str], None]) -> list[str]:
        """Forget unused blobs, call delete_blob on each and return their ids.

        Raises GCError listing every failure if any step failed.
        """
        with self._lock:
            unused = self.database.unused_blobs()
            errors: list[BaseException] = []
            for blob_id in unused:
                try:
                    self.database.del_blob(blob_id)
                except Exception as err:  # noqa: BLE001 - collected and reported
                    errors.append(err)
                try:
                    delete_blob(blob_id)
                except Exception as err:  # noqa: BLE001 - collected and reported
                    errors.append(err)
            if errors:
                raise GCError(errors)
            return unused
"""Labelled gauges whose series expire when they are not set for a while."""

from __future__ import annotations

import threading
import time
from typing import Optional

DEFAULT_CLEANUP_PERIOD = 600.0


class GaugeVec:
    """A family of gauges keyed by label values, each with a time to live.

    Times are in seconds. Expired series are dropped every cleanup_period
    by a background thread, or whenever clean_up_expired is called.
    """

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: list[str],
        ttl: float,
        cleanup_period: float = DEFAULT_CLEANUP_PERIOD,
    ):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names)
        self.ttl = ttl
        self.cleanup_period = cleanup_period
        self._lock = threading.Lock()
        self._values: dict[tuple[str, ...], float] = {}
        self._deadlines: dict[tuple[str, ...], float] = {}
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._clean_loop, name=f"ttl-{name}", daemon=True)
        self._thread.start()

    def _key(self, values: tuple[str, ...]) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"inconsistent label cardinality: expected {len(self.label_names)} "
                f"label values but got {len(values)}"
            )
        return tuple(values)

    def _clean_loop(self) -> None:
        while not self._closed.wait(self.cleanup_period):
            self.clean_up_expired()

    def with_label_values(self, *args: str) -> "GaugeWithTTL":
        """Return the gauge of these label values, creating it at zero."""
        key = self._key(args)
        with self._lock:
            self._values.setdefault(key, 0.0)
        return GaugeWithTTL(self, key)

    def delete_label_values(self, *args: str) -> bool:
        """Drop the series of these label values; return whether it existed."""
        key = self._key(args)
        with self._lock:
            self._deadlines.pop(key, None)
            return self._values.pop(key, None) is not None

    def clean_up_expired(self) -> list[tuple[str, ...]]:
        """Drop every series past its deadline and return their label values."""
        now = time.monotonic()
        with self._lock:
            expired = [key for key, deadline in self._deadlines.items() if now > deadline]
            for key in expired:
                del self._deadlines[key]
                self._values.pop(key, None)
        return expired

    def collect(self) -> list[tuple[tuple[str, ...], float]]:
        """Return (label values, value) of every live series."""
        with self._lock:
            return list(self._values.items())

    def close(self) -> None:
        """Stop the background cleanup."""
        self._closed.set()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def _set(self, key: tuple[str, ...], value: float) -> None:
        with self._lock:
            self._deadlines[key] = time.monotonic() + self.ttl
            self._values[key] = float(value)


class GaugeWithTTL:
    """One series of a GaugeVec."""

    def __init__(self, vec: GaugeVec, label_values: tuple[str, ...]):
        self.vec = vec
        self.label_values = label_values
        self._deadline: Optional[float] = None

    def set(self, value: float) -> None:
        """Set the value and push the expiry ttl seconds into the future."""
        self.vec._set(self.label_values, value)
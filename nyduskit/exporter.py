"""File system metrics of daemons, kept in a registry and written as text."""

from __future__ import annotations

import enum
import json
import math
import os
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence, Union

from .ttl_gauge import GaugeVec

IMAGE_REF_LABEL = "image_ref"
DEFAULT_TTL = 180.0
DEFAULT_BIND_ADDRESS = ":8080"


class Fop(enum.IntEnum):
    """File operations counted by a daemon, in the order it reports them."""

    GETATTR = 0
    READLINK = 1
    OPEN = 2
    RELEASE = 3
    READ = 4
    STATFS = 5
    GETXATTR = 6
    LISTXATTR = 7
    OPENDIR = 8
    LOOKUP = 9
    READDIR = 10
    READDIRPLUS = 11
    ACCESS = 12
    FORGET = 13
    BATCH_FORGET = 14
    MAX_FOPS = 15


def make_fop_buckets() -> list[int]:
    """Return one bucket per file operation."""
    return list(range(Fop.MAX_FOPS))


@dataclass
class FsMetrics:
    """File system metrics reported by a daemon."""

    data_read: int = 0
    nr_opens: int = 0
    nr_max_opens: int = 0
    last_fop_tp: int = 0
    block_count_read: list[int] = field(default_factory=list)
    fop_hits: list[int] = field(default_factory=list)
    fop_errors: list[int] = field(default_factory=list)
    read_latency_dist: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ConstHistogram:
    """A histogram sample with a fixed count, sum and bucket counts."""

    name: str
    help_text: str
    label_names: tuple[str, ...]
    label_values: tuple[str, ...]
    count: int
    sum: float
    buckets: dict[float, int]


class FsMetricHistogram:
    """Builds histograms from one counter list of FsMetrics."""

    def __init__(
        self,
        name: str,
        help_text: str,
        buckets: Sequence[int],
        get_counters: Callable[[FsMetrics], Sequence[int]],
        label_names: Sequence[str] = (IMAGE_REF_LABEL,),
    ):
        self.name = name
        self.help_text = help_text
        self.buckets = list(buckets)
        self.get_counters = get_counters
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        self._last: Optional[ConstHistogram] = None

    def to_const_histogram(self, metrics: FsMetrics, image_ref: str) -> ConstHistogram:
        """Build a histogram of the counters; raise ValueError on a length mismatch."""
        counters = list(self.get_counters(metrics))
        if len(counters) != len(self.buckets):
            raise ValueError(
                f"length of counters({len(counters)}) and buckets({len(self.buckets)}) "
                f"not equal: {self.buckets}"
            )
        count = 0
        total = 0
        bucket_map: dict[float, int] = {}
        for bucket, counter in zip(self.buckets, counters):
            count += counter
            total += bucket * counter
            bucket_map[float(bucket)] = counter
        return ConstHistogram(
            name=self.name,
            help_text=self.help_text,
            label_names=self.label_names,
            label_values=(image_ref,),
            count=count,
            sum=float(total),
            buckets=bucket_map,
        )

    def save(self, histogram: ConstHistogram) -> None:
        """Keep the histogram as the one reported on collection."""
        with self._lock:
            self._last = histogram

    def collect(self) -> list[ConstHistogram]:
        """Return the saved histogram, if any."""
        with self._lock:
            return [] if self._last is None else [self._last]


Collector = Union[GaugeVec, FsMetricHistogram]


@dataclass(frozen=True)
class _Family:
    name: str
    help: str
    kind: str
    samples: list[Any]


class Registry:
    """A set of collectors with unique metric names."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collectors: dict[str, Collector] = {}

    def register(self, collector: Collector) -> None:
        """Add a collector; raise ValueError if its name is taken."""
        if not isinstance(collector, (GaugeVec, FsMetricHistogram)):
            raise TypeError(f"unsupported collector {type(collector).__name__}")
        with self._lock:
            if collector.name in self._collectors:
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {collector.name}"
                )
            self._collectors[collector.name] = collector

    def gather(self) -> list[_Family]:
        """Return the metric families that hold samples, sorted by name."""
        with self._lock:
            collectors = sorted(self._collectors.items())
        families = []
        for name, collector in collectors:
            if isinstance(collector, GaugeVec):
                samples: list[Any] = [
                    (dict(zip(collector.label_names, values)), value)
                    for values, value in sorted(collector.collect())
                ]
                kind = "gauge"
            else:
                samples = sorted(collector.collect(), key=lambda h: h.label_values)
                kind = "histogram"
            if samples:
                families.append(_Family(name, collector.help_text, kind, samples))
        return families


def _format_float(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).normalize().as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + int(exponent)
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp):02d}"
    if point <= 0:
        text = "0." + "0" * (-point) + digits
    elif point >= len(digits):
        text = digits + "0" * (point - len(digits))
    else:
        text = digits[:point] + "." + digits[point:]
    return sign + text


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels.items())
    return "{" + inner + "}"


def encode_text(family: _Family) -> str:
    """Encode a metric family in the Prometheus text exposition format."""
    name = family.name
    lines = [f"# HELP {name} {_escape_help(family.help)}", f"# TYPE {name} {family.kind}"]
    if family.kind == "gauge":
        for labels, value in family.samples:
            lines.append(f"{name}{_labels(labels)} {_format_float(value)}")
    else:
        for hist in family.samples:
            base = dict(zip(hist.label_names, hist.label_values))
            for upper, count in sorted(hist.buckets.items()):
                bucket_labels = {**base, "le": _format_float(upper)}
                lines.append(f"{name}_bucket{_labels(bucket_labels)} {_format_float(count)}")
            if math.inf not in hist.buckets:
                inf_labels = {**base, "le": "+Inf"}
                lines.append(f"{name}_bucket{_labels(inf_labels)} {_format_float(hist.count)}")
            lines.append(f"{name}_sum{_labels(base)} {_format_float(hist.sum)}")
            lines.append(f"{name}_count{_labels(base)} {_format_float(hist.count)}")
    return "\n".join(lines) + "\n"


def _json_line(data: dict[str, str]) -> str:
    text = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text


def _rfc3339_now() -> str:
    text = datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


READ_COUNT = GaugeVec(
    "nydusd_read_count", "Total number read of a nydus fs, in Byte.", [IMAGE_REF_LABEL], DEFAULT_TTL
)
OPEN_FD_COUNT = GaugeVec(
    "nydusd_open_fd_count", "Number of current open files.", [IMAGE_REF_LABEL], DEFAULT_TTL
)
OPEN_FD_MAX_COUNT = GaugeVec(
    "nydusd_open_fd_max_count", "Number of max open files.", [IMAGE_REF_LABEL], DEFAULT_TTL
)
LAST_FOP_TIMESTAMP = GaugeVec(
    "nydusd_last_fop_timestamp", "Timestamp of last file operation.", [IMAGE_REF_LABEL], DEFAULT_TTL
)

FS_METRIC_HISTS = [
    FsMetricHistogram(
        "nydusd_block_count_read_hist",
        "Read size histogram, in 1KB, 4KB, 16KB, 64KB, 128KB, 512K, 1024K.",
        [1, 4, 16, 64, 128, 512, 1024, 2048],
        lambda m: m.block_count_read,
    ),
    FsMetricHistogram(
        "nydusd_fop_hit_hist",
        "File operations histogram",
        make_fop_buckets(),
        lambda m: m.fop_hits,
    ),
    FsMetricHistogram(
        "nydusd_fop_errors_hist",
        "File operations' error histogram",
        make_fop_buckets(),
        lambda m: m.fop_errors,
    ),
    FsMetricHistogram(
        "nydusd_read_latency_hist",
        "Read latency histogram, in microseconds",
        [1, 20, 50, 100, 500, 1000, 2000, 4000],
        lambda m: m.read_latency_dist,
    ),
]

REGISTRY = Registry()
for _collector in (READ_COUNT, OPEN_FD_COUNT, OPEN_FD_MAX_COUNT, LAST_FOP_TIMESTAMP, *FS_METRIC_HISTS):
    REGISTRY.register(_collector)


class Exporter:
    """Records daemon metrics and appends the registry's text to a file."""

    def __init__(self, output_file: str, registry: Optional[Registry] = None):
        if not output_file:
            raise ValueError("metrics file path is empty")
        try:
            with open(output_file, "w", encoding="utf-8"):
                pass
        except OSError as err:
            raise OSError(err.errno, f"failed to create metrics file: {output_file}") from err
        self.output_file = output_file
        self.registry = REGISTRY if registry is None else registry

    def export_fs_metrics(self, metrics: FsMetrics, image_ref: str) -> None:
        """Update the gauges and histograms of an image and write the output."""
        READ_COUNT.with_label_values(image_ref).set(float(metrics.data_read))
        OPEN_FD_COUNT.with_label_values(image_ref).set(float(metrics.nr_opens))
        OPEN_FD_MAX_COUNT.with_label_values(image_ref).set(float(metrics.nr_max_opens))
        LAST_FOP_TIMESTAMP.with_label_values(image_ref).set(float(metrics.last_fop_tp))

        for hist in FS_METRIC_HISTS:
            try:
                built = hist.to_const_histogram(metrics, image_ref)
            except ValueError as err:
                raise ValueError(f"failed to new const histogram for {hist.name}: {err}") from err
            hist.save(built)

        self._output()

    def _output(self) -> None:
        with open(self.output_file, "a", encoding="utf-8") as handle:
            for family in self.registry.gather():
                data = {"time": _rfc3339_now(), "metrics": encode_text(family)}
                handle.write(_json_line(data) + "\n")


def new_listener(addr: str) -> socket.socket:
    """Listen on the unix socket at addr, or at DEFAULT_BIND_ADDRESS if empty."""
    if not addr:
        addr = DEFAULT_BIND_ADDRESS
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(addr)
        sock.listen()
    except OSError as err:
        sock.close()
        raise OSError(err.errno, f"error listening on {addr}: {err}") from err
    return sock


__all__ = [
    "ConstHistogram",
    "DEFAULT_BIND_ADDRESS",
    "Exporter",
    "Fop",
    "FS_METRIC_HISTS",
    "FsMetricHistogram",
    "FsMetrics",
    "REGISTRY",
    "Registry",
    "encode_text",
    "make_fop_buckets",
    "new_listener",
    "os",
]
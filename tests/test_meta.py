import os

from nyduskit.meta import FileSystemMeta

ROOT = "/var/lib/nydus"


def test_roots():
    meta = FileSystemMeta(ROOT)
    assert meta.snapshot_root() == os.path.join(ROOT, "snapshots")
    assert meta.cache_root() == os.path.join(ROOT, "cache")
    assert meta.socket_root() == os.path.join(ROOT, "socket")
    assert meta.config_root() == os.path.join(ROOT, "config")


def test_upper_path_is_under_snapshot_root():
    meta = FileSystemMeta(ROOT)
    upper = meta.upper_path("42")
    assert upper == os.path.join(meta.snapshot_root(), "42", "fs")
    assert os.path.dirname(os.path.dirname(upper)) == meta.snapshot_root()


def test_upper_path_differs_per_snapshot():
    meta = FileSystemMeta(ROOT)
    assert meta.upper_path("1") != meta.upper_path("2")
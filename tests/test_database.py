import pytest

from nyduskit.database import (
    AlreadyExistsError,
    BlobRecord,
    Database,
    NotFoundError,
    SnapshotRecord,
)


@pytest.fixture
def db(tmp_path):
    root = tmp_path / "snapshot"
    database = Database(str(root))
    yield database
    database.close()


def test_daemon_records(db):
    db.save_daemon("d1", {"id": "d1"})
    db.save_daemon("d2", {"id": "d2"})
    db.save_daemon("d3", {"id": "d3"})
    with pytest.raises(AlreadyExistsError):
        db.save_daemon("d1", {"id": "d1"})

    db.delete_daemon("d2")
    ids = {record["id"] for record in db.walk_daemons()}
    assert "d1" in ids
    assert "d2" not in ids
    assert "d3" in ids

    db.cleanup_daemons()
    assert list(db.walk_daemons()) == []


def test_update_daemon(db):
    with pytest.raises(NotFoundError):
        db.update_daemon("missing", {"id": "missing"})
    db.save_daemon("d1", {"id": "d1", "pid": 1})
    db.update_daemon("d1", {"id": "d1", "pid": 2})
    assert list(db.walk_daemons()) == [{"id": "d1", "pid": 2}]


def test_records_persist_after_reopen(tmp_path):
    root = str(tmp_path / "root")
    with Database(root) as first:
        first.save_daemon("d1", {"id": "d1"})
    with Database(root) as second:
        assert [r["id"] for r in second.walk_daemons()] == ["d1"]


def test_cache_unused_blobs(db):
    cases = [
        ("snapshot-01", ["blob-01", "blob-02", "blob-03"]),
        ("snapshot-02", ["blob-02", "blob-03", "blob-04"]),
    ]
    for image_id, blobs in cases:
        db.add_snapshot(image_id, SnapshotRecord(image_id=image_id, blobs=blobs))
        for blob_id in blobs:
            db.add_blob(blob_id, BlobRecord())
    db.del_snapshot("snapshot-01")
    assert db.unused_blobs() == ["blob-01"]


def test_add_snapshot_replaces_blobs(db):
    db.add_snapshot("img", SnapshotRecord(image_id="img", blobs=["a"]))
    first = db.get_snapshot("img")
    db.add_snapshot("img", SnapshotRecord(image_id="img", blobs=["b", "c"]))
    second = db.get_snapshot("img")
    assert second.blobs == ["b", "c"]
    assert second.create_at == first.create_at
    assert second.update_at >= first.update_at


def test_del_blob_removes_it_from_unused(db):
    db.add_blob("blob-x", BlobRecord())
    assert db.unused_blobs() == ["blob-x"]
    db.del_blob("blob-x")
    assert db.unused_blobs() == []
    assert db.get_snapshot("nothing") is None
# nyduskit

`nyduskit` is a library of the pieces that a container image snapshotter uses
around its filesystem daemons: persistent records, socket liveness watching,
blob cache garbage collection bookkeeping, metrics export, signature checks
and registry access.

## Modules

- `nyduskit.database`: `Database(root_dir)` keeps records in an SQLite file
  `root_dir/nydus.db`. It stores daemon records as JSON mappings
  (`save_daemon`, `update_daemon`, `delete_daemon`, `walk_daemons`,
  `cleanup_daemons`) and cache records (`add_snapshot` with a
  `SnapshotRecord`, `add_blob` with a `BlobRecord`, `get_snapshot`,
  `del_snapshot`, `del_blob`). `unused_blobs()` lists the blob ids that no
  snapshot refers to. Duplicates raise `AlreadyExistsError`, missing records
  `NotFoundError`. A `Database` is a context manager that closes itself.
- `nyduskit.cachestore`: `CacheStore(database)` records which blobs an image
  uses (`add_snapshot`, `del_snapshot`). `gc(delete_blob)` forgets every
  unused blob, calls `delete_blob(blob_id)` for each and returns their ids; if
  any step failed it raises `GCError` listing all failures.
- `nyduskit.monitor`: `LivenessMonitor` connects to a daemon's unix socket
  (`subscribe(daemon_id, path, notifier)`, retrying up to 20 times 0.1 s
  apart) and, once `run()` has started its background thread, puts a
  `DeathEvent(daemon_id, path)` on `notifier` (anything with a `put` method,
  such as a `queue.Queue`) when the other end closes. `unsubscribe` and
  `destroy` release the connections.
- `nyduskit.retry`: `retry_call(fn, ...)` calls `fn` until it succeeds, with
  `fixed_delay`, `backoff_delay`, `random_delay` or a `combine_delay` of them
  between attempts. Errors wrapped in `Unrecoverable` stop at once. When
  every attempt fails it raises the last error (`last_error_only=True`) or a
  `RetryError` holding them all.
- `nyduskit.signer`: `Signer(public_key)` checks RSA PKCS#1 v1.5 / SHA-256
  signatures with a PEM PKCS#1 public key. `Verifier(public_key_file,
  validate_signature)` checks a bootstrap file against a base64 signature;
  with validation forced, a missing signature is an error.
- `nyduskit.registry`: `parse_docker_ref` normalizes image references into a
  `Reference`; `parse_image` returns an `Image(host, repo)`;
  `convert_to_vpc_host` adds `-vpc` to the first label of a host.
- `nyduskit.transport`: `Pool().resolve(ref, digest, keychain)` returns the
  download URL of a blob and an authorized `requests.Session`, caching
  sessions per `RepositoryRef` (least recently used dropped first).
  `authn_transport` handles anonymous, basic and bearer token challenges;
  `redirect` follows the registry's answer to a one-byte range request.
- `nyduskit.ttl_gauge`: `GaugeVec` is a family of labelled gauges whose
  series expire `ttl` seconds after their last `set`.
- `nyduskit.exporter`: `FsMetrics`, the `FsMetricHistogram`s in
  `FS_METRIC_HISTS`, a `Registry` (`REGISTRY` holds the default gauges and
  histograms), `encode_text` for the Prometheus text format, and
  `Exporter(output_file)`, whose `export_fs_metrics(metrics, image_ref)`
  updates the metrics of an image and appends one JSON line per metric family
  (`{"metrics": ..., "time": ...}`) to the file. Creating an `Exporter`
  empties the file. `new_listener(addr)` listens on a unix socket.
- `nyduskit.meta`: `FileSystemMeta(root_dir)` gives the snapshot, cache,
  socket and config directories and a snapshot's upper directory.
- `nyduskit.mountutil`: `fscache_id(snapshot_id)` and
  `is_likely_not_mount_point(path)`.

## Examples

Parse an image reference:

```python
from nyduskit.registry import parse_image, convert_to_vpc_host

image = parse_image("localhost:5000/hello-world/foo/bar:latest")
assert image.host == "localhost:5000"
assert image.repo == "hello-world/foo/bar"

assert convert_to_vpc_host("registry.example.com") == "registry-vpc.example.com"
```

Collect blobs that no image uses any more:

```python
from nyduskit.database import Database
from nyduskit.cachestore import CacheStore

with Database("/tmp/snapshotter") as db:
    store = CacheStore(db)
    store.add_snapshot("image-1", ["blob-a", "blob-b"])
    store.del_snapshot("image-1")
    removed = store.gc(lambda blob_id: None)   # ["blob-a", "blob-b"]
```

Watch a daemon socket:

```python
import queue
from nyduskit.monitor import LivenessMonitor

events = queue.Queue()
monitor = LivenessMonitor()
monitor.subscribe("daemon-1", "/run/daemon-1/api.sock", events)
monitor.run()
event = events.get()          # DeathEvent(daemon_id="daemon-1", ...)
monitor.destroy()
```

Retry a flaky call:

```python
from nyduskit.retry import retry_call

sock = retry_call(connect, attempts=20, delay=0.1, last_error_only=True)
```

## What the package does not do

It has no command and no long-running service of its own. It does not start,
mount or stop filesystem daemons, keep an index of running daemons in memory,
delete downloaded blob files, or read the contents of image layers; it only
provides the records, monitoring, metrics and registry lookups that such a
program would build on.

## Running the tests

```
pip install -e .[test]
pytest
```
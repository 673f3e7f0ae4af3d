# fangs

Building blocks for watching what an npm package does when it is installed
in a sandbox: the binary event records a kernel-side sensor emits, the JSON
messages a runner and an orchestrator exchange, the decoding and
de-duplication of captured events, a batching event uploader, and a watcher
that polls the npm registry for new releases.

Python 3.10 or later; no third-party runtime dependencies.

## Modules

- `fangs.proto_events` – fixed-layout little-endian records (`EventHeader`,
  `OpenatEvent`, `ExecEvent`, `Ancestor`, `NetConnectEvent`,
  `DnsQueryEvent`, `TLSSniEvent`, `CgmapValue`, `PathFilterKey`,
  `PathFilterAction`) with `from_bytes`/`to_bytes`, the `EventType` enum and
  `tls_source_name`.
- `fangs.protocol` – JSON messages (`RunnerRegistration`, `RegistrationAck`,
  `Heartbeat`, `HeartbeatAck`, `Job`, `SandboxSpec`, `WatchedPath`,
  `EventBatch`, `EventEnvelope`, `ScanResult`, `HealthResponse`), each with
  `to_dict` and `from_dict`. Durations are integer nanoseconds, run ids are
  arrays of 16 byte values, timestamps are RFC 3339 strings.
- `fangs.parsing` – `parse_dns_question` and `parse_client_hello_sni`;
  malformed input raises `ParseError`.
- `fangs.sensor_events` – `decode_openat_event`, `decode_exec_event`,
  `decode_net_connect_event`, `decode_dns_query_event`,
  `decode_tls_sni_event`, plus `cstring` and `format_dest_ip`.
- `fangs.sensor_options` – `SensorOptions`, `AddCgroupOptions`, `WatchedPath`.
- `fangs.dedup` – `TLSDedup` and `ConnectDedup`.
- `fangs.sensor` – `decode_record`, `build_path_filter_key`, `top_misses`,
  `find_libssl`, the `CgroupFilter` registration state and the
  `EventPipeline` that decodes raw records and applies de-duplication.
- `fangs.streamer` – `EventStreamer`, which batches events for one run and
  POSTs them to `/v1/runs/<run_id>/events`.
- `fangs.registry` – `NpmRegistry` and `resolve_from_metadata`.
- `fangs.watcher` – `Watcher`, `MemoryStore`, `default_watched_paths` and
  `build_sandbox_scan`.

## Parsing captured traffic

```python
from fangs.parsing import ParseError, parse_client_hello_sni, parse_dns_question

qname, qtype = parse_dns_question(raw_query)   # e.g. ("example.com", 1)

try:
    host = parse_client_hello_sni(raw_client_hello)
except ParseError as exc:
    print("not a usable ClientHello:", exc)
```

`ParseError` is raised for truncated headers, a zero question count,
compression pointers in a query, labels longer than 63 bytes, records that
are not a ClientHello, and a missing `server_name` extension.

## Decoding ring-buffer records

```python
from datetime import timedelta
from fangs.sensor import EventPipeline

pipeline = EventPipeline(dedup_window=timedelta(seconds=5))
event = pipeline.process(raw_record)
if event is not None:
    print(event.event_type, event.header().pid, event.comm)
```

`process` returns `None` for records that are too short or cannot be
decoded, and for a kprobe connect event that follows a matching syscall
connect event within 100 ms. When TLS dedup is on, a second capture of the
same `(pid, sni)` within the window gets `duplicate_of` set to the first
source's name.

## Tracking watched cgroups

```python
from fangs.sensor import CgroupFilter
from fangs.sensor_options import AddCgroupOptions, WatchedPath

filters = CgroupFilter()
filters.add(AddCgroupOptions(
    cgroup_id=4242,
    run_id=bytes(16),
    watched_paths=[WatchedPath("/etc/"), WatchedPath("/root/.ssh/", cred_tagged=True)],
))
print(filters.counts())   # (1, 2)
filters.remove(4242)
```

`add` refuses an empty path list, a cgroup that is already registered and
prefixes that are empty or longer than 256 bytes (rolling back what it had
added).

## Streaming events

```python
from fangs.protocol import EventEnvelope
from fangs.proto_events import EventType
from fangs.streamer import EventStreamer

with EventStreamer("http://127.0.0.1:8443", run_id=bytes(16)) as streamer:
    streamer.send(EventEnvelope(EventType.EXEC, {"argv": ["sh"]}))
print(streamer.stats())
```

Batches are flushed every 0.25 s or at 64 events; when 1024 events are
backlogged further events are dropped with a warning.

## Watching npm releases

```python
import threading
from fangs.registry import NpmRegistry
from fangs.watcher import MemoryStore, Watcher, build_sandbox_scan

store = MemoryStore()
store.add_watched_package("chalk")

def submit(package, version):
    spec = build_sandbox_scan(package, version)
    print("would scan", package, version, spec.image)
    return "run-1"

watcher = Watcher(store, NpmRegistry(), submit)
watcher.poll_once()                    # or watcher.run(threading.Event())
```

Each poll asks the registry for `dist-tags.latest`, records the check, and
when the version differs from the last one seen records a release and
calls `submit`. `NpmRegistry.resolve` raises `PackageNotFoundError` for an
unknown package and `VersionNotFoundError` for an unknown version.
`default_watched_paths()` returns a fresh list of the path prefixes used for
automatic scans, with credential locations marked `cred_tagged`.

## What this package does not do

- It does not load or attach kernel probes and does not read a ring buffer;
  `CgroupFilter` and `EventPipeline` only hold the state and process records
  handed to them.
- It does not create, start or stop containers and does not create or look
  up cgroups. `build_sandbox_scan` only describes the container; nothing here
  fills in resource defaults or launches it.
- It has no orchestrator server, no persistent storage (`MemoryStore` keeps
  everything in memory) and no command-line program.
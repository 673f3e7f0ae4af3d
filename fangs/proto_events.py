"""Fixed-layout event records emitted by the kernel-side sensor probes.

Every record is little-endian and packed exactly like the structures the
probes write into the ring buffer, so ``from_bytes``/``to_bytes`` round-trip
raw ring-buffer samples.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar

COMM_LEN = 16
RUN_ID_LEN = 16
PATH_LEN = 256
ARGV_NUM = 8
ARGV_LEN = 64
ANCESTORS_DEPTH = 5

EVENT_TAG_INTERESTING = 1 << 0
EVENT_TAG_CRED_ACCESS = 1 << 1

# 8 (ts_ns) + 8 (cgroup_id) + 16 (run_id) + 5*4 (pid..gid) + 16 (comm)
HEADER_TYPE_OFFSET = 68

DEST_ADDR_LEN = 16
DNS_CAPTURE_LEN = 200

AF_INET = 2
AF_INET6 = 10

NET_SOURCE_SYSCALL = 1
NET_SOURCE_KPROBE = 2

SNI_MAX_LEN = 256
TLS_RAW_CAPTURE = 512

TLS_SOURCE_LIBSSL = 1
TLS_SOURCE_NODE_INTERNAL = 2
TLS_SOURCE_TCP_CLIENT_HELLO = 3

PATH_ACTION_KEEP = 1
PATH_ACTION_KEEP_CRED_TAGGED = 2


class EventType(IntEnum):
    """Discriminator stored in ``EventHeader.event_type``."""

    FILE_ACCESS = 1
    EXEC = 2
    NET_CONNECT = 3
    DNS_QUERY = 4
    TLS_SNI = 5

    def __str__(self) -> str:
        return _EVENT_TYPE_NAMES[self]


_EVENT_TYPE_NAMES = {
    EventType.FILE_ACCESS: "file_access",
    EventType.EXEC: "exec",
    EventType.NET_CONNECT: "net_connect",
    EventType.DNS_QUERY: "dns_query",
    EventType.TLS_SNI: "tls_sni",
}

_TLS_SOURCE_NAMES = {
    TLS_SOURCE_LIBSSL: "libssl",
    TLS_SOURCE_NODE_INTERNAL: "node_internal",
    TLS_SOURCE_TCP_CLIENT_HELLO: "tcp_clienthello",
}


def tls_source_name(source: int) -> str:
    """Return the tag for a TLS capture source, or ``"unknown"``."""
    return _TLS_SOURCE_NAMES.get(source, "unknown")


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise ValueError(f"{what}: need {size} bytes, got {len(data)}")


_HEADER = struct.Struct("<QQ16s5I16sBB2x")
_OPENAT_BODY = struct.Struct(f"<iiHBx{PATH_LEN}s")
_ANCESTOR = struct.Struct(f"<II{COMM_LEN}s")
_EXEC_BODY = struct.Struct(f"<B3x{ARGV_NUM}B{ARGV_NUM * ARGV_LEN}s{PATH_LEN}s")
_NET_BODY = struct.Struct(f"<BBHI{DEST_ADDR_LEN}s")
_DNS_BODY = struct.Struct(f"<BxHH2x{DEST_ADDR_LEN}s{DNS_CAPTURE_LEN}s")
_TLS_BODY = struct.Struct(f"<BxHH2x{SNI_MAX_LEN}s{TLS_RAW_CAPTURE}s")
_CGMAP_VALUE = struct.Struct(f"<{RUN_ID_LEN}sI")
_PATH_FILTER_KEY = struct.Struct(f"<I{PATH_LEN}s")
_PATH_FILTER_ACTION = struct.Struct("<B3x")


@dataclass
class EventHeader:
    """Common 72-byte prefix of every sensor event."""

    SIZE: ClassVar[int] = _HEADER.size

    ts_ns: int = 0
    cgroup_id: int = 0
    run_id: bytes = bytes(RUN_ID_LEN)
    pid: int = 0
    tid: int = 0
    ppid: int = 0
    uid: int = 0
    gid: int = 0
    comm: bytes = bytes(COMM_LEN)
    event_type: int = 0
    tags: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> EventHeader:
        _require(data, cls.SIZE, "EventHeader")
        return cls(*_HEADER.unpack_from(data))

    def to_bytes(self) -> bytes:
        return _HEADER.pack(
            self.ts_ns,
            self.cgroup_id,
            self.run_id,
            self.pid,
            self.tid,
            self.ppid,
            self.uid,
            self.gid,
            self.comm,
            self.event_type,
            self.tags,
        )


@dataclass
class OpenatEvent:
    """A file open observed by the openat probe."""

    SIZE: ClassVar[int] = EventHeader.SIZE + _OPENAT_BODY.size

    header: EventHeader = field(default_factory=EventHeader)
    dfd: int = 0
    flags: int = 0
    path_len: int = 0
    truncated: int = 0
    path: bytes = bytes(PATH_LEN)

    @classmethod
    def from_bytes(cls, data: bytes) -> OpenatEvent:
        _require(data, cls.SIZE, "OpenatEvent")
        header = EventHeader.from_bytes(data)
        dfd, flags, path_len, truncated, path = _OPENAT_BODY.unpack_from(
            data, EventHeader.SIZE
        )
        return cls(header, dfd, flags, path_len, truncated, path)

    def to_bytes(self) -> bytes:
        return self.header.to_bytes() + _OPENAT_BODY.pack(
            self.dfd, self.flags, self.path_len, self.truncated, self.path
        )


@dataclass
class Ancestor:
    """One process-tree node captured with an exec event."""

    SIZE: ClassVar[int] = _ANCESTOR.size

    pid: int = 0
    ppid: int = 0
    comm: bytes = bytes(COMM_LEN)

    @classmethod
    def from_bytes(cls, data: bytes) -> Ancestor:
        _require(data, cls.SIZE, "Ancestor")
        return cls(*_ANCESTOR.unpack_from(data))

    def to_bytes(self) -> bytes:
        return _ANCESTOR.pack(self.pid, self.ppid, self.comm)


def _empty_ancestors() -> tuple[Ancestor, ...]:
    return tuple(Ancestor() for _ in range(ANCESTORS_DEPTH))


@dataclass
class ExecEvent:
    """A process execution observed by the execve probe."""

    SIZE: ClassVar[int] = (
        EventHeader.SIZE + _EXEC_BODY.size + ANCESTORS_DEPTH * Ancestor.SIZE
    )

    header: EventHeader = field(default_factory=EventHeader)
    argc: int = 0
    argv_lens: tuple[int, ...] = (0,) * ARGV_NUM
    argv: bytes = bytes(ARGV_NUM * ARGV_LEN)
    binary_path: bytes = bytes(PATH_LEN)
    ancestors: tuple[Ancestor, ...] = field(default_factory=_empty_ancestors)

    @classmethod
    def from_bytes(cls, data: bytes) -> ExecEvent:
        _require(data, cls.SIZE, "ExecEvent")
        header = EventHeader.from_bytes(data)
        argc, *rest = _EXEC_BODY.unpack_from(data, EventHeader.SIZE)
        argv_lens = tuple(rest[:ARGV_NUM])
        argv, binary_path = rest[ARGV_NUM:]
        base = EventHeader.SIZE + _EXEC_BODY.size
        ancestors = tuple(
            Ancestor.from_bytes(data[base + n * Ancestor.SIZE :])
            for n in range(ANCESTORS_DEPTH)
        )
        return cls(header, argc, argv_lens, argv, binary_path, ancestors)

    def to_bytes(self) -> bytes:
        if len(self.argv_lens) != ARGV_NUM:
            raise ValueError(f"argv_lens must hold {ARGV_NUM} entries")
        if len(self.ancestors) > ANCESTORS_DEPTH:
            raise ValueError(f"at most {ANCESTORS_DEPTH} ancestors fit in an event")
        padding = (Ancestor(),) * (ANCESTORS_DEPTH - len(self.ancestors))
        body = _EXEC_BODY.pack(
            self.argc, *self.argv_lens, self.argv, self.binary_path
        )
        tail = b"".join(a.to_bytes() for a in (*self.ancestors, *padding))
        return self.header.to_bytes() + body + tail


@dataclass
class NetConnectEvent:
    """An outbound connect observed by the tracepoint or kprobe."""

    SIZE: ClassVar[int] = EventHeader.SIZE + _NET_BODY.size

    header: EventHeader = field(default_factory=EventHeader)
    family: int = 0
    source: int = 0
    dest_port: int = 0
    sockfd: int = 0
    dest_addr: bytes = bytes(DEST_ADDR_LEN)

    @classmethod
    def from_bytes(cls, data: bytes) -> NetConnectEvent:
        _require(data, cls.SIZE, "NetConnectEvent")
        header = EventHeader.from_bytes(data)
        return cls(header, *_NET_BODY.unpack_from(data, EventHeader.SIZE))

    def to_bytes(self) -> bytes:
        return self.header.to_bytes() + _NET_BODY.pack(
            self.family, self.source, self.dest_port, self.sockfd, self.dest_addr
        )


@dataclass
class DnsQueryEvent:
    """A DNS query payload captured on its way out."""

    SIZE: ClassVar[int] = EventHeader.SIZE + _DNS_BODY.size

    header: EventHeader = field(default_factory=EventHeader)
    family: int = 0
    dest_port: int = 0
    query_len: int = 0
    dest_addr: bytes = bytes(DEST_ADDR_LEN)
    query: bytes = bytes(DNS_CAPTURE_LEN)

    @classmethod
    def from_bytes(cls, data: bytes) -> DnsQueryEvent:
        _require(data, cls.SIZE, "DnsQueryEvent")
        header = EventHeader.from_bytes(data)
        return cls(header, *_DNS_BODY.unpack_from(data, EventHeader.SIZE))

    def to_bytes(self) -> bytes:
        return self.header.to_bytes() + _DNS_BODY.pack(
            self.family, self.dest_port, self.query_len, self.dest_addr, self.query
        )


@dataclass
class TLSSniEvent:
    """A TLS server name, either pre-parsed or as raw ClientHello bytes."""

    SIZE: ClassVar[int] = EventHeader.SIZE + _TLS_BODY.size

    header: EventHeader = field(default_factory=EventHeader)
    source: int = 0
    sni_len: int = 0
    raw_payload_len: int = 0
    sni: bytes = bytes(SNI_MAX_LEN)
    raw_payload: bytes = bytes(TLS_RAW_CAPTURE)

    @classmethod
    def from_bytes(cls, data: bytes) -> TLSSniEvent:
        _require(data, cls.SIZE, "TLSSniEvent")
        header = EventHeader.from_bytes(data)
        return cls(header, *_TLS_BODY.unpack_from(data, EventHeader.SIZE))

    def to_bytes(self) -> bytes:
        return self.header.to_bytes() + _TLS_BODY.pack(
            self.source,
            self.sni_len,
            self.raw_payload_len,
            self.sni,
            self.raw_payload,
        )


@dataclass
class CgmapValue:
    """Value stored per watched cgroup in the cgroup map."""

    run_id: bytes = bytes(RUN_ID_LEN)
    flags: int = 0

    def to_bytes(self) -> bytes:
        return _CGMAP_VALUE.pack(self.run_id, self.flags)


@dataclass
class PathFilterKey:
    """Longest-prefix-match key; ``prefix_len_bits`` counts bits, not bytes."""

    prefix_len_bits: int = 0
    path: bytes = bytes(PATH_LEN)

    def to_bytes(self) -> bytes:
        return _PATH_FILTER_KEY.pack(self.prefix_len_bits, self.path)


@dataclass
class PathFilterAction:
    """Action attached to a path-filter entry."""

    action: int = 0

    def to_bytes(self) -> bytes:
        return _PATH_FILTER_ACTION.pack(self.action)
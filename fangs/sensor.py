"""Userspace side of the sensor: cgroup registration state and event intake.

``CgroupFilter`` keeps the cgroup map and the path allowlist that the
kernel probes consult, and ``EventPipeline`` turns raw ring-buffer records
into decoded events, applying the TLS and connect de-duplication rules.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Union

from fangs import proto_events as pe
from fangs.dedup import DEFAULT_CONNECT_WINDOW, ConnectDedup, TLSDedup
from fangs.sensor_events import (
    DNSQueryEvent,
    ExecEvent,
    FileAccessEvent,
    NetConnectEvent,
    TLSSniEvent,
    decode_dns_query_event,
    decode_exec_event,
    decode_net_connect_event,
    decode_openat_event,
    decode_tls_sni_event,
)
from fangs.sensor_options import AddCgroupOptions, WatchedPath

Event = Union[FileAccessEvent, ExecEvent, NetConnectEvent, DNSQueryEvent, TLSSniEvent]

_LIBSSL_CANDIDATES = (
    "/usr/lib/x86_64-linux-gnu/libssl.so.3",
    "/usr/lib/x86_64-linux-gnu/libssl.so.1.1",
    "/lib/x86_64-linux-gnu/libssl.so.3",
    "/lib/x86_64-linux-gnu/libssl.so.1.1",
    "/usr/lib64/libssl.so.3",
    "/usr/lib64/libssl.so.1.1",
    "/usr/lib/libssl.so.3",
)

_DECODERS = {
    pe.EventType.FILE_ACCESS: decode_openat_event,
    pe.EventType.EXEC: decode_exec_event,
    pe.EventType.NET_CONNECT: decode_net_connect_event,
    pe.EventType.DNS_QUERY: decode_dns_query_event,
    pe.EventType.TLS_SNI: decode_tls_sni_event,
}


@dataclass(frozen=True)
class MissEntry:
    """A cgroup id that reached the cgroup lookup without a map entry."""

    cgroup_id: int
    count: int


def build_path_filter_key(prefix: str) -> pe.PathFilterKey:
    """Build the longest-prefix-match key for an allowlisted path prefix."""
    encoded = prefix.encode("utf-8")
    if not 1 <= len(encoded) <= pe.PATH_LEN:
        raise ValueError(
            f"prefix length {len(encoded)} out of range (1..{pe.PATH_LEN})"
        )
    return pe.PathFilterKey(
        prefix_len_bits=len(encoded) * 8,
        path=encoded.ljust(pe.PATH_LEN, b"\0"),
    )


def decode_record(raw: bytes) -> Event:
    """Decode a raw record, dispatching on its event-type byte."""
    if len(raw) < pe.HEADER_TYPE_OFFSET + 1:
        raise ValueError(f"record too short for a header ({len(raw)} bytes)")
    type_byte = raw[pe.HEADER_TYPE_OFFSET]
    try:
        decoder = _DECODERS[pe.EventType(type_byte)]
    except ValueError:
        raise ValueError(f"unknown event type {type_byte}") from None
    return decoder(raw)


def top_misses(
    entries: Mapping[int, int] | Iterable[tuple[int, int]], top: int = 0
) -> list[MissEntry]:
    """Return miss entries sorted by descending count, at most ``top`` when positive."""
    pairs = entries.items() if isinstance(entries, Mapping) else entries
    ordered = sorted(
        (MissEntry(cgroup_id, count) for cgroup_id, count in pairs),
        key=lambda entry: entry.count,
        reverse=True,
    )
    if top > 0:
        ordered = ordered[:top]
    return ordered


def find_libssl() -> str:
    """Return the first libssl shared object found in the usual install paths."""
    for candidate in _LIBSSL_CANDIDATES:
        if os.path.exists(candidate):
            return candidate
    raise FileNotFoundError("libssl.so.{3,1.1} not found")


@dataclass
class CgroupFilter:
    """The cgroup map and path allowlist consulted by the kernel probes.

    ``cgmap`` maps a cgroup id to the value stamped on its events;
    ``path_filter`` maps a packed path-filter key to its action. The
    allowlist is shared: a prefix registered for two cgroups has one entry.
    """

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    cgmap: dict[int, pe.CgmapValue] = field(default_factory=dict)
    path_filter: dict[bytes, pe.PathFilterAction] = field(default_factory=dict)
    _registered: dict[int, list[WatchedPath]] | None = field(
        default_factory=dict, repr=False
    )

    def __contains__(self, cgroup_id: object) -> bool:
        return self._registered is not None and cgroup_id in self._registered

    def add(self, options: AddCgroupOptions) -> None:
        """Register a cgroup and its watched paths."""
        if not options.watched_paths:
            raise ValueError(
                "at least one WatchedPath is required for file events to fire"
            )
        if self._registered is None:
            raise RuntimeError("cgroup filter is closed")
        if options.cgroup_id in self._registered:
            raise ValueError(f"cgroup {options.cgroup_id} already registered")

        self.cgmap[options.cgroup_id] = pe.CgmapValue(run_id=options.run_id)
        added: list[WatchedPath] = []
        for watched in options.watched_paths:
            try:
                key = build_path_filter_key(watched.prefix)
            except ValueError as exc:
                self._rollback(options.cgroup_id, added)
                raise ValueError(
                    f"path_filter key for {watched.prefix!r}: {exc}"
                ) from exc
            action = (
                pe.PATH_ACTION_KEEP_CRED_TAGGED
                if watched.cred_tagged
                else pe.PATH_ACTION_KEEP
            )
            self.path_filter[key.to_bytes()] = pe.PathFilterAction(action)
            added.append(watched)
            self.logger.info(
                "watching cgroup_id=%d prefix=%s cred_tagged=%s",
                options.cgroup_id,
                watched.prefix,
                watched.cred_tagged,
            )

        self._registered[options.cgroup_id] = added
        cg_total, path_total = self.counts()
        self.logger.info(
            "cgroup registered cgroup_id=%d paths=%d cgmap_total=%d path_filter_total=%d",
            options.cgroup_id,
            len(added),
            cg_total,
            path_total,
        )

    def remove(self, cgroup_id: int) -> None:
        """Deregister a cgroup and its paths; unknown ids are ignored."""
        if self._registered is None or cgroup_id not in self._registered:
            return
        paths = self._registered.pop(cgroup_id)
        if self.cgmap.pop(cgroup_id, None) is None:
            self.logger.warning("cgmap entry missing for cgroup_id=%d", cgroup_id)
        for watched in paths:
            try:
                key = build_path_filter_key(watched.prefix).to_bytes()
            except ValueError:
                continue
            if self.path_filter.pop(key, None) is None:
                self.logger.warning("path_filter entry missing for prefix=%s", watched.prefix)
        cg_total, path_total = self.counts()
        self.logger.info(
            "cgroup deregistered cgroup_id=%d cgmap_total=%d path_filter_total=%d",
            cgroup_id,
            cg_total,
            path_total,
        )

    def counts(self) -> tuple[int, int]:
        """Return the live entry counts of the cgroup map and the path allowlist."""
        return len(self.cgmap), len(self.path_filter)

    def close(self) -> None:
        """Drop every registered cgroup's map entry; further adds are refused."""
        if self._registered is None:
            return
        for cgroup_id in self._registered:
            self.cgmap.pop(cgroup_id, None)
        self._registered = None

    def _rollback(self, cgroup_id: int, added: list[WatchedPath]) -> None:
        self.cgmap.pop(cgroup_id, None)
        for watched in added:
            try:
                key = build_path_filter_key(watched.prefix).to_bytes()
            except ValueError:
                continue
            self.path_filter.pop(key, None)


class EventPipeline:
    """Decode raw records and apply TLS tagging and connect de-duplication.

    A zero ``dedup_window`` disables TLS duplicate tagging.
    """

    def __init__(
        self,
        dedup_window: timedelta = timedelta(0),
        connect_window: timedelta = DEFAULT_CONNECT_WINDOW,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.tls_dedup = TLSDedup(dedup_window) if dedup_window > timedelta(0) else None
        self.connect_dedup = ConnectDedup(connect_window)

    def process(self, raw: bytes, now: datetime | None = None) -> Event | None:
        """Return the decoded event, or None when it is malformed or a duplicate."""
        if now is None:
            now = datetime.now()
        if len(raw) < pe.HEADER_TYPE_OFFSET + 1:
            self.logger.warning("short record raw_len=%d", len(raw))
            return None
        try:
            event = decode_record(raw)
        except ValueError as exc:
            self.logger.warning("decode event: %s raw_len=%d", exc, len(raw))
            return None

        if isinstance(event, TLSSniEvent) and self.tls_dedup is not None and event.sni:
            first = self.tls_dedup.observe(
                event.header().pid, event.sni, pe.tls_source_name(event.source), now
            )
            if first:
                event.duplicate_of = first

        if isinstance(event, NetConnectEvent) and event.dest_ip:
            if self.connect_dedup.observe(
                event.header().pid,
                event.family,
                event.source,
                event.dest_ip,
                event.dest_port,
                now,
            ):
                return None
        return event
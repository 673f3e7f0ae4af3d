"""Decoded sensor events: raw records plus the strings parsed out of them."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import ClassVar

from fangs import proto_events as pe
from fangs.parsing import ParseError, parse_client_hello_sni, parse_dns_question


def cstring(data: bytes) -> str:
    """Return the text of ``data`` up to its first NUL byte."""
    end = data.find(b"\0")
    if end >= 0:
        data = data[:end]
    return bytes(data).decode("utf-8", errors="replace")


def format_dest_ip(family: int, addr: bytes) -> str:
    """Render a 16-byte destination address; ``""`` for unknown families."""
    if family == pe.AF_INET:
        return str(ipaddress.IPv4Address(bytes(addr[:4])))
    if family == pe.AF_INET6:
        ip = ipaddress.IPv6Address(bytes(addr[: pe.DEST_ADDR_LEN]))
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
        return str(ip)
    return ""


@dataclass
class FileAccessEvent:
    """A file open with its path and command name decoded."""

    event_type: ClassVar[pe.EventType] = pe.EventType.FILE_ACCESS

    record: pe.OpenatEvent
    path_name: str = ""
    comm: str = ""

    def header(self) -> pe.EventHeader:
        return self.record.header


@dataclass
class ExecEvent:
    """A process execution with argv, binary path and ancestry decoded."""

    event_type: ClassVar[pe.EventType] = pe.EventType.EXEC

    record: pe.ExecEvent
    binary_path: str = ""
    argv: list[str] = field(default_factory=list)
    comm: str = ""
    ancestor_comms: list[str] = field(default_factory=list)

    def header(self) -> pe.EventHeader:
        return self.record.header


@dataclass
class NetConnectEvent:
    """An outbound connect with its destination rendered as text."""

    event_type: ClassVar[pe.EventType] = pe.EventType.NET_CONNECT

    record: pe.NetConnectEvent
    dest_ip: str = ""
    comm: str = ""

    def header(self) -> pe.EventHeader:
        return self.record.header

    @property
    def family(self) -> int:
        return self.record.family

    @property
    def source(self) -> int:
        return self.record.source

    @property
    def dest_port(self) -> int:
        return self.record.dest_port


@dataclass
class DNSQueryEvent:
    """A DNS query; ``parse_error`` is set when the question could not be read."""

    event_type: ClassVar[pe.EventType] = pe.EventType.DNS_QUERY

    record: pe.DnsQueryEvent
    dest_ip: str = ""
    comm: str = ""
    qname: str = ""
    qtype: int = 0
    parse_error: ParseError | None = None

    def header(self) -> pe.EventHeader:
        return self.record.header


@dataclass
class TLSSniEvent:
    """A TLS server name, whichever mechanism captured it."""

    event_type: ClassVar[pe.EventType] = pe.EventType.TLS_SNI

    record: pe.TLSSniEvent
    source_name: str = ""
    comm: str = ""
    sni: str = ""
    duplicate_of: str = ""
    parse_error: ParseError | None = None

    def header(self) -> pe.EventHeader:
        return self.record.header

    @property
    def source(self) -> int:
        return self.record.source


def _decode(record_type, raw: bytes):
    try:
        return record_type.from_bytes(raw)
    except ValueError as exc:
        raise ValueError(
            f"decode {record_type.__name__}: {exc} (got {len(raw)} bytes)"
        ) from exc


def decode_openat_event(raw: bytes) -> FileAccessEvent:
    """Decode a raw openat record."""
    ev = _decode(pe.OpenatEvent, raw)
    return FileAccessEvent(
        record=ev,
        path_name=cstring(ev.path[: ev.path_len]),
        comm=cstring(ev.header.comm),
    )


def decode_exec_event(raw: bytes) -> ExecEvent:
    """Decode a raw execve record."""
    ev = _decode(pe.ExecEvent, raw)
    argv = [
        cstring(ev.argv[slot * pe.ARGV_LEN : slot * pe.ARGV_LEN + length])
        for slot, length in enumerate(ev.argv_lens[: min(ev.argc, pe.ARGV_NUM)])
    ]
    ancestors: list[str] = []
    for ancestor in ev.ancestors:
        if ancestor.pid == 0:
            break
        ancestors.append(cstring(ancestor.comm))
    return ExecEvent(
        record=ev,
        binary_path=cstring(ev.binary_path),
        argv=argv,
        comm=cstring(ev.header.comm),
        ancestor_comms=ancestors,
    )


def decode_net_connect_event(raw: bytes) -> NetConnectEvent:
    """Decode a raw connect record."""
    ev = _decode(pe.NetConnectEvent, raw)
    return NetConnectEvent(
        record=ev,
        dest_ip=format_dest_ip(ev.family, ev.dest_addr),
        comm=cstring(ev.header.comm),
    )


def decode_dns_query_event(raw: bytes) -> DNSQueryEvent:
    """Decode a raw DNS query record and parse its first question."""
    ev = _decode(pe.DnsQueryEvent, raw)
    out = DNSQueryEvent(
        record=ev,
        dest_ip=format_dest_ip(ev.family, ev.dest_addr),
        comm=cstring(ev.header.comm),
    )
    try:
        out.qname, out.qtype = parse_dns_question(ev.query[: ev.query_len])
    except ParseError as exc:
        out.parse_error = exc
    return out


def decode_tls_sni_event(raw: bytes) -> TLSSniEvent:
    """Decode a raw TLS SNI record, parsing the ClientHello when needed."""
    ev = _decode(pe.TLSSniEvent, raw)
    out = TLSSniEvent(
        record=ev,
        source_name=pe.tls_source_name(ev.source),
        comm=cstring(ev.header.comm),
    )
    if ev.source in (pe.TLS_SOURCE_LIBSSL, pe.TLS_SOURCE_NODE_INTERNAL):
        out.sni = cstring(ev.sni[: ev.sni_len])
    elif ev.source == pe.TLS_SOURCE_TCP_CLIENT_HELLO:
        try:
            out.sni = parse_client_hello_sni(ev.raw_payload[: ev.raw_payload_len])
        except ParseError as exc:
            out.parse_error = exc
    return out
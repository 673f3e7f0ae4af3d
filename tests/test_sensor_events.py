import ipaddress

import pytest

from fangs import proto_events as pe
from fangs.parsing import ParseError
from fangs.sensor_events import (
    cstring,
    decode_dns_query_event,
    decode_exec_event,
    decode_net_connect_event,
    decode_openat_event,
    decode_tls_sni_event,
    format_dest_ip,
)


def fixed(data: bytes, size: int) -> bytes:
    return data.ljust(size, b"\0")


def header(comm: bytes = b"node", pid: int = 1234) -> pe.EventHeader:
    return pe.EventHeader(pid=pid, comm=fixed(comm, pe.COMM_LEN))


def make_query(name: str, qtype: int) -> bytes:
    hdr = bytes([0x12, 0x34, 0x01, 0x00, 0x00, 0x01, 0, 0, 0, 0, 0, 0])
    labels = b""
    for label in name.split("."):
        labels += bytes([len(label)]) + label.encode()
    return hdr + labels + bytes([0x00, qtype >> 8, qtype & 0xFF, 0x00, 0x01])


def build_client_hello(hostname: str) -> bytes:
    host = hostname.encode()
    server_name = bytes([0x00, len(host) + 3, 0x00, 0x00, len(host)]) + host
    ext = bytes([0x00, 0x00, 0x00, len(server_name)]) + server_name
    body = bytes([0x03, 0x03]) + bytes(32) + bytes([0x00])
    body += bytes([0x00, 0x02, 0x00, 0x35, 0x01, 0x00, 0x00, len(ext)]) + ext
    hs = bytes([0x01, 0x00, (len(body) >> 8) & 0xFF, len(body) & 0xFF]) + body
    return bytes([0x16, 0x03, 0x01, (len(hs) >> 8) & 0xFF, len(hs) & 0xFF]) + hs


def test_cstring_stops_at_nul():
    assert cstring(b"node\0garbage") == "node"
    assert cstring(b"sh") == "sh"


def test_format_dest_ip_ipv4_uses_first_four_bytes():
    addr = fixed(ipaddress.ip_address("10.0.0.1").packed, pe.DEST_ADDR_LEN)
    assert format_dest_ip(pe.AF_INET, addr) == "10.0.0.1"


def test_format_dest_ip_ipv6_round_trips():
    ip = ipaddress.ip_address("2001:db8::5")
    assert format_dest_ip(pe.AF_INET6, ip.packed) == str(ip)


def test_format_dest_ip_ipv4_mapped_renders_dotted():
    mapped = ipaddress.ip_address("::ffff:192.0.2.7")
    assert format_dest_ip(pe.AF_INET6, mapped.packed) == "192.0.2.7"


def test_format_dest_ip_unknown_family():
    assert format_dest_ip(99, bytes(pe.DEST_ADDR_LEN)) == ""


def test_decode_openat_respects_path_len():
    path = b"/etc/shadow"
    rec = pe.OpenatEvent(
        header=header(b"cat"), path_len=len(path), path=fixed(path + b"xyz", pe.PATH_LEN)
    )
    ev = decode_openat_event(rec.to_bytes())
    assert ev.path_name == "/etc/shadow"
    assert ev.comm == "cat"
    assert ev.event_type == pe.EventType.FILE_ACCESS
    assert ev.header().pid == 1234


def test_decode_openat_short_record_rejected():
    with pytest.raises(ValueError):
        decode_openat_event(bytes(10))


def test_decode_exec_parses_argv_and_ancestors():
    args = [b"npm", b"install"]
    blob = b"".join(fixed(a, pe.ARGV_LEN) for a in args)
    ancestors = (
        pe.Ancestor(pid=10, ppid=1, comm=fixed(b"bash", pe.COMM_LEN)),
        pe.Ancestor(pid=1, ppid=0, comm=fixed(b"init", pe.COMM_LEN)),
    )
    rec = pe.ExecEvent(
        header=header(b"npm"),
        argc=len(args),
        argv_lens=(len(args[0]), len(args[1])) + (0,) * (pe.ARGV_NUM - 2),
        argv=fixed(blob, pe.ARGV_NUM * pe.ARGV_LEN),
        binary_path=fixed(b"/usr/bin/npm", pe.PATH_LEN),
        ancestors=ancestors,
    )
    ev = decode_exec_event(rec.to_bytes())
    assert ev.argv == ["npm", "install"]
    assert ev.binary_path == "/usr/bin/npm"
    assert ev.ancestor_comms == ["bash", "init"]
    assert ev.event_type == pe.EventType.EXEC


def test_decode_exec_caps_argc_at_slot_count():
    rec = pe.ExecEvent(header=header(), argc=200, argv_lens=(1,) * pe.ARGV_NUM)
    ev = decode_exec_event(rec.to_bytes())
    assert len(ev.argv) == pe.ARGV_NUM


def test_decode_net_connect():
    ip = ipaddress.ip_address("198.51.100.4")
    rec = pe.NetConnectEvent(
        header=header(),
        family=pe.AF_INET,
        source=pe.NET_SOURCE_SYSCALL,
        dest_port=443,
        dest_addr=fixed(ip.packed, pe.DEST_ADDR_LEN),
    )
    ev = decode_net_connect_event(rec.to_bytes())
    assert ev.dest_ip == str(ip)
    assert ev.dest_port == 443
    assert ev.source == pe.NET_SOURCE_SYSCALL
    assert ev.comm == "node"


def test_decode_dns_query_parses_question():
    query = make_query("registry.npmjs.org", 28)
    rec = pe.DnsQueryEvent(
        header=header(),
        family=pe.AF_INET,
        dest_port=53,
        query_len=len(query),
        dest_addr=fixed(ipaddress.ip_address("10.0.0.53").packed, pe.DEST_ADDR_LEN),
        query=fixed(query, pe.DNS_CAPTURE_LEN),
    )
    ev = decode_dns_query_event(rec.to_bytes())
    assert (ev.qname, ev.qtype) == ("registry.npmjs.org", 28)
    assert ev.parse_error is None
    assert ev.dest_ip == "10.0.0.53"


def test_decode_dns_query_records_parse_error():
    rec = pe.DnsQueryEvent(header=header(), family=pe.AF_INET, query_len=3)
    ev = decode_dns_query_event(rec.to_bytes())
    assert isinstance(ev.parse_error, ParseError)
    assert ev.qname == ""


def test_decode_tls_libssl_uses_sni_field():
    rec = pe.TLSSniEvent(
        header=header(),
        source=pe.TLS_SOURCE_LIBSSL,
        sni_len=len(b"example.com"),
        sni=fixed(b"example.com", pe.SNI_MAX_LEN),
    )
    ev = decode_tls_sni_event(rec.to_bytes())
    assert ev.sni == "example.com"
    assert ev.source_name == "libssl"
    assert ev.duplicate_of == ""


def test_decode_tls_client_hello_parses_payload():
    hello = build_client_hello("example.com")
    rec = pe.TLSSniEvent(
        header=header(),
        source=pe.TLS_SOURCE_TCP_CLIENT_HELLO,
        raw_payload_len=len(hello),
        raw_payload=fixed(hello, pe.TLS_RAW_CAPTURE),
    )
    ev = decode_tls_sni_event(rec.to_bytes())
    assert ev.sni == "example.com"
    assert ev.source_name == "tcp_clienthello"


def test_decode_tls_client_hello_bad_payload():
    rec = pe.TLSSniEvent(header=header(), source=pe.TLS_SOURCE_TCP_CLIENT_HELLO)
    ev = decode_tls_sni_event(rec.to_bytes())
    assert isinstance(ev.parse_error, ParseError)
    assert ev.sni == ""


def test_decode_tls_unknown_source():
    rec = pe.TLSSniEvent(header=header(), source=42)
    ev = decode_tls_sni_event(rec.to_bytes())
    assert ev.source_name == "unknown"
    assert ev.sni == ""
    assert ev.parse_error is None
"""Userspace parsers for raw protocol bytes captured by the sensor probes.

Variable-length walks (DNS labels, TLS extensions) are done here rather
than in the kernel to keep the probes simple.
"""

from __future__ import annotations

_DNS_HEADER_LEN = 12
_CLIENT_HELLO_MIN = 43
_MAX_LABEL = 63


class ParseError(ValueError):
    """Raised when a captured payload cannot be parsed."""


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _u16(buf: bytes, offset: int) -> int:
    return int.from_bytes(buf[offset : offset + 2], "big")


def parse_dns_question(buf: bytes) -> tuple[str, int]:
    """Return ``(qname, qtype)`` of the first question in a raw DNS query."""
    if len(buf) < _DNS_HEADER_LEN:
        raise ParseError(f"dns header truncated ({len(buf)} < {_DNS_HEADER_LEN})")
    if _u16(buf, 4) == 0:
        raise ParseError("dns has no question (qdcount=0)")

    i = _DNS_HEADER_LEN
    labels: list[bytes] = []
    while True:
        if i >= len(buf):
            raise ParseError("dns name overruns payload")
        n = buf[i]
        i += 1
        if n == 0:
            break
        if n & 0xC0:
            raise ParseError("dns compression pointer in query")
        if n > _MAX_LABEL:
            raise ParseError(f"dns label length {n} > {_MAX_LABEL}")
        if i + n > len(buf):
            raise ParseError("dns label overruns payload")
        labels.append(bytes(buf[i : i + n]))
        i += n
    if i + 4 > len(buf):
        raise ParseError("dns qtype/qclass overruns payload")
    return _text(b".".join(labels)), _u16(buf, i)


def parse_client_hello_sni(buf: bytes) -> str:
    """Return the server_name host name carried by a TLS ClientHello record."""
    if len(buf) < _CLIENT_HELLO_MIN:
        raise ParseError(
            f"buffer too short for ClientHello ({len(buf)} < {_CLIENT_HELLO_MIN})"
        )
    if buf[0] != 0x16:
        raise ParseError(f"not a TLS handshake record (type 0x{buf[0]:02x})")
    if buf[5] != 0x01:
        raise ParseError(f"not a ClientHello (handshake type 0x{buf[5]:02x})")

    i = _CLIENT_HELLO_MIN
    if i >= len(buf):
        raise ParseError("truncated at SessionID")
    i += 1 + buf[i]
    if i + 2 > len(buf):
        raise ParseError("truncated at CipherSuites length")

    i += 2 + _u16(buf, i)
    if i >= len(buf):
        raise ParseError("truncated at CompressionMethods length")

    i += 1 + buf[i]
    if i + 2 > len(buf):
        raise ParseError("truncated at Extensions length")

    ext_total = _u16(buf, i)
    i += 2
    ext_end = min(i + ext_total, len(buf))

    while i + 4 <= ext_end:
        ext_type = _u16(buf, i)
        ext_len = _u16(buf, i + 2)
        i += 4
        if i + ext_len > len(buf):
            raise ParseError(f"extension type {ext_type} overruns payload")
        if ext_type == 0:
            if ext_len < 5:
                raise ParseError("server_name extension too short")
            name_type = buf[i + 2]
            if name_type != 0:
                raise ParseError(f"server_name nameType {name_type} not host_name")
            name_len = _u16(buf, i + 3)
            start = i + 5
            if start + name_len > len(buf):
                raise ParseError("server_name overruns payload")
            return _text(bytes(buf[start : start + name_len]))
        i += ext_len
    raise ParseError("no server_name extension found")
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from fangs import proto_events as pe
from fangs.sensor import (
    CgroupFilter,
    EventPipeline,
    MissEntry,
    build_path_filter_key,
    decode_record,
    find_libssl,
    top_misses,
)
from fangs.sensor_events import FileAccessEvent, NetConnectEvent, TLSSniEvent
from fangs.sensor_options import AddCgroupOptions, WatchedPath

RUN_ID = bytes(range(16))


def _header(event_type, pid=1234):
    return pe.EventHeader(pid=pid, comm=b"node", event_type=int(event_type))


def _tls_raw(source=pe.TLS_SOURCE_LIBSSL, sni=b"example.com", pid=1234):
    return pe.TLSSniEvent(
        header=_header(pe.EventType.TLS_SNI, pid),
        source=source,
        sni_len=len(sni),
        sni=sni,
    ).to_bytes()


def _connect_raw(source, pid=1, port=443):
    return pe.NetConnectEvent(
        header=_header(pe.EventType.NET_CONNECT, pid),
        family=pe.AF_INET,
        source=source,
        dest_port=port,
        dest_addr=bytes([1, 2, 3, 4]),
    ).to_bytes()


def test_build_path_filter_key_bits_are_bytes_times_eight():
    key = build_path_filter_key("/etc/")
    assert key.prefix_len_bits == len("/etc/") * 8
    assert key.path == b"/etc/" + bytes(pe.PATH_LEN - len("/etc/"))


def test_build_path_filter_key_rejects_empty():
    with pytest.raises(ValueError):
        build_path_filter_key("")


def test_build_path_filter_key_rejects_oversized():
    with pytest.raises(ValueError):
        build_path_filter_key("x" * (pe.PATH_LEN + 1))


def test_build_path_filter_key_accepts_max_length():
    key = build_path_filter_key("x" * pe.PATH_LEN)
    assert key.prefix_len_bits == pe.PATH_LEN * 8


def test_decode_record_dispatches_openat():
    raw = pe.OpenatEvent(
        header=_header(pe.EventType.FILE_ACCESS), path_len=5, path=b"/etc/"
    ).to_bytes()
    event = decode_record(raw)
    assert isinstance(event, FileAccessEvent)
    assert event.path_name == "/etc/"
    assert event.comm == "node"


def test_decode_record_rejects_unknown_type():
    raw = bytearray(pe.OpenatEvent().to_bytes())
    raw[pe.HEADER_TYPE_OFFSET] = 99
    with pytest.raises(ValueError, match="unknown event type 99"):
        decode_record(bytes(raw))


def test_decode_record_rejects_short_record():
    with pytest.raises(ValueError):
        decode_record(b"\x00" * 10)


def test_cgroup_filter_add_and_remove():
    flt = CgroupFilter()
    flt.add(
        AddCgroupOptions(
            cgroup_id=42,
            run_id=RUN_ID,
            watched_paths=[WatchedPath("/etc/"), WatchedPath("/etc/shadow", True)],
        )
    )
    assert 42 in flt
    assert flt.counts() == (1, 2)
    assert flt.cgmap[42].run_id == RUN_ID
    shadow = build_path_filter_key("/etc/shadow").to_bytes()
    assert flt.path_filter[shadow].action == pe.PATH_ACTION_KEEP_CRED_TAGGED
    etc = build_path_filter_key("/etc/").to_bytes()
    assert flt.path_filter[etc].action == pe.PATH_ACTION_KEEP

    flt.remove(42)
    assert 42 not in flt
    assert flt.counts() == (0, 0)


def test_cgroup_filter_requires_watched_paths():
    flt = CgroupFilter()
    with pytest.raises(ValueError, match="WatchedPath"):
        flt.add(AddCgroupOptions(cgroup_id=1, run_id=RUN_ID))
    assert flt.counts() == (0, 0)


def test_cgroup_filter_rejects_duplicate_registration():
    flt = CgroupFilter()
    opts = AddCgroupOptions(cgroup_id=7, run_id=RUN_ID, watched_paths=[WatchedPath("/tmp/")])
    flt.add(opts)
    with pytest.raises(ValueError, match="already registered"):
        flt.add(opts)
    assert flt.counts() == (1, 1)


def test_cgroup_filter_rolls_back_on_bad_path():
    flt = CgroupFilter()
    with pytest.raises(ValueError, match="path_filter key"):
        flt.add(
            AddCgroupOptions(
                cgroup_id=9,
                run_id=RUN_ID,
                watched_paths=[WatchedPath("/etc/"), WatchedPath("")],
            )
        )
    assert 9 not in flt
    assert flt.counts() == (0, 0)


def test_cgroup_filter_remove_unknown_is_noop():
    flt = CgroupFilter()
    flt.add(AddCgroupOptions(cgroup_id=1, run_id=RUN_ID, watched_paths=[WatchedPath("/usr/")]))
    flt.remove(999)
    assert flt.counts() == (1, 1)


def test_cgroup_filter_close_drops_cgmap_and_refuses_adds():
    flt = CgroupFilter()
    flt.add(AddCgroupOptions(cgroup_id=1, run_id=RUN_ID, watched_paths=[WatchedPath("/usr/")]))
    flt.close()
    flt.close()
    assert flt.cgmap == {}
    with pytest.raises(RuntimeError):
        flt.add(AddCgroupOptions(cgroup_id=2, run_id=RUN_ID, watched_paths=[WatchedPath("/dev/")]))


def test_pipeline_tags_tls_duplicate():
    pipeline = EventPipeline(dedup_window=timedelta(seconds=5))
    now = datetime(2024, 1, 1)
    first = pipeline.process(_tls_raw(pe.TLS_SOURCE_LIBSSL), now)
    second = pipeline.process(
        _tls_raw(pe.TLS_SOURCE_NODE_INTERNAL), now + timedelta(milliseconds=1)
    )
    assert isinstance(first, TLSSniEvent)
    assert first.duplicate_of == ""
    assert second.sni == "example.com"
    assert second.duplicate_of == "libssl"


def test_pipeline_without_dedup_window_does_not_tag():
    pipeline = EventPipeline()
    now = datetime(2024, 1, 1)
    pipeline.process(_tls_raw(pe.TLS_SOURCE_LIBSSL), now)
    second = pipeline.process(_tls_raw(pe.TLS_SOURCE_NODE_INTERNAL), now)
    assert second.duplicate_of == ""


def test_pipeline_drops_kprobe_after_syscall_connect():
    pipeline = EventPipeline()
    now = datetime(2024, 1, 1)
    syscall = pipeline.process(_connect_raw(pe.NET_SOURCE_SYSCALL), now)
    kprobe = pipeline.process(
        _connect_raw(pe.NET_SOURCE_KPROBE), now + timedelta(milliseconds=1)
    )
    assert isinstance(syscall, NetConnectEvent)
    assert syscall.dest_ip == "1.2.3.4"
    assert kprobe is None


def test_pipeline_keeps_lone_kprobe_connect():
    pipeline = EventPipeline()
    event = pipeline.process(_connect_raw(pe.NET_SOURCE_KPROBE), datetime(2024, 1, 1))
    assert isinstance(event, NetConnectEvent)
    assert event.dest_port == 443


def test_pipeline_skips_short_and_undecodable_records():
    pipeline = EventPipeline()
    raw = bytearray(pe.OpenatEvent().to_bytes())
    raw[pe.HEADER_TYPE_OFFSET] = 42
    assert pipeline.process(b"\x00" * 5) is None
    assert pipeline.process(bytes(raw)) is None


def test_top_misses_sorts_and_truncates():
    result = top_misses({1: 5, 2: 50, 3: 10}, top=2)
    assert result == [MissEntry(2, 50), MissEntry(3, 10)]


def test_top_misses_zero_top_returns_all():
    result = top_misses([(1, 1), (2, 3)], top=0)
    assert [entry.cgroup_id for entry in result] == [2, 1]


def test_find_libssl_returns_first_existing():
    with patch("fangs.sensor.os.path.exists", side_effect=lambda p: p == "/usr/lib64/libssl.so.3"):
        assert find_libssl() == "/usr/lib64/libssl.so.3"


def test_find_libssl_raises_when_missing():
    with patch("fangs.sensor.os.path.exists", return_value=False):
        with pytest.raises(FileNotFoundError):
            find_libssl()
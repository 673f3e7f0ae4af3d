from datetime import timedelta

import pytest

from fangs.proto_events import RUN_ID_LEN
from fangs.sensor_options import AddCgroupOptions, SensorOptions, WatchedPath


def test_sensor_options_defaults_disable_dedup_and_autodetect_libssl():
    opts = SensorOptions()
    assert opts.dedup_window == timedelta(0)
    assert opts.libssl_path == ""
    assert opts.ensure_tracefs is False
    assert opts.logger is None


def test_sensor_options_rejects_negative_window():
    with pytest.raises(ValueError):
        SensorOptions(dedup_window=timedelta(seconds=-1))


def test_add_cgroup_options_default_run_id_is_zeroed():
    opts = AddCgroupOptions(cgroup_id=7)
    assert opts.run_id == bytes(RUN_ID_LEN)
    assert opts.watched_paths == []


def test_add_cgroup_options_accepts_bytearray_run_id():
    opts = AddCgroupOptions(run_id=bytearray(range(RUN_ID_LEN)))
    assert opts.run_id == bytes(range(RUN_ID_LEN))


def test_add_cgroup_options_rejects_wrong_run_id_length():
    with pytest.raises(ValueError):
        AddCgroupOptions(run_id=b"short")


def test_add_cgroup_options_rejects_negative_cgroup():
    with pytest.raises(ValueError):
        AddCgroupOptions(cgroup_id=-1)


def test_watched_paths_lists_are_independent():
    first = AddCgroupOptions()
    second = AddCgroupOptions()
    first.watched_paths.append(WatchedPath("/etc/"))
    assert second.watched_paths == []


def test_watched_path_defaults_untagged():
    path = WatchedPath("/root/.ssh/")
    assert path.cred_tagged is False
    assert path == WatchedPath(prefix="/root/.ssh/", cred_tagged=False)
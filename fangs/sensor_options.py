"""Configuration for the sensor and for each watched cgroup."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from fangs.proto_events import RUN_ID_LEN


@dataclass
class WatchedPath:
    """One entry in the path allowlist.

    ``prefix`` should be absolute and at most 256 bytes; matching events
    are tagged as credential access when ``cred_tagged`` is set.
    """

    prefix: str
    cred_tagged: bool = False


@dataclass
class SensorOptions:
    """Long-lived sensor settings.

    An empty ``libssl_path`` means auto-detect; a zero ``dedup_window``
    disables TLS cross-source dedup tagging.
    """

    libssl_path: str = ""
    logger: logging.Logger | None = None
    ensure_tracefs: bool = False
    dedup_window: timedelta = timedelta(0)

    def __post_init__(self) -> None:
        if self.dedup_window < timedelta(0):
            raise ValueError("dedup_window must not be negative")


@dataclass
class AddCgroupOptions:
    """One cgroup to observe, the run id stamped on its events, and its paths."""

    cgroup_id: int = 0
    run_id: bytes = bytes(RUN_ID_LEN)
    watched_paths: list[WatchedPath] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.run_id = bytes(self.run_id)
        if len(self.run_id) != RUN_ID_LEN:
            raise ValueError(
                f"run_id must be {RUN_ID_LEN} bytes, got {len(self.run_id)}"
            )
        if self.cgroup_id < 0:
            raise ValueError("cgroup_id must not be negative")
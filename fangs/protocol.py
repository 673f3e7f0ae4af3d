"""JSON wire types exchanged between the orchestrator and its runners.

Durations travel as integer nanoseconds, run ids as arrays of 16 byte
values, and timestamps as RFC 3339 strings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fangs.proto_events import EventType

CURRENT_PROTO_VERSION = 1
RUN_ID_LEN = 16

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


def _duration_to_ns(value: timedelta) -> int:
    return (value.days * 86_400 + value.seconds) * 1_000_000_000 + value.microseconds * 1_000


def _duration_from_ns(value: Any) -> timedelta:
    ns = int(value or 0)
    micros = abs(ns) // 1_000
    return timedelta(microseconds=micros if ns >= 0 else -micros)


def _run_id_to_json(run_id: bytes) -> list[int]:
    if len(run_id) != RUN_ID_LEN:
        raise ValueError(f"run id must be {RUN_ID_LEN} bytes, got {len(run_id)}")
    return list(run_id)


def _run_id_from_json(value: Any) -> bytes:
    if value is None:
        return bytes(RUN_ID_LEN)
    if not isinstance(value, list):
        raise ValueError("run id must be a JSON array of byte values")
    return bytes(value[:RUN_ID_LEN]).ljust(RUN_ID_LEN, b"\0")


def _format_time(value: datetime | None) -> str:
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == _ZERO_TIME:
        return None
    match = _TIME_RE.match(str(value))
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp: {value!r}")
    year, month, day, hour, minute, second, frac, zone = match.groups()
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    micros = int((frac or "")[:6].ljust(6, "0"))
    parsed = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
    )
    if parsed == datetime(1, 1, 1, tzinfo=timezone.utc):
        return None
    return parsed


@dataclass
class RunnerRegistration:
    """Body of ``POST /v1/runners/register``."""

    runner_id: str = ""
    hostname: str = ""
    capabilities: list[str] = field(default_factory=list)
    kernel_version: str = ""
    proto_version: int = CURRENT_PROTO_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "runner_id": self.runner_id,
            "hostname": self.hostname,
            "capabilities": list(self.capabilities),
            "kernel_version": self.kernel_version,
            "proto_version": self.proto_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerRegistration:
        return cls(
            runner_id=data.get("runner_id", ""),
            hostname=data.get("hostname", ""),
            capabilities=list(data.get("capabilities") or []),
            kernel_version=data.get("kernel_version", ""),
            proto_version=int(data.get("proto_version", 0)),
        )


@dataclass
class RegistrationAck:
    """Orchestrator's reply to a registration."""

    ok: bool = False
    orchestrator_id: str = ""
    job_poll_interval: timedelta = timedelta(0)
    heartbeat_interval: timedelta = timedelta(0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "orchestrator_id": self.orchestrator_id,
            "job_poll_interval": _duration_to_ns(self.job_poll_interval),
            "heartbeat_interval": _duration_to_ns(self.heartbeat_interval),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistrationAck:
        return cls(
            ok=bool(data.get("ok", False)),
            orchestrator_id=data.get("orchestrator_id", ""),
            job_poll_interval=_duration_from_ns(data.get("job_poll_interval")),
            heartbeat_interval=_duration_from_ns(data.get("heartbeat_interval")),
        )


@dataclass
class Heartbeat:
    """Body of ``POST /v1/runners/{id}/heartbeat``."""

    runner_id: str = ""
    active_run_id: str = ""
    status: str = ""
    events_queued: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"runner_id": self.runner_id}
        if self.active_run_id:
            out["active_run_id"] = self.active_run_id
        if self.status:
            out["status"] = self.status
        if self.events_queued:
            out["events_queued"] = self.events_queued
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Heartbeat:
        return cls(
            runner_id=data.get("runner_id", ""),
            active_run_id=data.get("active_run_id", ""),
            status=data.get("status", ""),
            events_queued=int(data.get("events_queued", 0)),
        )


@dataclass
class HeartbeatAck:
    """Reply to a heartbeat; ``unknown_runner`` asks the runner to re-register."""

    ok: bool = False
    unknown_runner: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok}
        if self.unknown_runner:
            out["unknown_runner"] = True
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HeartbeatAck:
        return cls(
            ok=bool(data.get("ok", False)),
            unknown_runner=bool(data.get("unknown_runner", False)),
        )


@dataclass
class WatchedPath:
    """A path prefix whose file accesses are reported."""

    prefix: str = ""
    cred_tagged: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"prefix": self.prefix}
        if self.cred_tagged:
            out["cred_tagged"] = True
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WatchedPath:
        return cls(
            prefix=data.get("prefix", ""),
            cred_tagged=bool(data.get("cred_tagged", False)),
        )


@dataclass
class SandboxSpec:
    """Container a runner spawns to host the observed workload."""

    image: str = ""
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    working_dir: str = ""
    user: str = ""
    network_mode: str = ""
    memory_bytes: int = 0
    nano_cpus: int = 0
    pids_limit: int = 0
    pull_policy: str = ""
    grace_period: timedelta = timedelta(0)
    cgroup_parent: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"image": self.image}
        optional = {
            "command": list(self.command),
            "env": dict(self.env),
            "working_dir": self.working_dir,
            "user": self.user,
            "network_mode": self.network_mode,
            "memory_bytes": self.memory_bytes,
            "nano_cpus": self.nano_cpus,
            "pids_limit": self.pids_limit,
            "pull_policy": self.pull_policy,
            "grace_period": _duration_to_ns(self.grace_period),
            "cgroup_parent": self.cgroup_parent,
        }
        out.update((key, value) for key, value in optional.items() if value)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxSpec:
        return cls(
            image=data.get("image", ""),
            command=list(data.get("command") or []),
            env=dict(data.get("env") or {}),
            working_dir=data.get("working_dir", ""),
            user=data.get("user", ""),
            network_mode=data.get("network_mode", ""),
            memory_bytes=int(data.get("memory_bytes", 0)),
            nano_cpus=int(data.get("nano_cpus", 0)),
            pids_limit=int(data.get("pids_limit", 0)),
            pull_policy=data.get("pull_policy", ""),
            grace_period=_duration_from_ns(data.get("grace_period")),
            cgroup_parent=data.get("cgroup_parent", ""),
        )


@dataclass
class Job:
    """Work handed to a runner by ``GET /v1/runners/{id}/jobs``."""

    run_id: bytes = bytes(RUN_ID_LEN)
    kind: str = ""
    package_name: str = ""
    version: str = ""
    cgroup_path: str = ""
    watched_paths: list[WatchedPath] = field(default_factory=list)
    duration: timedelta = timedelta(0)
    dispatched_at: datetime | None = None
    sandbox: SandboxSpec | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "run_id": _run_id_to_json(self.run_id),
            "kind": self.kind,
        }
        if self.package_name:
            out["package_name"] = self.package_name
        if self.version:
            out["version"] = self.version
        if self.cgroup_path:
            out["cgroup_path"] = self.cgroup_path
        out["watched_paths"] = [w.to_dict() for w in self.watched_paths]
        out["duration"] = _duration_to_ns(self.duration)
        out["dispatched_at"] = _format_time(self.dispatched_at)
        if self.sandbox is not None:
            out["sandbox"] = self.sandbox.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        sandbox = data.get("sandbox")
        return cls(
            run_id=_run_id_from_json(data.get("run_id")),
            kind=data.get("kind", ""),
            package_name=data.get("package_name", ""),
            version=data.get("version", ""),
            cgroup_path=data.get("cgroup_path", ""),
            watched_paths=[WatchedPath.from_dict(w) for w in data.get("watched_paths") or []],
            duration=_duration_from_ns(data.get("duration")),
            dispatched_at=_parse_time(data.get("dispatched_at")),
            sandbox=SandboxSpec.from_dict(sandbox) if sandbox is not None else None,
        )


@dataclass
class EventEnvelope:
    """One typed sensor event; ``payload`` shape depends on ``type``."""

    type: EventType = EventType.FILE_ACCESS
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": int(self.type), "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventEnvelope:
        return cls(type=EventType(int(data.get("type", 0))), payload=data.get("payload"))


@dataclass
class EventBatch:
    """One batch of events for a run; ``seq`` grows by one per batch."""

    run_id: bytes = bytes(RUN_ID_LEN)
    seq: int = 0
    events: list[EventEnvelope] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": _run_id_to_json(self.run_id),
            "seq": self.seq,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventBatch:
        return cls(
            run_id=_run_id_from_json(data.get("run_id")),
            seq=int(data.get("seq", 0)),
            events=[EventEnvelope.from_dict(e) for e in data.get("events") or []],
        )


@dataclass
class ScanResult:
    """Runner's final report for a run."""

    run_id: bytes = bytes(RUN_ID_LEN)
    status: str = ""
    reason: str = ""
    events_emitted: int = 0
    events_dropped: int = 0
    duration: timedelta = timedelta(0)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "run_id": _run_id_to_json(self.run_id),
            "status": self.status,
        }
        if self.reason:
            out["reason"] = self.reason
        out["events_emitted"] = self.events_emitted
        out["events_dropped"] = self.events_dropped
        out["duration"] = _duration_to_ns(self.duration)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScanResult:
        return cls(
            run_id=_run_id_from_json(data.get("run_id")),
            status=data.get("status", ""),
            reason=data.get("reason", ""),
            events_emitted=int(data.get("events_emitted", 0)),
            events_dropped=int(data.get("events_dropped", 0)),
            duration=_duration_from_ns(data.get("duration")),
        )


@dataclass
class HealthResponse:
    """Body of ``GET /v1/health``."""

    status: str = ""
    orchestrator_id: str = ""
    version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "orchestrator_id": self.orchestrator_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthResponse:
        return cls(
            status=data.get("status", ""),
            orchestrator_id=data.get("orchestrator_id", ""),
            version=data.get("version", ""),
        )
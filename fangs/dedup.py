"""Short-window de-duplication of TLS SNI and TCP connect events.

Both trackers are driven by a single event reader and are not thread-safe.
Timestamps are ``datetime`` values and windows are ``timedelta`` values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from fangs.proto_events import NET_SOURCE_KPROBE, NET_SOURCE_SYSCALL

DEFAULT_CONNECT_WINDOW = timedelta(milliseconds=100)


@dataclass
class _Sighting:
    first_source: str
    seen_at: datetime


@dataclass
class TLSDedup:
    """Remember ``(pid, sni)`` pairs so a second capture source is flagged.

    ``observe`` returns the name of the source that first reported the pair
    within the window, or ``""`` when this sighting is the first.
    """

    window: timedelta
    _seen: dict[tuple[int, str], _Sighting] = field(default_factory=dict, repr=False)

    def observe(self, pid: int, sni: str, source: str, now: datetime) -> str:
        if not sni:
            return ""
        self._seen = {
            key: sighting
            for key, sighting in self._seen.items()
            if now - sighting.seen_at <= self.window
        }
        key = (pid, sni)
        earlier = self._seen.get(key)
        if earlier is not None and now - earlier.seen_at <= self.window:
            return earlier.first_source
        self._seen[key] = _Sighting(source, now)
        return ""


@dataclass
class ConnectDedup:
    """Collapse the tracepoint/kprobe pair reported for one TCP connect.

    Syscall-sourced events are always kept and remembered. A kprobe event
    is reported as a duplicate only when a syscall event with the same
    ``(pid, family, ip, port)`` arrived within the window; the marker is
    then consumed so a later, separate connect is not suppressed. Kprobe
    events with no preceding syscall event (io_uring connects) and events
    from unknown sources are kept.
    """

    window: timedelta = DEFAULT_CONNECT_WINDOW
    _pending: dict[tuple[int, int, str, int], datetime] = field(
        default_factory=dict, repr=False
    )

    def observe(
        self,
        pid: int,
        family: int,
        source: int,
        ip: str,
        port: int,
        now: datetime,
    ) -> bool:
        """Return True when the event duplicates an earlier syscall event."""
        if not ip:
            return False
        self._pending = {
            key: seen_at
            for key, seen_at in self._pending.items()
            if now - seen_at <= self.window
        }
        key = (pid, family, ip, port)
        if source == NET_SOURCE_SYSCALL:
            self._pending[key] = now
            return False
        if source == NET_SOURCE_KPROBE:
            seen_at = self._pending.get(key)
            if seen_at is not None and now - seen_at <= self.window:
                del self._pending[key]
                return True
            return False
        return False
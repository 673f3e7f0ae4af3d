"""Poll the registry for new releases of watched packages and queue scans."""

from __future__ import annotations

import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fangs.protocol import SandboxSpec, WatchedPath
from fangs.registry import PackageNotFoundError, Registry, RegistryError

DEFAULT_INTERVAL = timedelta(minutes=5)

SubmitFunc = Callable[[str, str], str]


@dataclass
class WatchedPackage:
    """A package under watch and what was last observed for it."""

    name: str
    last_seen_version: str = ""
    last_checked_at: datetime | None = None


@dataclass
class ReleaseRow:
    """One discovered release of a watched package."""

    package_name: str
    version: str
    tarball_sha256: str = ""
    npm_integrity: str = ""
    published_at: datetime | None = None
    discovered_at: datetime | None = None


class Store(ABC):
    """Persistence the watcher needs."""

    @abstractmethod
    def list_watched_packages(self) -> list[WatchedPackage]:
        """Return every watched package."""

    @abstractmethod
    def update_package_check(self, name: str, version: str) -> None:
        """Record that ``name`` was checked and ``version`` was seen."""

    @abstractmethod
    def record_release(self, release: ReleaseRow) -> None:
        """Store a discovered release."""


class MemoryStore(Store):
    """In-memory store, kept in the order packages were added."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._packages: dict[str, WatchedPackage] = {}
        self._releases: dict[tuple[str, str], ReleaseRow] = {}

    def add_watched_package(self, name: str) -> None:
        with self._lock:
            if name in self._packages:
                raise ValueError(f"package {name!r} already watched")
            self._packages[name] = WatchedPackage(name)

    def list_watched_packages(self) -> list[WatchedPackage]:
        with self._lock:
            return [dataclasses.replace(p) for p in self._packages.values()]

    def update_package_check(self, name: str, version: str) -> None:
        with self._lock:
            if name not in self._packages:
                raise KeyError(f"package {name!r} is not watched")
            package = self._packages[name]
            package.last_seen_version = version
            package.last_checked_at = datetime.now(timezone.utc)

    def record_release(self, release: ReleaseRow) -> None:
        with self._lock:
            self._releases[(release.package_name, release.version)] = dataclasses.replace(
                release
            )

    def list_releases_by_package(self, name: str, limit: int = 0) -> list[ReleaseRow]:
        """Return the package's releases, newest discovery first."""
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        with self._lock:
            rows = [
                dataclasses.replace(r)
                for (package, _), r in self._releases.items()
                if package == name
            ]
        rows.sort(key=lambda r: r.discovered_at or epoch, reverse=True)
        return rows[:limit] if limit > 0 else rows


class Watcher:
    """Poll watched packages and submit a scan for each new release."""

    def __init__(
        self,
        store: Store,
        registry: Registry,
        submit: SubmitFunc,
        logger: logging.Logger | None = None,
        interval: timedelta = DEFAULT_INTERVAL,
    ) -> None:
        self.store = store
        self.registry = registry
        self.submit = submit
        self.logger = logger or logging.getLogger(__name__)
        self.interval = interval if interval > timedelta(0) else DEFAULT_INTERVAL
        self._stop: threading.Event | None = None

    def run(self, stop_event: threading.Event) -> None:
        """Poll now and then every interval until ``stop_event`` is set."""
        self._stop = stop_event
        self.logger.info("watcher started interval=%s", self.interval)
        try:
            self.poll_once()
            while not stop_event.wait(self.interval.total_seconds()):
                self.poll_once()
        finally:
            self._stop = None
        self.logger.info("watcher stopped")

    def poll_once(self) -> None:
        """Run one cycle over every watched package."""
        try:
            packages = self.store.list_watched_packages()
        except Exception as exc:  # store backends raise their own error types
            self.logger.warning("watcher: list packages err=%s", exc)
            return
        if not packages:
            self.logger.debug("watcher: nothing to watch")
            return
        for package in packages:
            if self._stop is not None and self._stop.is_set():
                return
            self._poll_package(package)

    def _poll_package(self, package: WatchedPackage) -> None:
        name = package.name
        try:
            latest = self.registry.latest_version(name)
        except PackageNotFoundError:
            self.logger.warning("registry says package not found package=%s", name)
            return
        except (RegistryError, OSError) as exc:
            self.logger.warning("registry poll failed package=%s err=%s", name, exc)
            return

        try:
            self.store.update_package_check(name, latest.version)
        except Exception as exc:
            self.logger.warning("update last_checked_at package=%s err=%s", name, exc)

        if latest.version == package.last_seen_version:
            return

        try:
            self.store.record_release(
                ReleaseRow(
                    package_name=name,
                    version=latest.version,
                    tarball_sha256=latest.tarball_sha,
                    npm_integrity=latest.integrity,
                    published_at=latest.published_at,
                    discovered_at=datetime.now(timezone.utc),
                )
            )
        except Exception as exc:
            self.logger.warning("record release package=%s err=%s", name, exc)

        self.logger.info(
            "new release detected package=%s version=%s previous_version=%s published_at=%s",
            name,
            latest.version,
            package.last_seen_version,
            latest.published_at,
        )
        try:
            run_id = self.submit(name, latest.version)
        except Exception as exc:
            self.logger.warning("submit scan package=%s err=%s", name, exc)
            return
        self.logger.info(
            "scan queued package=%s version=%s run_id=%s", name, latest.version, run_id
        )


def default_watched_paths() -> list[WatchedPath]:
    """Return a fresh copy of the watched-path set used by every automatic scan."""
    return [
        WatchedPath("/etc/", False),
        WatchedPath("/etc/shadow", True),
        WatchedPath("/etc/passwd", True),
        WatchedPath("/root/", False),
        WatchedPath("/root/.ssh/", True),
        WatchedPath("/root/.aws/", True),
        WatchedPath("/root/.npmrc", True),
        WatchedPath("/root/.docker/", True),
        WatchedPath("/root/.kube/", True),
        WatchedPath("/root/.gnupg/", True),
        WatchedPath("/proc/self/environ", True),
        WatchedPath("/tmp/", False),
        WatchedPath("/usr/", False),
        WatchedPath("/dev/", False),
    ]


def build_sandbox_scan(package_name: str, version: str) -> SandboxSpec:
    """Return the sandbox spec for a fresh npm install of ``package_name@version``."""
    script = (
        "cd /tmp && mkdir -p test && cd test && "
        "npm init -y >/dev/null 2>&1 && "
        f"npm install {package_name}@{version} 2>&1 | tail -3; "
        "sleep 2"
    )
    return SandboxSpec(
        image="node:20-slim",
        command=["sh", "-c", script],
        network_mode="bridge",
        pull_policy="missing",
        user="0:0",
        grace_period=timedelta(seconds=2),
    )
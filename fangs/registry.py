"""Client for an npm-compatible package registry."""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"
DEFAULT_TIMEOUT = 15.0


@dataclass
class PackageVersion:
    """The subset of registry metadata the watcher cares about."""

    name: str
    version: str
    tarball_sha: str = ""
    integrity: str = ""
    published_at: datetime | None = None


class RegistryError(RuntimeError):
    """The registry could not answer the question."""


class PackageNotFoundError(RegistryError):
    """The registry does not know the package."""

    def __init__(self, message: str = "watcher: package not found on registry") -> None:
        super().__init__(message)


class VersionNotFoundError(RegistryError):
    """The package exists but the requested version does not."""


class Registry(ABC):
    """An npm-compatible registry."""

    @abstractmethod
    def resolve(self, package_name: str, version: str = "") -> PackageVersion:
        """Return metadata for ``version``, or for the latest release when empty."""

    def latest_version(self, package_name: str) -> PackageVersion:
        """Return metadata for the package's ``dist-tags.latest``."""
        return self.resolve(package_name, "")


def _parse_rfc3339(text: str) -> datetime | None:
    if not isinstance(text, str):
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def resolve_from_metadata(
    meta: Mapping[str, Any], package_name: str, version: str = ""
) -> PackageVersion:
    """Pick ``version`` (or ``dist-tags.latest``) out of a registry document."""
    if not isinstance(meta, Mapping):
        raise RegistryError("decode metadata: document is not an object")
    target = version
    if not target:
        target = (meta.get("dist-tags") or {}).get("latest") or ""
        if not target:
            raise RegistryError(
                f"registry returned no dist-tags.latest for {package_name!r}"
            )
    versions = meta.get("versions") or {}
    if target not in versions:
        raise VersionNotFoundError(
            f"watcher: version not found for package: {package_name}@{target}"
        )
    dist = (versions[target] or {}).get("dist") or {}
    return PackageVersion(
        name=package_name,
        version=target,
        tarball_sha=dist.get("shasum", "") or "",
        integrity=dist.get("integrity", "") or "",
        published_at=_parse_rfc3339((meta.get("time") or {}).get(target)),
    )


class NpmRegistry(Registry):
    """Registry client that fetches package documents over HTTP."""

    def __init__(
        self, base_url: str = DEFAULT_REGISTRY_URL, timeout: float = DEFAULT_TIMEOUT
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def latest_version(self, package_name: str) -> PackageVersion:
        return self.resolve(package_name, "")

    def resolve(self, package_name: str, version: str = "") -> PackageVersion:
        return resolve_from_metadata(self._fetch_metadata(package_name), package_name, version)

    def _fetch_metadata(self, package_name: str) -> Mapping[str, Any]:
        url = self.base_url + "/" + urllib.parse.quote(package_name, safe="@")
        request = urllib.request.Request(url, headers={"Accept": "application/json"})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise PackageNotFoundError() from exc
            detail = exc.read(512).decode("utf-8", errors="replace")
            raise RegistryError(f"registry {url} returned {exc.code}: {detail}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise RegistryError(f"GET {url}: {exc}") from exc
        try:
            return json.loads(body)
        except ValueError as exc:
            raise RegistryError(f"decode metadata: {exc}") from exc
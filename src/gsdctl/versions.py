"""Version parsing and resolution for installed and available toolkits.

Two kinds of upgrade source exist: the remote package registry and a local
directory holding an unpacked toolkit. Remote lookups are bounded by a short
timeout and never raise: timeouts, non-2xx replies and network errors all
resolve to ``None`` so callers treat "no answer" as an ordinary outcome.
"""
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from http.client import HTTPResponse
from pathlib import Path
from typing import Any

from packaging.version import InvalidVersion
from packaging.version import Version as _PackagingVersion

from .documents import DocumentError, read_manifest

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_NAME = "gsd-for-tabnine"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"
DEFAULT_TIMEOUT = 3.0


class UpdateKind(str, Enum):
    """Size of the difference between two versions."""

    NONE = "none"
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


@total_ordering
@dataclass(frozen=True, slots=True)
class Version:
    """A three-component release version."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str | Version) -> Version:
        """Parse *value* (``"1.2.3"``, ``"v1.2"``) into a :class:`Version`."""
        if isinstance(value, Version):
            return value
        text = str(value).strip()
        if text[:1] in {"v", "V"}:
            text = text[1:]
        try:
            parsed = _PackagingVersion(text)
        except InvalidVersion as exc:
            raise ValueError(f"Invalid version string: {value!r}") from exc
        if parsed.is_prerelease or parsed.is_postrelease or parsed.local or parsed.epoch:
            raise ValueError(f"Only plain major.minor.patch versions are supported: {value!r}")
        if len(parsed.release) > 3:
            raise ValueError(f"Version has more than three components: {value!r}")
        major, minor, patch = (*parsed.release, 0, 0)[:3]
        return cls(major, minor, patch)

    def as_tuple(self) -> tuple[int, int, int]:
        """Return ``(major, minor, patch)``."""
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.as_tuple() < other.as_tuple()

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def diff(self, other: Version) -> UpdateKind:
        """Return the kind of update needed to go from ``self`` to *other*."""
        if other <= self:
            return UpdateKind.NONE
        if other.major != self.major:
            return UpdateKind.MAJOR
        if other.minor != self.minor:
            return UpdateKind.MINOR
        return UpdateKind.PATCH


def parse_version(value: object) -> Version | None:
    """Return a :class:`Version` for *value* or ``None`` when unparseable."""
    if not isinstance(value, (str, Version)):
        return None
    try:
        return Version.parse(value)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class RegistrySource:
    """Upgrade source backed by the remote package registry."""

    name: str = DEFAULT_PACKAGE_NAME

    kind = "registry"

    def describe(self) -> str:
        """Return a short human description."""
        return f"registry:{self.name}"


@dataclass(frozen=True, slots=True)
class LocalSource:
    """Upgrade source backed by a directory on the local filesystem."""

    path: Path

    kind = "local"

    def describe(self) -> str:
        """Return a short human description."""
        return f"local:{self.path}"


UpgradeSource = RegistrySource | LocalSource


@dataclass(frozen=True, slots=True)
class RegistryProbe:
    """Result of a registry reachability probe."""

    available: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class UpdateCheck:
    """Outcome of comparing the installed version with the latest available."""

    has_update: bool
    current: Version | None
    latest: Version | None
    kind: UpdateKind
    source: str
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "has_update": self.has_update,
            "current": str(self.current) if self.current else None,
            "latest": str(self.latest) if self.latest else None,
            "kind": self.kind.value,
            "source": self.source,
            "error": self.error,
        }


def diff(current: Version, latest: Version) -> tuple[bool, UpdateKind]:
    """Return ``(has_update, kind)`` for moving from *current* to *latest*."""
    kind = current.diff(latest)
    return kind is not UpdateKind.NONE, kind


class VersionResolver:
    """Read installed versions and query sources for the latest one."""

    def __init__(
        self,
        *,
        package_name: str = DEFAULT_PACKAGE_NAME,
        registry_url: str = DEFAULT_REGISTRY_URL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Configure the expected toolkit identity and registry endpoint."""
        self.package_name = package_name
        self.registry_url = registry_url.rstrip("/")
        self.timeout = timeout

    # Installed -----------------------------------------------------
    def current_version(self, install_dir: Path) -> Version | None:
        """Return the version declared by the installed manifest."""
        try:
            manifest = read_manifest(install_dir)
        except DocumentError as exc:
            logger.warning("Could not read current version: %s", exc)
            return None
        version = parse_version(manifest.get("version"))
        if version is None:
            logger.warning(
                "Installed manifest declares no usable version: %r", manifest.get("version")
            )
        return version

    # Available -----------------------------------------------------
    def latest_version(self, source: UpgradeSource) -> Version | None:
        """Return the latest version offered by *source*, or ``None`` when unavailable."""
        if isinstance(source, LocalSource):
            return self.local_version(source.path)
        return self.registry_version(source.name)

    def registry_version(self, package: str | None = None) -> Version | None:
        """Return the ``latest`` dist-tag published for *package*."""
        metadata = self.fetch_package_metadata(package or self.package_name)
        if metadata is None:
            return None
        tags = metadata.get("dist-tags")
        latest = tags.get("latest") if isinstance(tags, dict) else None
        if not latest:
            logger.warning("No latest version tag in registry response")
            return None
        return parse_version(latest)

    def local_version(self, path: Path) -> Version | None:
        """Return the version declared by the toolkit unpacked at *path*."""
        try:
            manifest = read_manifest(path)
        except DocumentError as exc:
            logger.warning("Failed to read version from %s: %s", path, exc)
            return None
        name = manifest.get("name")
        if name != self.package_name:
            logger.warning(
                "Invalid source %s: manifest name is %r (expected %r)",
                path,
                name,
                self.package_name,
            )
            return None
        return parse_version(manifest.get("version"))

    def fetch_package_metadata(self, package: str) -> dict[str, Any] | None:
        """Return the registry document for *package*, or ``None`` on any failure."""
        encoded = urllib.parse.quote(package, safe="@")
        request = urllib.request.Request(
            f"{self.registry_url}/{encoded}",
            headers={"Accept": "application/json"},
        )
        try:
            with self._open(request) as response:
                payload = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                logger.warning("Package not found in registry: %s", package)
            else:
                logger.warning("Registry error: HTTP %s", exc.code)
            return None
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            logger.warning("Registry request failed: %s", _describe_network_error(exc))
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Registry returned malformed JSON for %s", package)
            return None
        return data if isinstance(data, dict) else None

    def registry_available(self) -> RegistryProbe:
        """Probe the registry root with a HEAD request."""
        request = urllib.request.Request(f"{self.registry_url}/", method="HEAD")
        try:
            with self._open(request) as response:
                status = getattr(response, "status", 200)
        except urllib.error.HTTPError as exc:
            return RegistryProbe(False, f"HTTP {exc.code}: {exc.reason}")
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            return RegistryProbe(False, _describe_network_error(exc))
        if 200 <= status < 300:
            return RegistryProbe(True)
        return RegistryProbe(False, f"HTTP {status}")

    def check(self, install_dir: Path, source: UpgradeSource) -> UpdateCheck:
        """Compare the installed version against the latest offered by *source*."""
        current = self.current_version(install_dir)
        if current is None:
            return UpdateCheck(
                has_update=False,
                current=None,
                latest=None,
                kind=UpdateKind.NONE,
                source=source.kind,
                error="Could not determine current version",
            )
        latest = self.latest_version(source)
        if latest is None:
            return UpdateCheck(
                has_update=False,
                current=current,
                latest=None,
                kind=UpdateKind.NONE,
                source=source.kind,
                error="Could not fetch latest version",
            )
        has_update, kind = diff(current, latest)
        return UpdateCheck(
            has_update=has_update,
            current=current,
            latest=latest,
            kind=kind,
            source=source.kind,
        )

    def _open(self, request: urllib.request.Request) -> HTTPResponse:
        """Issue *request* with the configured timeout (isolated for testing)."""
        return urllib.request.urlopen(request, timeout=self.timeout)  # noqa: S310


def _describe_network_error(exc: BaseException) -> str:
    reason = getattr(exc, "reason", exc)
    if isinstance(reason, TimeoutError) or isinstance(exc, TimeoutError):
        return "Request timed out"
    return f"Network error: {reason}"


__all__ = [
    "LocalSource",
    "RegistryProbe",
    "RegistrySource",
    "UpdateCheck",
    "UpdateKind",
    "UpgradeSource",
    "Version",
    "VersionResolver",
    "diff",
    "parse_version",
]

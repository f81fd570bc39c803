"""Resolve where a new toolkit version comes from.

Resolution order when no explicit source is requested:

1. Probe the registry. When reachable, fetch the package with ``npm pack``
   into an isolated staging directory and extract it there.
2. Otherwise (or when the fetch fails) scan the local candidates: the
   ``GSD_UPGRADE_PATH`` environment override followed by the configured
   conventional paths.
3. Fail with :class:`~gsdctl.errors.SourceUnavailable` naming every path that
   was tried.

The live installation is never touched while a source is being acquired.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import DEFAULT_LOCAL_CANDIDATES
from .documents import DocumentError, read_manifest
from .errors import InvalidSource, SourceUnavailable
from .versions import (
    LocalSource,
    RegistrySource,
    UpgradeSource,
    Version,
    VersionResolver,
    parse_version,
)

logger = logging.getLogger(__name__)

UPGRADE_PATH_ENV_VAR = "GSD_UPGRADE_PATH"
REQUIRED_SOURCE_DIRS = ("scripts", "templates", "guidelines")


@dataclass(slots=True)
class ResolvedSource:
    """A validated source tree ready to be merged into the installation."""

    source: UpgradeSource
    path: Path
    version: Version
    staging_dir: Path | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        """Return ``registry`` or ``local``."""
        return self.source.kind

    def cleanup(self) -> None:
        """Remove the staging directory of a registry fetch (local trees are kept)."""
        if self.staging_dir is not None and self.staging_dir.exists():
            shutil.rmtree(self.staging_dir, ignore_errors=True)
        self.staging_dir = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "kind": self.kind,
            "source": self.source.describe(),
            "path": str(self.path),
            "version": str(self.version),
            "notes": list(self.notes),
        }


def validate_source_tree(path: Path, package_name: str) -> Version:
    """Check the structure of a toolkit tree at *path* and return its version.

    Raises :class:`InvalidSource` listing every problem found.
    """
    problems: list[str] = []
    version: Version | None = None
    if not path.is_dir():
        raise InvalidSource(
            f"Invalid source at {path}: directory does not exist",
            path=path,
            problems=["directory does not exist"],
        )
    try:
        manifest = read_manifest(path)
    except DocumentError as exc:
        problems.append(str(exc))
    else:
        name = manifest.get("name")
        if name != package_name:
            problems.append(f"package.json has name {name!r} (expected {package_name!r})")
        version = parse_version(manifest.get("version"))
        if version is None:
            problems.append(f"package.json has no usable version ({manifest.get('version')!r})")
    for directory in REQUIRED_SOURCE_DIRS:
        if not (path / directory).is_dir():
            problems.append(f"missing {directory}/ directory")
    if problems or version is None:
        lines = "\n".join(f"  - {problem}" for problem in problems)
        raise InvalidSource(
            f"Invalid source at {path}\n{lines}\n\n"
            "Required structure:\n"
            f"  - package.json (with name: {package_name!r} and a version)\n"
            + "".join(f"  - {directory}/ directory\n" for directory in REQUIRED_SOURCE_DIRS),
            path=path,
            problems=problems,
        )
    return version


class SourceAcquirer:
    """Locate, fetch and validate an upgrade source."""

    def __init__(
        self,
        resolver: VersionResolver,
        *,
        install_dir: Path,
        local_candidates: Sequence[str] = DEFAULT_LOCAL_CANDIDATES,
        env: Mapping[str, str] | None = None,
        npm_bin: str = "npm",
        staging_root: Path | None = None,
    ) -> None:
        """Configure candidate paths and the npm binary used to fetch packages."""
        self.resolver = resolver
        self.install_dir = install_dir
        self.local_candidates = list(local_candidates)
        self.env = dict(os.environ if env is None else env)
        self.npm_bin = npm_bin
        self.staging_root = staging_root

    @property
    def package_name(self) -> str:
        """Return the expected toolkit identity."""
        return self.resolver.package_name

    def candidate_paths(self) -> list[Path]:
        """Return the ordered list of local candidate paths."""
        raw: list[str] = []
        override = self.env.get(UPGRADE_PATH_ENV_VAR, "").strip()
        if override:
            raw.append(override)
        raw.extend(self.local_candidates)
        paths: list[Path] = []
        for entry in raw:
            path = Path(entry).expanduser()
            if not path.is_absolute():
                path = self.install_dir / path
            resolved = Path(os.path.normpath(path))
            if resolved not in paths:
                paths.append(resolved)
        return paths

    def detect_local(self) -> tuple[ResolvedSource | None, list[Path]]:
        """Return the first valid local candidate and every path tried."""
        tried: list[Path] = []
        for candidate in self.candidate_paths():
            tried.append(candidate)
            try:
                version = validate_source_tree(candidate, self.package_name)
            except InvalidSource as exc:
                logger.debug("Skipping local candidate %s: %s", candidate, exc.problems)
                continue
            logger.info("Found local source: %s", candidate)
            return ResolvedSource(LocalSource(candidate), candidate, version), tried
        return None, tried

    def resolve(
        self,
        explicit: UpgradeSource | None = None,
        *,
        version: str | None = None,
    ) -> ResolvedSource:
        """Return a validated source tree, falling back to local candidates."""
        if isinstance(explicit, LocalSource):
            path = explicit.path.expanduser()
            found = validate_source_tree(path, self.package_name)
            logger.info("Using local source: %s", path)
            return ResolvedSource(LocalSource(path), path, found)

        reason: str | None = None
        if explicit is None:
            probe = self.resolver.registry_available()
            if not probe.available:
                reason = probe.reason or "registry unavailable"
                logger.warning("Registry unavailable: %s", reason)
                return self._local_or_fail(reason)

        registry = explicit if isinstance(explicit, RegistrySource) else RegistrySource(
            self.package_name
        )
        try:
            return self.fetch_from_registry(registry, version=version)
        except (SourceUnavailable, InvalidSource) as exc:
            logger.warning("Registry fetch failed: %s", exc)
            return self._local_or_fail(f"registry fetch failed: {exc}", fallback=True)

    def _local_or_fail(self, reason: str, *, fallback: bool = False) -> ResolvedSource:
        resolved, tried = self.detect_local()
        if resolved is not None:
            if fallback:
                resolved.notes.append(f"registry fallback: {reason}")
            return resolved
        listing = "\n".join(f"  - {path}" for path in tried) or "  (none configured)"
        example = tried[0] if tried else "../gsd-upgrade"
        raise SourceUnavailable(
            "No upgrade source available.\n\n"
            f"Registry: {reason}\n"
            f"Local candidates tried:\n{listing}\n\n"
            "To upgrade manually:\n"
            f"  1. Unpack the toolkit next to the installation (e.g. {example})\n"
            f"  2. Or set {UPGRADE_PATH_ENV_VAR}=/path/to/toolkit\n"
            "  3. Or fix registry connectivity",
            tried=tried,
            reason=reason,
        )

    def fetch_from_registry(
        self,
        source: RegistrySource,
        *,
        version: str | None = None,
    ) -> ResolvedSource:
        """Download and extract *source* into a fresh staging directory."""
        spec = source.name if version in (None, "", "latest") else f"{source.name}@{version}"
        if self.staging_root is not None:
            self.staging_root.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(
            tempfile.mkdtemp(
                prefix="gsdctl-fetch-",
                dir=str(self.staging_root) if self.staging_root else None,
            )
        )
        try:
            result = self._run_pack_command(staging_dir, [self.npm_bin, "pack", spec])
            if result.returncode != 0:
                detail = (result.stderr or result.stdout or "npm pack failed").strip()
                raise SourceUnavailable(f"npm pack {spec} failed: {detail}", reason=detail)
            tarballs = sorted(staging_dir.glob("*.tgz"))
            if not tarballs:
                raise SourceUnavailable(
                    f"npm pack {spec} produced no tarball in {staging_dir}",
                    reason="no tarball",
                )
            extract_dir = staging_dir / "extract"
            _extract_tarball(tarballs[0], extract_dir)
            package_dir = extract_dir / "package"
            found = validate_source_tree(package_dir, self.package_name)
        except BaseException:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise
        logger.info("Fetched %s %s into %s", source.name, found, staging_dir)
        return ResolvedSource(source, package_dir, found, staging_dir=staging_dir)

    def _run_pack_command(
        self,
        staging_dir: Path,
        cmd: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        """Execute ``npm pack`` inside *staging_dir* (isolated for testing)."""
        try:
            return subprocess.run(  # noqa: S603,S607
                list(cmd),
                cwd=str(staging_dir),
                check=False,
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            raise SourceUnavailable(f"Failed to start {cmd[0]}: {exc}", reason=str(exc)) from exc


def _extract_tarball(archive: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:*") as handle:
            handle.extractall(destination, filter="data")
    except (tarfile.TarError, OSError) as exc:
        raise SourceUnavailable(
            f"Failed to extract {archive.name}: {exc}",
            reason=f"extract failed: {exc}",
        ) from exc


__all__ = [
    "REQUIRED_SOURCE_DIRS",
    "ResolvedSource",
    "SourceAcquirer",
    "UPGRADE_PATH_ENV_VAR",
    "validate_source_tree",
]

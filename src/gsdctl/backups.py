"""Timestamped backups of the toolkit installation.

Layout::

    <backup_root>/
        backup-1718000000000/
            package.json
            .gsd-config.json
            scripts/ templates/ guidelines/ ...
            backup-metadata.json      # written last

A backup is immutable once created. ``node_modules`` is never copied because
it can be reinstalled. Restores take a temporary safety copy of the target so
a failed restore leaves the previous state in place.
"""
from __future__ import annotations

import logging
import math
import os
import shutil
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .config import DEFAULT_BACKUP_EXCLUDES
from .documents import DocumentError, read_json, read_manifest, write_json_atomic
from .errors import (
    BackupCreationFailed,
    BackupValidationFailed,
    RestoreError,
    RollbackFailed,
)

logger = logging.getLogger(__name__)

METADATA_NAME = "backup-metadata.json"
BACKUP_PREFIX = "backup-"
REQUIRED_PATHS = ("package.json", ".gsd-config.json", "scripts", "templates", "guidelines")
FILE_COUNT_TOLERANCE = 0.05
NODE_MODULES = "node_modules"


def _now_millis() -> int:
    return int(time.time() * 1000)


def _iso_from_millis(millis: int) -> str:
    moment = datetime.fromtimestamp(millis / 1000, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_excluded(relative: str, exclude: Iterable[str]) -> bool:
    for entry in exclude:
        if relative == entry or relative.startswith(f"{entry}/"):
            return True
    return False


def count_files(root: Path, exclude: Iterable[str] = ()) -> int:
    """Return the number of regular files under *root*, skipping *exclude* prefixes."""
    excluded = [entry.strip("/") for entry in exclude if entry.strip("/")]
    count = 0
    for current, dirnames, filenames in os.walk(root):
        relative_dir = Path(current).relative_to(root).as_posix()
        prefix = "" if relative_dir == "." else f"{relative_dir}/"
        dirnames[:] = [name for name in dirnames if not _is_excluded(prefix + name, excluded)]
        for name in filenames:
            if not _is_excluded(prefix + name, excluded):
                count += 1
    return count


def allowed_variance(expected: int) -> int:
    """Return how far the file count of a backup may drift from its metadata."""
    return math.ceil(expected * FILE_COUNT_TOLERANCE)


@dataclass(frozen=True, slots=True)
class BackupInfo:
    """Metadata describing one backup directory."""

    path: Path
    timestamp: int
    version: str
    files: int
    created: str
    source_dir: str = ""
    exclude: tuple[str, ...] = ()
    valid: bool = True

    @property
    def name(self) -> str:
        """Return the backup directory name."""
        return self.path.name

    def metadata(self) -> dict[str, object]:
        """Return the sidecar document persisted alongside the backup."""
        return {
            "timestamp": self.timestamp,
            "version": self.version,
            "sourceDir": self.source_dir,
            "files": self.files,
            "created": self.created,
            "exclude": list(self.exclude),
        }

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "timestamp": self.timestamp,
            "version": self.version,
            "files": self.files,
            "created": self.created,
            "valid": self.valid,
        }


@dataclass(frozen=True, slots=True)
class BackupValidation:
    """Result of :meth:`BackupManager.validate`."""

    valid: bool
    errors: tuple[str, ...] = ()
    expected_files: int | None = None
    actual_files: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "expected_files": self.expected_files,
            "actual_files": self.actual_files,
        }


@dataclass(slots=True)
class RestoreResult:
    """Outcome of a successful restore."""

    backup_path: Path
    target: Path
    node_modules_preserved: bool = False
    notes: list[str] = field(default_factory=list)


class BackupManager:
    """Create, validate, restore, list and delete installation backups."""

    def __init__(self, root: Path, *, exclude: Sequence[str] = DEFAULT_BACKUP_EXCLUDES) -> None:
        """Store backups under *root*, always excluding *exclude* prefixes."""
        self.root = root.expanduser()
        self.exclude = tuple(dict.fromkeys([NODE_MODULES, *exclude]))

    # Create --------------------------------------------------------
    def create(
        self,
        source_dir: Path,
        *,
        exclude: Sequence[str] = (),
        version: str | None = None,
    ) -> BackupInfo:
        """Copy *source_dir* into a new ``backup-<millis>`` directory."""
        if not source_dir.is_dir():
            raise BackupCreationFailed(
                f"Failed to create backup: source directory {source_dir} does not exist"
            )
        excluded = list(dict.fromkeys([*self.exclude, *(e.strip("/") for e in exclude if e)]))
        nested = self._root_inside(source_dir)
        if nested is not None and nested not in excluded:
            excluded.append(nested)

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupCreationFailed(
                f"Failed to create backup root {self.root}: {exc}"
            ) from exc
        timestamp, backup_path = self._allocate_path()

        try:
            resolved_version = version or self._read_version(source_dir)
            file_count = count_files(source_dir, excluded)
            self._copy_tree(source_dir, backup_path, _ignore_for(source_dir, excluded))
            info = BackupInfo(
                path=backup_path,
                timestamp=timestamp,
                version=resolved_version,
                files=file_count,
                created=_iso_from_millis(timestamp),
                source_dir=str(source_dir),
                exclude=tuple(excluded),
            )
            write_json_atomic(backup_path / METADATA_NAME, info.metadata())
        except (OSError, shutil.Error, DocumentError) as exc:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise BackupCreationFailed(f"Failed to create backup of {source_dir}: {exc}") from exc

        logger.info(
            "Created backup %s (%d files, version %s)", backup_path, file_count, info.version
        )
        return info

    def _allocate_path(self) -> tuple[int, Path]:
        timestamp = _now_millis()
        while (self.root / f"{BACKUP_PREFIX}{timestamp}").exists():
            timestamp += 1
        return timestamp, self.root / f"{BACKUP_PREFIX}{timestamp}"

    def _root_inside(self, source_dir: Path) -> str | None:
        try:
            relative = self.root.resolve().relative_to(source_dir.resolve())
        except ValueError:
            return None
        text = relative.as_posix()
        return None if text == "." else text

    @staticmethod
    def _read_version(source_dir: Path) -> str:
        try:
            value = read_manifest(source_dir).get("version")
        except DocumentError:
            return "unknown"
        return str(value) if value else "unknown"

    # Validate ------------------------------------------------------
    def validate(self, path: Path) -> BackupValidation:
        """Check *path* is a complete backup; never raises."""
        errors: list[str] = []
        if not path.is_dir():
            return BackupValidation(False, (f"Backup directory does not exist: {path}",))
        metadata_path = path / METADATA_NAME
        if not metadata_path.exists():
            return BackupValidation(False, (f"Backup metadata file missing: {METADATA_NAME}",))
        try:
            metadata = read_json(metadata_path, label=METADATA_NAME)
        except DocumentError as exc:
            return BackupValidation(False, (f"Invalid metadata: {exc}",))

        expected = metadata.get("files")
        if (
            not metadata.get("timestamp")
            or not metadata.get("version")
            or isinstance(expected, bool)
            or not isinstance(expected, int)
        ):
            errors.append("Backup metadata is incomplete (missing timestamp, version, or files)")

        for required in REQUIRED_PATHS:
            if not (path / required).exists():
                errors.append(f"Missing critical file/directory: {required}")

        actual: int | None = None
        try:
            actual = count_files(path, [METADATA_NAME])
        except OSError as exc:
            errors.append(f"Failed to count backup files: {exc}")
        expected_count: int | None = None
        if isinstance(expected, int) and not isinstance(expected, bool):
            expected_count = expected
        if actual is not None and expected_count is not None:
            if abs(actual - expected_count) > allowed_variance(expected_count):
                errors.append(
                    f"File count mismatch: expected ~{expected_count}, found {actual}"
                )
        return BackupValidation(not errors, tuple(errors), expected_count, actual)

    # Restore -------------------------------------------------------
    def restore(
        self,
        path: Path,
        target: Path,
        *,
        preserve_node_modules: bool = True,
    ) -> RestoreResult:
        """Replace *target* with the contents of the backup at *path*."""
        validation = self.validate(path)
        if not validation.valid:
            joined = "\n".join(f"  - {error}" for error in validation.errors)
            raise BackupValidationFailed(
                f"Cannot restore invalid backup {path}:\n{joined}",
                errors=validation.errors,
                backup_path=path,
            )

        self.root.mkdir(parents=True, exist_ok=True)
        stamp = _now_millis()
        safety_copy: Path | None = None
        detached: Path | None = None
        preserve = preserve_node_modules and (target / NODE_MODULES).exists()
        nested = self._root_inside(target) if target.exists() else None
        skipped = [name for name in (NODE_MODULES if preserve else None, nested) if name]
        try:
            if target.exists():
                safety_copy = self.root / f"temp-backup-{stamp}"
                ignore = _ignore_for(target, skipped) if skipped else None
                self._copy_tree(target, safety_copy, ignore)
        except (OSError, shutil.Error) as exc:
            if safety_copy is not None:
                shutil.rmtree(safety_copy, ignore_errors=True)
            raise RestoreError(
                f"Failed to take a safety copy of {target}: {exc}; target left untouched",
                backup_path=path,
            ) from exc

        try:
            if preserve:
                detached = self.root / f"temp-node_modules-{stamp}"
                shutil.move(str(target / NODE_MODULES), str(detached))
            _clear_directory(target, keep=nested)
            self._copy_tree(path, target, _ignore_for(path, [METADATA_NAME]))
            if detached is not None:
                shutil.move(str(detached), str(target / NODE_MODULES))
                detached = None
        except (OSError, shutil.Error) as exc:
            self._recover(
                target, safety_copy, detached, backup_path=path, cause=exc, keep=nested
            )
            raise RestoreError(
                f"Failed to restore {path} into {target}: {exc}. "
                "The previous state was recovered.",
                backup_path=path,
                context={"target": str(target)},
            ) from exc

        if safety_copy is not None:
            shutil.rmtree(safety_copy, ignore_errors=True)
        logger.info("Restored %s into %s", path, target)
        return RestoreResult(backup_path=path, target=target, node_modules_preserved=preserve)

    def _recover(
        self,
        target: Path,
        safety_copy: Path | None,
        detached: Path | None,
        *,
        backup_path: Path,
        cause: BaseException,
        keep: str | None = None,
    ) -> None:
        logger.error("Restore into %s failed (%s); recovering previous state", target, cause)
        try:
            _clear_directory(target, keep=keep)
            if safety_copy is not None:
                self._copy_tree(safety_copy, target, None)
            if detached is not None and detached.exists():
                target.mkdir(parents=True, exist_ok=True)
                shutil.move(str(detached), str(target / NODE_MODULES))
        except (OSError, shutil.Error) as exc:
            kept = safety_copy if safety_copy is not None else backup_path
            raise RollbackFailed(
                f"Restore failed AND recovery failed: {exc}. "
                f"Backup: {backup_path}. Safety copy of the previous state: {kept}. "
                f"Target: {target}",
                backup_path=backup_path,
                context={
                    "target": str(target),
                    "safety_copy": str(safety_copy) if safety_copy else None,
                    "node_modules": str(detached) if detached else None,
                },
            ) from exc
        if safety_copy is not None:
            shutil.rmtree(safety_copy, ignore_errors=True)

    # List / delete -------------------------------------------------
    def list_backups(self) -> list[BackupInfo]:
        """Return every backup under the root, newest first."""
        if not self.root.is_dir():
            return []
        backups: list[BackupInfo] = []
        for entry in self.root.iterdir():
            if entry.is_dir() and entry.name.startswith(BACKUP_PREFIX):
                backups.append(self.describe(entry))
        backups.sort(key=lambda info: info.timestamp, reverse=True)
        return backups

    def describe(self, path: Path) -> BackupInfo:
        """Return :class:`BackupInfo` for *path*, marking corrupted backups."""
        try:
            metadata = read_json(path / METADATA_NAME, label=METADATA_NAME)
            timestamp = int(metadata.get("timestamp") or 0)
            files = int(metadata.get("files") or 0)
        except (DocumentError, TypeError, ValueError):
            return BackupInfo(
                path=path,
                timestamp=0,
                version="unknown",
                files=0,
                created="unknown",
                valid=False,
            )
        exclude = metadata.get("exclude")
        return BackupInfo(
            path=path,
            timestamp=timestamp,
            version=str(metadata.get("version") or "unknown"),
            files=files,
            created=str(metadata.get("created") or "unknown"),
            source_dir=str(metadata.get("sourceDir") or ""),
            exclude=tuple(str(item) for item in exclude) if isinstance(exclude, list) else (),
            valid=self.validate(path).valid,
        )

    def resolve(self, identifier: str | Path) -> Path:
        """Return the backup path for a name (``backup-…``) or an explicit path."""
        candidate = Path(identifier).expanduser()
        if candidate.is_absolute() or candidate.exists():
            return candidate
        return self.root / str(identifier)

    def delete(self, path: Path) -> None:
        """Remove the backup directory at *path*."""
        resolved = path.expanduser().resolve()
        try:
            resolved.relative_to(self.root.resolve())
        except ValueError as exc:
            raise BackupValidationFailed(
                f"Refusing to delete {path}: not inside backup root {self.root}",
                errors=["outside backup root"],
            ) from exc
        if not resolved.name.startswith(BACKUP_PREFIX) or resolved.parent != self.root.resolve():
            raise BackupValidationFailed(
                f"Refusing to delete {path}: not a backup directory",
                errors=["not a backup directory"],
            )
        if not resolved.is_dir():
            raise BackupValidationFailed(
                f"Backup not found: {path}",
                errors=["backup not found"],
            )
        shutil.rmtree(resolved)
        logger.info("Deleted backup %s", resolved)

    def _copy_tree(
        self,
        source: Path,
        destination: Path,
        ignore: Callable[[str, list[str]], Iterable[str]] | None,
    ) -> None:
        """Copy *source* into *destination* (isolated for testing)."""
        shutil.copytree(source, destination, ignore=ignore, symlinks=True, dirs_exist_ok=True)


def _ignore_for(root: Path, exclude: Sequence[str]) -> Callable[[str, list[str]], set[str]]:
    """Return a :func:`shutil.copytree` ignore callback for *exclude* prefixes."""
    root_text = os.path.abspath(root)

    def _ignore(directory: str, names: list[str]) -> set[str]:
        relative = os.path.relpath(os.path.abspath(directory), root_text)
        prefix = "" if relative == "." else f"{Path(relative).as_posix()}/"
        return {name for name in names if _is_excluded(prefix + name, exclude)}

    return _ignore



def _clear_directory(target: Path, *, keep: str | None = None) -> None:
    """Remove *target*, or only its contents except the relative path *keep*."""
    if not target.exists():
        return
    if keep is None:
        shutil.rmtree(target)
        return
    head, _, rest = keep.partition("/")
    for entry in target.iterdir():
        if entry.name == head:
            if rest and entry.is_dir() and not entry.is_symlink():
                _clear_directory(entry, keep=rest)
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()

__all__ = [
    "BACKUP_PREFIX",
    "BackupInfo",
    "BackupManager",
    "BackupValidation",
    "METADATA_NAME",
    "REQUIRED_PATHS",
    "RestoreResult",
    "allowed_variance",
    "count_files",
]

"""File merge strategies applied when a new toolkit version lands.

Every relative path in the incoming tree is classified once:

``PRESERVE``
    User-owned content (planning state, customisations, local overrides).
    The installed file is never touched.
``OVERWRITE``
    Toolkit-owned content (templates, guidelines, scripts, manifests, docs).
    The incoming file replaces the installed one.
``MERGE``
    User-editable JSON documents (``.gsd-config.json``). A three-way merge
    keeps the user's edits on top of the new defaults.
    The pristine incoming document is stored beside it (``.gsd-config.base.json``)
    and serves as the merge base of the next upgrade. Before one exists the
    backup's pre-upgrade copy is the base.

All merges are computed and validated before any byte is written, so a
rejected merge leaves the installation exactly as it was.
"""
from __future__ import annotations

import fnmatch
import json
import logging
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath, PurePosixPath
from typing import Any

from .documents import DocumentError, read_json, write_json_atomic
from .errors import MergeRejected
from .versions import parse_version

logger = logging.getLogger(__name__)

CONFIG_NAME = ".gsd-config.json"
SYSTEM_KEYS = frozenset({"version", "schemaVersion"})
SKIPPED_DIRS = frozenset({"node_modules"})


class FileStrategy(str, Enum):
    """How a file from the incoming tree is applied to the installation."""

    PRESERVE = "preserve"
    OVERWRITE = "overwrite"
    MERGE = "merge"


PRESERVE_PATTERNS: tuple[str, ...] = (
    ".planning/",
    "custom/",
    "*.local.json",
    ".gsd-config.local.json",
)
OVERWRITE_PATTERNS: tuple[str, ...] = (
    "templates/",
    "guidelines/",
    "scripts/",
    "package.json",
    "package-lock.json",
    "README.md",
    "QUICKSTART.md",
    "LICENSE",
    "CHANGELOG.md",
)
MERGE_PATTERNS: tuple[str, ...] = (CONFIG_NAME,)

_STRATEGY_TABLE: tuple[tuple[FileStrategy, tuple[str, ...]], ...] = (
    (FileStrategy.PRESERVE, PRESERVE_PATTERNS),
    (FileStrategy.OVERWRITE, OVERWRITE_PATTERNS),
    (FileStrategy.MERGE, MERGE_PATTERNS),
)


def _normalise(path: str | PurePath) -> str:
    text = str(path).replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text.lstrip("/")


def _matches(relative: str, pattern: str) -> bool:
    if pattern.endswith("/"):
        directory = pattern[:-1]
        return relative == directory or relative.startswith(pattern)
    basename = relative.rsplit("/", 1)[-1]
    return fnmatch.fnmatchcase(relative, pattern) or fnmatch.fnmatchcase(basename, pattern)


def classify(path: str | PurePath) -> FileStrategy:
    """Return the strategy for a path relative to the toolkit root.

    PRESERVE patterns win over OVERWRITE, which win over MERGE. Paths no
    pattern claims are toolkit files and default to OVERWRITE.
    """
    relative = _normalise(path)
    for strategy, patterns in _STRATEGY_TABLE:
        if any(_matches(relative, pattern) for pattern in patterns):
            return strategy
    return FileStrategy.OVERWRITE


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PlannedFile:
    """One classified file of the incoming tree."""

    path: str
    strategy: FileStrategy


@dataclass(frozen=True, slots=True)
class MergePlan:
    """Classified file list of an incoming tree."""

    entries: tuple[PlannedFile, ...] = ()

    def paths(self, strategy: FileStrategy) -> list[str]:
        """Return the paths handled with *strategy*."""
        return [entry.path for entry in self.entries if entry.strategy is strategy]

    @property
    def to_update(self) -> list[str]:
        return self.paths(FileStrategy.OVERWRITE)

    @property
    def to_preserve(self) -> list[str]:
        return self.paths(FileStrategy.PRESERVE)

    @property
    def to_merge(self) -> list[str]:
        return self.paths(FileStrategy.MERGE)


def iter_files(root: Path) -> list[str]:
    """Return every file below *root* as sorted POSIX paths, skipping ``node_modules``."""
    files: list[str] = []
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in SKIPPED_DIRS)
        relative_dir = Path(current).relative_to(root)
        for name in filenames:
            files.append((relative_dir / name).as_posix())
    return sorted(files)


def plan(source_tree: Path) -> MergePlan:
    """Classify every file of *source_tree* without touching anything."""
    return MergePlan(tuple(PlannedFile(path, classify(path)) for path in iter_files(source_tree)))


# ---------------------------------------------------------------------------
# Three-way merge
# ---------------------------------------------------------------------------

CONFIG_THEMES = frozenset({"light", "dark", "auto"})
CONFIG_MODES = frozenset({"interactive", "yolo"})
CONFIG_DEPTHS = frozenset({"quick", "standard", "comprehensive"})


def validate_toolkit_config(document: Mapping[str, Any]) -> list[str]:
    """Return schema violations for a toolkit configuration document.

    Unknown keys are allowed so newer toolkit releases can add settings.
    """
    violations: list[str] = []

    version = document.get("version")
    if version is None:
        violations.append("version: is required")
    elif not isinstance(version, str) or parse_version(version) is None:
        violations.append(f"version: must be a version string (got {version!r})")

    if "schemaVersion" in document:
        schema_version = document["schemaVersion"]
        if isinstance(schema_version, bool) or not isinstance(schema_version, int):
            violations.append(f"schemaVersion: must be an integer (got {schema_version!r})")
        elif schema_version < 1:
            violations.append(f"schemaVersion: must be >= 1 (got {schema_version})")

    enums = (("theme", CONFIG_THEMES), ("mode", CONFIG_MODES), ("depth", CONFIG_DEPTHS))
    for key, allowed in enums:
        if key in document and (
            not isinstance(document[key], str) or document[key] not in allowed
        ):
            options = ", ".join(sorted(allowed))
            violations.append(f"{key}: must be one of {options} (got {document[key]!r})")

    if "parallelization" in document and not isinstance(document["parallelization"], bool):
        violations.append("parallelization: must be a boolean")

    if "research" in document:
        research = document["research"]
        if not isinstance(research, Mapping):
            violations.append("research: must be an object")
        else:
            if "enabled" in research and not isinstance(research["enabled"], bool):
                violations.append("research.enabled: must be a boolean")
            if "maxSources" in research:
                max_sources = research["maxSources"]
                if (
                    isinstance(max_sources, bool)
                    or not isinstance(max_sources, int)
                    or max_sources < 1
                ):
                    violations.append("research.maxSources: must be a positive integer")

    if "guidelines" in document:
        guidelines = document["guidelines"]
        if not isinstance(guidelines, list) or not all(isinstance(g, str) for g in guidelines):
            violations.append("guidelines: must be a list of strings")

    return violations


Validator = Callable[[Mapping[str, Any]], list[str]]


def _no_violations(document: Mapping[str, Any]) -> list[str]:
    return []


def validator_for(relative: str) -> Validator:
    """Return the schema validator used for the MERGE document at *relative*."""
    if relative.rsplit("/", 1)[-1] == CONFIG_NAME:
        return validate_toolkit_config
    return _no_violations


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch: objects merge recursively and ``None`` removes a key."""
    if not isinstance(patch, Mapping):
        return patch
    result: dict[str, Any] = dict(target) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


@dataclass(slots=True)
class MergeResult:
    """Merged document plus a description of the user changes carried over."""

    merged: dict[str, Any]
    user_changes: list[str] = field(default_factory=list)


def user_diff(base: Mapping[str, Any] | None, user: Mapping[str, Any]) -> dict[str, Any]:
    """Return the non-system keys whose user value differs from *base*."""
    reference = base or {}
    return {
        key: value
        for key, value in user.items()
        if key not in SYSTEM_KEYS and (key not in reference or reference[key] != value)
    }


def three_way_merge(
    base: Mapping[str, Any] | None,
    user: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    path: str = CONFIG_NAME,
    validator: Validator = validate_toolkit_config,
) -> MergeResult:
    """Overlay the user's edits (relative to *base*) onto *incoming*.

    Raises :class:`MergeRejected` when the merged document violates the schema;
    the error lists both the violations and the user changes that caused them.
    """
    changes = user_diff(base, user)
    described = [f"{key}: {json.dumps(value)}" for key, value in changes.items()]
    merged = merge_patch(dict(incoming), changes)
    violations = validator(merged)
    if violations:
        numbered = "\n".join(f"  {index}. {item}" for index, item in enumerate(violations, 1))
        attempted = "\n".join(f"  - {change}" for change in described) or "  (none)"
        raise MergeRejected(
            f"Merged {path} failed validation:\n{numbered}\n\nUser changes applied:\n{attempted}",
            path=path,
            violations=violations,
            user_changes=described,
        )
    return MergeResult(merged=merged, user_changes=described)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class MergeStats:
    """Counts of files handled by :func:`apply`."""

    files_updated: int = 0
    files_preserved: int = 0
    files_merged: int = 0
    user_changes: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "files_updated": self.files_updated,
            "files_preserved": self.files_preserved,
            "files_merged": self.files_merged,
            "user_changes": {key: list(value) for key, value in self.user_changes.items()},
        }


def merge_base_path(relative: str) -> str:
    """Return where the pristine copy of the MERGE document *relative* is kept."""
    return PurePosixPath(relative).with_suffix(".base.json").as_posix()


def _load_document(path: Path, relative: str) -> dict[str, Any]:
    try:
        return read_json(path, label=relative)
    except DocumentError as exc:
        raise MergeRejected(
            f"Cannot merge {relative}: {exc}",
            path=relative,
            violations=[str(exc)],
        ) from exc


def compute_merge(
    relative: str,
    source_tree: Path,
    target_dir: Path,
    backup_dir: Path | None,
) -> MergeResult:
    """Return the merged document for the MERGE file at *relative*."""
    validator = validator_for(relative)
    incoming = _load_document(source_tree / relative, relative)
    user_path = target_dir / relative
    if not user_path.exists():
        return three_way_merge(None, {}, incoming, path=relative, validator=validator)
    user = _load_document(user_path, relative)
    base: dict[str, Any] | None = None
    base_relative = merge_base_path(relative)
    if backup_dir is not None:
        if (backup_dir / base_relative).exists():
            base = _load_document(backup_dir / base_relative, base_relative)
        elif (backup_dir / relative).exists():
            previous = _load_document(backup_dir / relative, relative)
            # A snapshot identical to the user document records no base.
            if previous != user:
                base = previous
    return three_way_merge(base, user, incoming, path=relative, validator=validator)


def apply(
    source_tree: Path,
    target_dir: Path,
    backup_dir: Path | None,
    *,
    dry_run: bool = False,
) -> MergeStats:
    """Apply *source_tree* onto *target_dir* according to each file's strategy.

    *backup_dir* holds the installation as it was before the upgrade. The
    pristine document recorded there by the previous upgrade is the merge base;
    without one, the backup's own copy is used when it differs from the user's.
    Each MERGE document's incoming version is recorded for the next one.
    """
    merge_plan = plan(source_tree)
    stats = MergeStats()

    pending: list[tuple[str, MergeResult, dict[str, Any]]] = []
    for relative in merge_plan.to_merge:
        result = compute_merge(relative, source_tree, target_dir, backup_dir)
        pristine = _load_document(source_tree / relative, relative)
        pending.append((relative, result, pristine))
        stats.user_changes[relative] = list(result.user_changes)

    stats.files_preserved = len(merge_plan.to_preserve)
    stats.files_updated = len(merge_plan.to_update)
    stats.files_merged = len(pending)
    if dry_run:
        logger.info(
            "Dry run: %d to update, %d to preserve, %d to merge",
            stats.files_updated,
            stats.files_preserved,
            stats.files_merged,
        )
        return stats

    for relative in merge_plan.to_update:
        destination = target_dir / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source_tree / relative, destination)
        logger.debug("OVERWRITE %s", relative)
    for relative, result, pristine in pending:
        write_json_atomic(target_dir / relative, result.merged)
        write_json_atomic(target_dir / merge_base_path(relative), pristine)
        logger.debug("MERGE %s (%d user changes)", relative, len(result.user_changes))
    for relative in merge_plan.to_preserve:
        logger.debug("PRESERVE %s", relative)
    return stats


__all__ = [
    "CONFIG_NAME",
    "FileStrategy",
    "MergePlan",
    "MergeResult",
    "MergeStats",
    "PlannedFile",
    "SYSTEM_KEYS",
    "apply",
    "classify",
    "compute_merge",
    "iter_files",
    "merge_base_path",
    "merge_patch",
    "plan",
    "three_way_merge",
    "user_diff",
    "validate_toolkit_config",
]

"""Migration registry loading and sequential execution.

Registry format (``migrations.json``)::

    {
      "version": "2",
      "migrations": {
        "<id>": {
          "version": "1.1.0",
          "description": "...",
          "implementation": "<key in IMPLEMENTATIONS>",
          "type": "breaking-change"
        }
      }
    }

A migration applies to an upgrade ``from -> to`` when
``from < migration.version <= to``. Applicable migrations run strictly in
ascending version order and the first failure stops the run.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from ..errors import MigrationFailed
from ..versions import Version
from .steps import IMPLEMENTATIONS, MigrationContext, MigrationStep

logger = logging.getLogger(__name__)

REGISTRY_NAME = "migrations.json"


class MigrationRegistryError(RuntimeError):
    """Raised when the migration registry document is malformed."""


@dataclass(frozen=True, slots=True)
class Migration:
    """One registered migration."""

    id: str
    version: Version
    description: str
    implementation: str
    type: str = "migration"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "version": str(self.version),
            "description": self.description,
            "implementation": self.implementation,
            "type": self.type,
        }


@dataclass(frozen=True, slots=True)
class MigrationResult:
    """Outcome of one migration within a run."""

    id: str
    version: Version
    success: bool
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "id": self.id,
            "version": str(self.version),
            "success": self.success,
        }
        if self.skipped:
            payload["skipped"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class MigrationReport:
    """Outcome of :meth:`MigrationRunner.run`."""

    migrations_run: int = 0
    results: list[MigrationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "migrations_run": self.migrations_run,
            "results": [result.to_dict() for result in self.results],
        }


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise MigrationRegistryError(f"Duplicate key in migration registry: {key!r}")
        result[key] = value
    return result


def _read_registry_text(path: Path | None) -> str | None:
    if path is None:
        resource = resources.files("gsdctl.migrations").joinpath(REGISTRY_NAME)
        try:
            return resource.read_text(encoding="utf-8")
        except FileNotFoundError:  # pragma: no cover - packaged resource missing
            return None
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise MigrationRegistryError(f"Failed to read migration registry {path}: {exc}") from exc


def load_migrations(path: Path | None = None) -> list[Migration]:
    """Load migrations from *path* or the packaged registry.

    A missing registry, or one without entries, yields no migrations.
    """
    label = str(path) if path is not None else f"packaged {REGISTRY_NAME}"
    text = _read_registry_text(path)
    if text is None:
        logger.warning("Migration registry not found (%s); no migrations to run", label)
        return []
    if not text.strip():
        return []
    try:
        payload = json.loads(text, object_pairs_hook=_reject_duplicates)
    except json.JSONDecodeError as exc:
        raise MigrationRegistryError(f"Invalid JSON in migration registry {label}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise MigrationRegistryError(f"Migration registry {label} must be a JSON object.")
    entries = payload.get("migrations") or {}
    if not isinstance(entries, Mapping):
        raise MigrationRegistryError(f"'migrations' in {label} must be an object.")

    migrations: list[Migration] = []
    for migration_id, raw in entries.items():
        if not isinstance(raw, Mapping):
            raise MigrationRegistryError(f"Migration {migration_id!r} must be an object.")
        try:
            version = Version.parse(str(raw.get("version", "")))
        except ValueError as exc:
            raise MigrationRegistryError(
                f"Migration {migration_id!r} has an invalid version: {raw.get('version')!r}"
            ) from exc
        implementation = raw.get("implementation")
        if not isinstance(implementation, str) or not implementation.strip():
            raise MigrationRegistryError(f"Migration {migration_id!r} has no implementation key.")
        migrations.append(
            Migration(
                id=str(migration_id),
                version=version,
                description=str(raw.get("description") or migration_id),
                implementation=implementation.strip(),
                type=str(raw.get("type") or "migration"),
            )
        )
    return migrations


class MigrationRunner:
    """Select and execute migrations between two versions."""

    def __init__(
        self,
        migrations: list[Migration] | None = None,
        *,
        implementations: Mapping[str, MigrationStep] | None = None,
    ) -> None:
        """Use *migrations* (or the packaged registry) and the step lookup table."""
        self.migrations = list(migrations) if migrations is not None else load_migrations()
        self.implementations = dict(IMPLEMENTATIONS if implementations is None else implementations)

    @classmethod
    def from_file(cls, path: Path | None) -> MigrationRunner:
        """Build a runner from the registry at *path* (packaged default when ``None``)."""
        return cls(load_migrations(path))

    def applicable(self, from_version: Version | str, to_version: Version | str) -> list[Migration]:
        """Return migrations with ``from < version <= to`` in ascending order."""
        lower = Version.parse(from_version)
        upper = Version.parse(to_version)
        selected = [m for m in self.migrations if lower < m.version <= upper]
        return sorted(selected, key=lambda migration: (migration.version, migration.id))

    def run(
        self,
        from_version: Version | str,
        to_version: Version | str,
        *,
        target_dir: Path,
        dry_run: bool = False,
    ) -> MigrationReport:
        """Run applicable migrations one after another, stopping at the first failure."""
        selected = self.applicable(from_version, to_version)
        report = MigrationReport()
        if not selected:
            logger.info("No migrations to run")
            return report

        total = len(selected)
        context = MigrationContext(target_dir=target_dir, dry_run=dry_run)
        for index, migration in enumerate(selected):
            logger.info(
                "[%d/%d] %s (%s)", index + 1, total, migration.description, migration.version
            )
            if dry_run:
                report.results.append(
                    MigrationResult(migration.id, migration.version, success=True, skipped=True)
                )
                continue
            try:
                step = self.implementations.get(migration.implementation)
                if step is None:
                    raise LookupError(
                        f"Unknown migration implementation {migration.implementation!r}"
                    )
                step(context)
            except Exception as exc:
                report.results.append(
                    MigrationResult(migration.id, migration.version, success=False, error=str(exc))
                )
                raise MigrationFailed(
                    f"Migration failed: {migration.description} ({migration.version})\n"
                    f"Error: {exc}\n\n"
                    f"Migrations completed: {index}/{total}\n"
                    "Upgrade stopped to prevent data corruption.",
                    migration_id=migration.id,
                    completed=index,
                    total=total,
                    context={"results": [result.to_dict() for result in report.results]},
                ) from exc
            report.results.append(MigrationResult(migration.id, migration.version, success=True))
            report.migrations_run += 1

        logger.info("All migrations completed (%d/%d)", report.migrations_run, total)
        return report


__all__ = [
    "Migration",
    "MigrationRegistryError",
    "MigrationReport",
    "MigrationResult",
    "MigrationRunner",
    "load_migrations",
]

"""Upgrade orchestration.

The orchestrator drives one upgrade through an explicit state machine::

    INIT -> SOURCE_RESOLVED -> PREVIEWED
        -> COMPLETE                 (already up to date)
        -> DRY_RUN_DONE             (dry run)
        -> NEEDS_CONFIRMATION       (no --force)
        -> CONFIRMED -> BACKED_UP -> MERGED -> MIGRATED -> VALIDATED
           -> DEPS_INSTALLED -> COMPLETE

Failures before ``BACKED_UP`` are raised as-is because nothing was mutated.
Failures from ``BACKED_UP`` onwards restore the backup taken by this run and
are reported as a failure outcome (``ROLLED_BACK`` or ``ROLLBACK_FAILED``).

All run state lives on an :class:`UpgradeContext` passed from step to step.
The caller is expected to be the only writer to the installation directory
for the duration of the run.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from . import merge
from .backups import BackupInfo, BackupManager
from .config import AppConfig
from .documents import MANIFEST_NAME, DocumentError, read_manifest
from .errors import (
    BackupValidationFailed,
    DependencyInstallFailed,
    GsdctlError,
    RestoreError,
    RollbackFailed,
    VersionMismatchAfterUpgrade,
    manual_recovery_steps,
)
from .migrations import Migration, MigrationReport, MigrationRunner
from .sources import REQUIRED_SOURCE_DIRS, ResolvedSource, SourceAcquirer
from .versions import (
    LocalSource,
    RegistrySource,
    UpdateKind,
    UpgradeSource,
    Version,
    VersionResolver,
    parse_version,
)

logger = logging.getLogger(__name__)


class UpgradeState(str, Enum):
    """States of a single upgrade run."""

    INIT = "init"
    SOURCE_RESOLVED = "source-resolved"
    PREVIEWED = "previewed"
    DRY_RUN_DONE = "dry-run-done"
    NEEDS_CONFIRMATION = "needs-confirmation"
    CONFIRMED = "confirmed"
    BACKED_UP = "backed-up"
    MERGED = "merged"
    MIGRATED = "migrated"
    VALIDATED = "validated"
    DEPS_INSTALLED = "deps-installed"
    COMPLETE = "complete"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"


# Stage reported for an unexpected error raised while in a given state.
_NEXT_STAGE = {
    UpgradeState.BACKED_UP: "merge",
    UpgradeState.MERGED: "migrate",
    UpgradeState.MIGRATED: "validate",
    UpgradeState.VALIDATED: "dependencies",
}

def _stage_after(ctx: UpgradeContext) -> str:
    return _NEXT_STAGE.get(ctx.state, "upgrade") if ctx.state else "upgrade"


SOURCE_CHOICES = ("registry", "local")


@dataclass(frozen=True, slots=True)
class UpgradeOptions:
    """User-supplied switches for one upgrade run."""

    source: str | None = None
    local_path: Path | None = None
    version: str | None = None
    dry_run: bool = False
    force: bool = False

    def explicit_source(self, package_name: str) -> UpgradeSource | None:
        """Return the source the user asked for, or ``None`` to auto-detect."""
        if self.local_path is not None and self.source in (None, "local"):
            return LocalSource(self.local_path)
        if self.source == "local":
            raise ValueError("--source local requires --local-path")
        if self.source == "registry":
            return RegistrySource(package_name)
        if self.source is not None:
            raise ValueError(
                f"Unknown source {self.source!r}; expected one of {', '.join(SOURCE_CHOICES)}"
            )
        return None


@dataclass(frozen=True, slots=True)
class UpgradePreview:
    """Read-only description of what an upgrade would do."""

    current: Version
    latest: Version
    kind: UpdateKind
    files_to_update: tuple[str, ...] = ()
    files_to_preserve: tuple[str, ...] = ()
    files_to_merge: tuple[str, ...] = ()
    migrations: tuple[Migration, ...] = ()
    source: str = ""

    @property
    def has_update(self) -> bool:
        return self.kind is not UpdateKind.NONE

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "current": str(self.current),
            "latest": str(self.latest),
            "kind": self.kind.value,
            "has_update": self.has_update,
            "files_to_update": list(self.files_to_update),
            "files_to_preserve": list(self.files_to_preserve),
            "files_to_merge": list(self.files_to_merge),
            "migrations": [migration.to_dict() for migration in self.migrations],
            "source": self.source,
        }


@dataclass(slots=True)
class UpgradeContext:
    """State threaded through every step of one upgrade run."""

    options: UpgradeOptions
    install_dir: Path
    resolved: ResolvedSource | None = None
    preview: UpgradePreview | None = None
    backup: BackupInfo | None = None
    merge_stats: merge.MergeStats | None = None
    migration_report: MigrationReport | None = None
    history: list[UpgradeState] = field(default_factory=list)
    on_transition: Callable[[UpgradeState, UpgradeContext], None] | None = None

    @property
    def state(self) -> UpgradeState | None:
        return self.history[-1] if self.history else None

    def advance(self, state: UpgradeState) -> None:
        """Record a transition into *state*."""
        logger.debug("Upgrade state: %s", state.value)
        self.history.append(state)
        if self.on_transition is not None:
            self.on_transition(state, self)


@dataclass(slots=True)
class UpgradeOutcome:
    """Result of :meth:`UpgradeOrchestrator.upgrade`."""

    status: str
    preview: UpgradePreview | None = None
    from_version: Version | None = None
    to_version: Version | None = None
    backup_path: Path | None = None
    source: str | None = None
    stage: str | None = None
    error: GsdctlError | None = None
    rollback: str | None = None
    rollback_error: str | None = None
    recovery_steps: list[str] = field(default_factory=list)
    states: list[UpgradeState] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status != "failure"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "status": self.status,
            "states": [state.value for state in self.states],
        }
        if self.preview is not None:
            payload["preview"] = self.preview.to_dict()
        if self.from_version is not None:
            payload["from"] = str(self.from_version)
        if self.to_version is not None:
            payload["to"] = str(self.to_version)
        if self.backup_path is not None:
            payload["backup_path"] = str(self.backup_path)
        if self.source is not None:
            payload["source"] = self.source
        if self.status == "failure":
            payload["stage"] = self.stage
            payload["error"] = str(self.error) if self.error else None
            payload["rollback"] = self.rollback
            if self.rollback_error:
                payload["rollback_error"] = self.rollback_error
            if self.recovery_steps:
                payload["recovery_steps"] = list(self.recovery_steps)
        if self.notes:
            payload["notes"] = list(self.notes)
        return payload


class UpgradeOrchestrator:
    """Coordinate source acquisition, backup, merge, migrations and validation."""

    def __init__(
        self,
        *,
        install_dir: Path,
        resolver: VersionResolver,
        acquirer: SourceAcquirer,
        backups: BackupManager,
        migrations: MigrationRunner,
        npm_bin: str = "npm",
        skip_dependency_install: bool = False,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.install_dir = install_dir
        self.resolver = resolver
        self.acquirer = acquirer
        self.backups = backups
        self.migrations = migrations
        self.npm_bin = npm_bin
        self.skip_dependency_install = skip_dependency_install

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        env: Mapping[str, str] | None = None,
    ) -> UpgradeOrchestrator:
        """Build an orchestrator from resolved configuration."""
        resolver = VersionResolver(
            package_name=config.package_name,
            registry_url=config.registry.url,
            timeout=config.registry.timeout,
        )
        acquirer = SourceAcquirer(
            resolver,
            install_dir=config.install_dir,
            local_candidates=config.local_candidates,
            env=env,
            npm_bin=config.npm_bin,
        )
        return cls(
            install_dir=config.install_dir,
            resolver=resolver,
            acquirer=acquirer,
            backups=BackupManager(config.backups.root, exclude=config.backups.exclude),
            migrations=MigrationRunner.from_file(config.migrations_file),
            npm_bin=config.npm_bin,
            skip_dependency_install=config.skip_dependency_install,
        )

    # Preview -------------------------------------------------------
    def preview(self, ctx: UpgradeContext) -> UpgradePreview:
        """Describe the upgrade from the installed version to ``ctx.resolved``."""
        if ctx.resolved is None:
            raise GsdctlError(
                "Cannot preview an upgrade before a source is resolved", stage="preview"
            )
        current = self.resolver.current_version(self.install_dir)
        if current is None:
            raise GsdctlError(
                "Could not determine the installed version from "
                f"{self.install_dir / MANIFEST_NAME}",
                stage="preview",
            )
        latest = ctx.resolved.version
        kind = current.diff(latest)
        if kind is UpdateKind.NONE:
            return UpgradePreview(current, latest, kind, source=ctx.resolved.kind)
        file_plan = merge.plan(ctx.resolved.path)
        return UpgradePreview(
            current=current,
            latest=latest,
            kind=kind,
            files_to_update=tuple(file_plan.to_update),
            files_to_preserve=tuple(file_plan.to_preserve),
            files_to_merge=tuple(file_plan.to_merge),
            migrations=tuple(self.migrations.applicable(current, latest)),
            source=ctx.resolved.kind,
        )

    # Upgrade -------------------------------------------------------
    def upgrade(
        self,
        options: UpgradeOptions,
        *,
        on_transition: Callable[[UpgradeState, UpgradeContext], None] | None = None,
    ) -> UpgradeOutcome:
        """Run the full upgrade pipeline for *options*."""
        ctx = UpgradeContext(
            options=options,
            install_dir=self.install_dir,
            on_transition=on_transition,
        )
        ctx.advance(UpgradeState.INIT)
        explicit = options.explicit_source(self.resolver.package_name)
        resolved = self.acquirer.resolve(explicit, version=options.version)
        ctx.resolved = resolved
        ctx.advance(UpgradeState.SOURCE_RESOLVED)
        try:
            return self._run(ctx, resolved)
        finally:
            resolved.cleanup()

    def _run(self, ctx: UpgradeContext, resolved: ResolvedSource) -> UpgradeOutcome:
        preview = self.preview(ctx)
        ctx.preview = preview
        ctx.advance(UpgradeState.PREVIEWED)

        if not preview.has_update:
            ctx.advance(UpgradeState.COMPLETE)
            return self._outcome(ctx, "up-to-date")
        if ctx.options.dry_run:
            ctx.advance(UpgradeState.DRY_RUN_DONE)
            return self._outcome(ctx, "dry-run-preview")
        if not ctx.options.force:
            ctx.advance(UpgradeState.NEEDS_CONFIRMATION)
            return self._outcome(ctx, "needs-confirmation")
        ctx.advance(UpgradeState.CONFIRMED)

        backup = self._create_backup(preview.current)
        ctx.backup = backup
        ctx.advance(UpgradeState.BACKED_UP)

        try:
            ctx.merge_stats = merge.apply(resolved.path, self.install_dir, backup.path)
            ctx.advance(UpgradeState.MERGED)
            ctx.migration_report = self.migrations.run(
                preview.current, preview.latest, target_dir=self.install_dir
            )
            ctx.advance(UpgradeState.MIGRATED)
            self._validate_installation(preview.latest)
            ctx.advance(UpgradeState.VALIDATED)
            self._install_dependencies()
            ctx.advance(UpgradeState.DEPS_INSTALLED)
        except GsdctlError as exc:
            return self._rollback(ctx, backup, exc)
        except (OSError, shutil.Error, DocumentError) as exc:
            return self._rollback(ctx, backup, GsdctlError(str(exc), stage=_stage_after(ctx)))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error during upgrade")
            wrapped = GsdctlError(
                f"Unexpected {type(exc).__name__}: {exc}",
                stage=_stage_after(ctx),
                context={"exception": type(exc).__name__},
            )
            return self._rollback(ctx, backup, wrapped)

        ctx.advance(UpgradeState.COMPLETE)
        logger.info(
            "Upgraded %s -> %s (backup %s)", preview.current, preview.latest, backup.path
        )
        return self._outcome(ctx, "success")

    def _create_backup(self, current: Version) -> BackupInfo:
        info = self.backups.create(self.install_dir, version=str(current))
        validation = self.backups.validate(info.path)
        if not validation.valid:
            numbered = "\n".join(
                f"  {index}. {error}" for index, error in enumerate(validation.errors, 1)
            )
            raise BackupValidationFailed(
                f"Backup validation failed for {info.path}:\n{numbered}",
                errors=validation.errors,
                backup_path=info.path,
            )
        return info

    def _validate_installation(self, expected: Version) -> None:
        try:
            manifest = read_manifest(self.install_dir)
        except DocumentError as exc:
            raise VersionMismatchAfterUpgrade(
                f"Cannot read upgraded manifest: {exc}",
                context={"expected": str(expected)},
            ) from exc
        found = parse_version(manifest.get("version"))
        if found != expected:
            raise VersionMismatchAfterUpgrade(
                f"Version mismatch after upgrade: expected {expected}, "
                f"got {manifest.get('version')!r}",
                context={"expected": str(expected), "found": manifest.get("version")},
            )
        missing = [name for name in REQUIRED_SOURCE_DIRS if not (self.install_dir / name).is_dir()]
        if missing:
            raise VersionMismatchAfterUpgrade(
                f"Upgraded installation {self.install_dir} is missing: {', '.join(missing)}",
                context={"missing": missing},
            )

    def _install_dependencies(self) -> None:
        if self.skip_dependency_install:
            logger.info("Skipping dependency install")
            return
        cmd = [self.npm_bin, "install"]
        try:
            result = self._run_install_command(self.install_dir, cmd)
        except OSError as exc:
            raise DependencyInstallFailed(f"Failed to start {self.npm_bin}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip().splitlines()[-5:]
            raise DependencyInstallFailed(
                f"`{' '.join(cmd)}` exited with status {result.returncode} in {self.install_dir}"
                + (":\n" + "\n".join(detail) if detail else ""),
                context={"returncode": result.returncode},
            )

    def _run_install_command(
        self,
        cwd: Path,
        cmd: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        """Execute the dependency install command (isolated for testing)."""
        return subprocess.run(  # noqa: S603,S607
            list(cmd),
            cwd=str(cwd),
            check=False,
            capture_output=True,
            text=True,
            env=dict(os.environ),
        )

    # Rollback ------------------------------------------------------
    def _rollback(
        self, ctx: UpgradeContext, backup: BackupInfo, error: GsdctlError
    ) -> UpgradeOutcome:
        backup_path = backup.path
        error.backup_path = backup_path
        logger.error("Upgrade failed at %s: %s", error.stage, error)
        ctx.advance(UpgradeState.ROLLING_BACK)
        try:
            self.backups.restore(backup_path, self.install_dir)
        except (RollbackFailed, RestoreError, BackupValidationFailed) as exc:
            ctx.advance(UpgradeState.ROLLBACK_FAILED)
            logger.error("Rollback from %s failed: %s", backup_path, exc)
            outcome = self._outcome(ctx, "failure", error=error)
            outcome.rollback = "failed"
            outcome.rollback_error = str(exc)
            outcome.recovery_steps = manual_recovery_steps(self.install_dir, backup_path)
            return outcome
        ctx.advance(UpgradeState.ROLLED_BACK)
        logger.info("Rolled back %s from %s", self.install_dir, backup_path)
        outcome = self._outcome(ctx, "failure", error=error)
        outcome.rollback = "rolled-back"
        return outcome

    def _outcome(
        self,
        ctx: UpgradeContext,
        status: str,
        *,
        error: GsdctlError | None = None,
    ) -> UpgradeOutcome:
        preview = ctx.preview
        return UpgradeOutcome(
            status=status,
            preview=preview,
            from_version=preview.current if preview else None,
            to_version=preview.latest if preview else None,
            backup_path=ctx.backup.path if ctx.backup else None,
            source=ctx.resolved.source.describe() if ctx.resolved else None,
            stage=error.stage if error else None,
            error=error,
            states=list(ctx.history),
            notes=list(ctx.resolved.notes) if ctx.resolved else [],
        )


__all__ = [
    "SOURCE_CHOICES",
    "UpgradeContext",
    "UpgradeOptions",
    "UpgradeOrchestrator",
    "UpgradeOutcome",
    "UpgradePreview",
    "UpgradeState",
]

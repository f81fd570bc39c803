"""Error taxonomy shared by the upgrade engine.

Every error carries the pipeline ``stage`` it was raised from and, once a
backup exists, the ``backup_path`` the user needs for recovery. Errors raised
before a backup is taken never carry a backup path because nothing was
mutated.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from .exit_codes import ExitCode


class GsdctlError(RuntimeError):
    """Base class for upgrade engine failures."""

    stage = "unknown"
    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        backup_path: Path | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record *message* with optional stage, backup path and context."""
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.backup_path = backup_path
        self.context: dict[str, object] = dict(context or {})

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "type": type(self).__name__,
            "stage": self.stage,
            "message": str(self),
        }
        if self.backup_path is not None:
            payload["backup_path"] = str(self.backup_path)
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class SourceUnavailable(GsdctlError):
    """No upgrade source could be reached (network, timeout, nothing local)."""

    stage = "source"
    exit_code = ExitCode.ENVIRONMENT

    def __init__(
        self,
        message: str,
        *,
        tried: Sequence[Path] = (),
        reason: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Record the candidate paths that were tried."""
        super().__init__(message, **kwargs)
        self.tried = [Path(path) for path in tried]
        self.reason = reason


class InvalidSource(GsdctlError):
    """A source failed structural validation and must not be used."""

    stage = "source"
    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        path: Path,
        problems: Sequence[str] = (),
        **kwargs: Any,
    ) -> None:
        """Record the rejected *path* and the validation problems."""
        super().__init__(message, **kwargs)
        self.path = path
        self.problems = list(problems)


class BackupCreationFailed(GsdctlError):
    """Creating a backup failed; nothing was mutated."""

    stage = "backup"
    exit_code = ExitCode.PROVIDER


class BackupValidationFailed(GsdctlError):
    """A backup did not pass validation and cannot be trusted."""

    stage = "backup"
    exit_code = ExitCode.VALIDATION

    def __init__(self, message: str, *, errors: Sequence[str] = (), **kwargs: Any) -> None:
        """Record the individual validation errors."""
        super().__init__(message, **kwargs)
        self.errors = list(errors)


class RestoreError(GsdctlError):
    """A restore failed but the previous target state was recovered."""

    stage = "restore"
    exit_code = ExitCode.PROVIDER


class MergeRejected(GsdctlError):
    """A merged document violated its schema; no bytes were written."""

    stage = "merge"
    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        path: str,
        violations: Sequence[str] = (),
        user_changes: Sequence[str] = (),
        **kwargs: Any,
    ) -> None:
        """Record the schema violations and the user changes that were attempted."""
        super().__init__(message, **kwargs)
        self.path = path
        self.violations = list(violations)
        self.user_changes = list(user_changes)


class MigrationFailed(GsdctlError):
    """A migration raised; later migrations were not attempted."""

    stage = "migrate"
    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        migration_id: str,
        completed: int,
        total: int,
        **kwargs: Any,
    ) -> None:
        """Record the failing migration and the progress made before it."""
        super().__init__(message, **kwargs)
        self.migration_id = migration_id
        self.completed = completed
        self.total = total

    @property
    def remaining(self) -> int:
        """Return how many migrations were not run (including the failed one)."""
        return self.total - self.completed


class VersionMismatchAfterUpgrade(GsdctlError):
    """The upgraded installation does not declare the expected version."""

    stage = "validate"
    exit_code = ExitCode.PROVIDER


class DependencyInstallFailed(GsdctlError):
    """Installing the toolkit's dependencies returned a non-zero exit status."""

    stage = "dependencies"
    exit_code = ExitCode.PROVIDER


class RollbackFailed(GsdctlError):
    """Restoring the pre-upgrade state failed; manual recovery is required."""

    stage = "rollback"
    exit_code = ExitCode.RECOVERY_REQUIRED


def manual_recovery_steps(install_dir: Path, backup_path: Path) -> list[str]:
    """Return explicit recovery instructions for a failed rollback."""
    return [
        f"Remove the corrupted installation: rm -rf {install_dir}",
        f"Copy the backup into place: cp -a {backup_path} {install_dir}",
        f"Delete the copied metadata file: rm {install_dir / 'backup-metadata.json'}",
        f"Reinstall dependencies: (cd {install_dir} && npm install)",
    ]


__all__ = [
    "BackupCreationFailed",
    "BackupValidationFailed",
    "DependencyInstallFailed",
    "GsdctlError",
    "InvalidSource",
    "MergeRejected",
    "MigrationFailed",
    "RestoreError",
    "RollbackFailed",
    "SourceUnavailable",
    "VersionMismatchAfterUpgrade",
    "manual_recovery_steps",
]

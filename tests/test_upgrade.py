"""Tests for the upgrade orchestrator state machine."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
from conftest import read_json, write_toolkit

from gsdctl.backups import BackupManager
from gsdctl.errors import (
    InvalidSource,
    MergeRejected,
    RestoreError,
    VersionMismatchAfterUpgrade,
)
from gsdctl.exit_codes import ExitCode
from gsdctl.migrations import Migration, MigrationContext, MigrationRunner
from gsdctl.sources import SourceAcquirer
from gsdctl.upgrade import UpgradeOptions, UpgradeOrchestrator, UpgradeState
from gsdctl.versions import LocalSource, RegistrySource, Version, VersionResolver


def _orchestrator(
    tmp_path: Path,
    install: Path,
    *,
    migrations: MigrationRunner | None = None,
) -> UpgradeOrchestrator:
    resolver = VersionResolver(package_name="gsd-for-tabnine", registry_url="https://registry.test")
    return UpgradeOrchestrator(
        install_dir=install,
        resolver=resolver,
        acquirer=SourceAcquirer(resolver, install_dir=install, local_candidates=(), env={}),
        backups=BackupManager(tmp_path / "backups"),
        migrations=migrations or MigrationRunner(),
    )


def _installer(calls: list[tuple[Path, list[str]]], returncode: int = 0, stderr: str = ""):
    def run(cwd: Path, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        calls.append((cwd, list(cmd)))
        return subprocess.CompletedProcess(list(cmd), returncode, stdout="", stderr=stderr)

    return run


def _snapshot(root: Path) -> dict[str, bytes]:
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def installed(tmp_path: Path) -> Path:
    return write_toolkit(
        tmp_path / "gsd",
        "1.0.0",
        config={"version": "1.0.0", "theme": "dark", "mode": "interactive"},
        files={".planning/STATE.md": "phase 2 in progress\n"},
    )


@pytest.fixture
def incoming(tmp_path: Path) -> Path:
    return write_toolkit(tmp_path / "gsd-1.2.0", "1.2.0")


def test_options_resolve_explicit_sources(tmp_path: Path) -> None:
    assert UpgradeOptions(local_path=tmp_path).explicit_source("gsd") == LocalSource(tmp_path)
    assert UpgradeOptions(source="registry").explicit_source("gsd") == RegistrySource("gsd")
    assert UpgradeOptions().explicit_source("gsd") is None
    with pytest.raises(ValueError, match="--local-path"):
        UpgradeOptions(source="local").explicit_source("gsd")
    with pytest.raises(ValueError, match="Unknown source"):
        UpgradeOptions(source="ftp").explicit_source("gsd")


def test_up_to_date_completes_without_backup(tmp_path: Path, installed: Path) -> None:
    same = write_toolkit(tmp_path / "same", "1.0.0")
    orchestrator = _orchestrator(tmp_path, installed)

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=same, force=True))

    assert outcome.status == "up-to-date"
    assert outcome.states[-1] is UpgradeState.COMPLETE
    assert orchestrator.backups.list_backups() == []


def test_dry_run_reports_preview_without_mutation(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
) -> None:
    before = _snapshot(installed)
    orchestrator = _orchestrator(tmp_path, installed)

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, dry_run=True, force=True))

    assert outcome.status == "dry-run-preview"
    assert outcome.preview is not None
    assert outcome.preview.latest == Version(1, 2, 0)
    assert outcome.preview.files_to_merge == (".gsd-config.json",)
    assert [m.id for m in outcome.preview.migrations] == [
        "config-schema-version",
        "config-drop-deprecated-keys",
    ]
    assert _snapshot(installed) == before
    assert orchestrator.backups.list_backups() == []


def test_unforced_upgrade_needs_confirmation(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
) -> None:
    before = _snapshot(installed)
    orchestrator = _orchestrator(tmp_path, installed)

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming))

    assert outcome.status == "needs-confirmation"
    assert outcome.states[-1] is UpgradeState.NEEDS_CONFIRMATION
    assert _snapshot(installed) == before


def test_successful_upgrade_walks_every_state(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    orchestrator = _orchestrator(tmp_path, installed)
    calls: list[tuple[Path, list[str]]] = []
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer(calls))
    seen: list[UpgradeState] = []

    outcome = orchestrator.upgrade(
        UpgradeOptions(local_path=incoming, force=True),
        on_transition=lambda state, ctx: seen.append(state),
    )

    assert outcome.status == "success"
    assert seen == outcome.states == [
        UpgradeState.INIT,
        UpgradeState.SOURCE_RESOLVED,
        UpgradeState.PREVIEWED,
        UpgradeState.CONFIRMED,
        UpgradeState.BACKED_UP,
        UpgradeState.MERGED,
        UpgradeState.MIGRATED,
        UpgradeState.VALIDATED,
        UpgradeState.DEPS_INSTALLED,
        UpgradeState.COMPLETE,
    ]
    assert calls == [(installed, ["npm", "install"])]
    assert read_json(installed / "package.json")["version"] == "1.2.0"
    config = read_json(installed / ".gsd-config.json")
    assert config["version"] == "1.2.0"
    assert config["theme"] == "dark"
    assert config["schemaVersion"] == 2
    assert (installed / ".planning" / "STATE.md").read_text(encoding="utf-8") == (
        "phase 2 in progress\n"
    )
    assert outcome.backup_path is not None
    assert orchestrator.backups.validate(outcome.backup_path).valid is True
    assert read_json(outcome.backup_path / "package.json")["version"] == "1.0.0"
    payload = outcome.to_dict()
    assert payload["from"] == "1.0.0"
    assert payload["to"] == "1.2.0"


def test_dependency_failure_rolls_back(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    before = _snapshot(installed)
    orchestrator = _orchestrator(tmp_path, installed)
    calls: list[tuple[Path, list[str]]] = []
    monkeypatch.setattr(
        orchestrator, "_run_install_command", _installer(calls, 1, "npm ERR! network")
    )

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.stage == "dependencies"
    assert outcome.rollback == "rolled-back"
    assert outcome.states[-2:] == [UpgradeState.ROLLING_BACK, UpgradeState.ROLLED_BACK]
    assert outcome.error is not None
    assert outcome.error.exit_code == ExitCode.PROVIDER
    assert outcome.error.backup_path == outcome.backup_path
    assert "npm ERR! network" in str(outcome.error)
    assert _snapshot(installed) == before


def test_failed_rollback_reports_manual_recovery(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    orchestrator = _orchestrator(tmp_path, installed)
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer([], 1))

    def broken_restore(path: Path, target: Path, **kwargs: object) -> None:
        raise RestoreError("disk is read-only", backup_path=path)

    monkeypatch.setattr(orchestrator.backups, "restore", broken_restore)

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.rollback == "failed"
    assert outcome.states[-1] is UpgradeState.ROLLBACK_FAILED
    assert outcome.rollback_error == "disk is read-only"
    assert any(str(installed) in step and "rm -rf" in step for step in outcome.recovery_steps)
    assert any(str(outcome.backup_path) in step for step in outcome.recovery_steps)
    assert outcome.to_dict()["recovery_steps"] == outcome.recovery_steps


def test_invalid_source_raises_before_backup(tmp_path: Path, installed: Path) -> None:
    before = _snapshot(installed)
    orchestrator = _orchestrator(tmp_path, installed)

    with pytest.raises(InvalidSource):
        orchestrator.upgrade(UpgradeOptions(local_path=tmp_path / "missing", force=True))

    assert orchestrator.backups.list_backups() == []
    assert _snapshot(installed) == before


def test_rejected_merge_rolls_back(
    tmp_path: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install = write_toolkit(
        tmp_path / "gsd", "1.0.0", config={"version": "1.0.0", "theme": "neon"}
    )
    before = _snapshot(install)
    orchestrator = _orchestrator(tmp_path, install)
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer([]))

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.stage == "merge"
    assert outcome.rollback == "rolled-back"
    assert outcome.error is not None and outcome.error.exit_code == ExitCode.VALIDATION
    assert _snapshot(install) == before


def test_failed_migration_rolls_back(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    before = _snapshot(installed)

    def explode(context: object) -> None:
        raise RuntimeError("cannot rewrite config")

    runner = MigrationRunner(
        [Migration("boom", Version(1, 1, 0), "explode", "explode")],
        implementations={"explode": explode},
    )
    orchestrator = _orchestrator(tmp_path, installed, migrations=runner)
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer([]))

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.stage == "migrate"
    assert outcome.rollback == "rolled-back"
    assert UpgradeState.MIGRATED not in outcome.states
    assert _snapshot(installed) == before


def test_skip_dependency_install(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    orchestrator = _orchestrator(tmp_path, installed)
    orchestrator.skip_dependency_install = True
    calls: list[tuple[Path, list[str]]] = []
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer(calls))

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "success"
    assert calls == []


def _corrupt_manifest(context: MigrationContext) -> None:
    (context.target_dir / "package.json").write_text(
        '{"name": "gsd-for-tabnine", "version": "1.1.9"}\n', encoding="utf-8"
    )


def _drop_templates(context: MigrationContext) -> None:
    shutil.rmtree(context.target_dir / "templates")


@pytest.mark.parametrize(
    ("step", "message"),
    [(_corrupt_manifest, "expected 1.2.0"), (_drop_templates, "missing: templates")],
)
def test_post_upgrade_mismatch_rolls_back(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
    step: Callable[[MigrationContext], None],
    message: str,
) -> None:
    before = _snapshot(installed)
    runner = MigrationRunner(
        [Migration("tamper", Version(1, 1, 0), "tamper", "tamper")],
        implementations={"tamper": step},
    )
    orchestrator = _orchestrator(tmp_path, installed, migrations=runner)
    calls: list[tuple[Path, list[str]]] = []
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer(calls))

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.stage == "validate"
    assert outcome.rollback == "rolled-back"
    assert isinstance(outcome.error, VersionMismatchAfterUpgrade)
    assert message in str(outcome.error)
    assert UpgradeState.VALIDATED not in outcome.states
    assert calls == []
    assert _snapshot(installed) == before


def test_unhashable_user_value_rejects_merge_and_rolls_back(
    tmp_path: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install = write_toolkit(
        tmp_path / "gsd", "1.0.0", config={"version": "1.0.0", "theme": ["dark"]}
    )
    before = _snapshot(install)
    orchestrator = _orchestrator(tmp_path, install)
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer([]))

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.stage == "merge"
    assert outcome.rollback == "rolled-back"
    assert isinstance(outcome.error, MergeRejected)
    assert 'theme: ["dark"]' in outcome.error.user_changes
    assert _snapshot(install) == before


def test_unexpected_error_after_backup_rolls_back(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    before = _snapshot(installed)
    orchestrator = _orchestrator(tmp_path, installed)
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer([]))

    def broken_check(expected: Version) -> None:
        raise TypeError("unhashable type: 'list'")

    monkeypatch.setattr(orchestrator, "_validate_installation", broken_check)

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.status == "failure"
    assert outcome.stage == "validate"
    assert outcome.rollback == "rolled-back"
    assert outcome.states[-2:] == [UpgradeState.ROLLING_BACK, UpgradeState.ROLLED_BACK]
    assert outcome.error is not None
    assert outcome.error.context == {"exception": "TypeError"}
    assert outcome.error.backup_path == outcome.backup_path
    assert _snapshot(installed) == before


def test_rollback_with_backup_root_inside_install(
    tmp_path: Path,
    installed: Path,
    incoming: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    before = _snapshot(installed)
    orchestrator = _orchestrator(tmp_path, installed)
    orchestrator.backups = BackupManager(installed / ".gsd-backups")
    monkeypatch.setattr(orchestrator, "_run_install_command", _installer([], 1))

    outcome = orchestrator.upgrade(UpgradeOptions(local_path=incoming, force=True))

    assert outcome.rollback == "rolled-back"
    assert outcome.backup_path is not None and outcome.backup_path.is_dir()
    after = {
        name: data
        for name, data in _snapshot(installed).items()
        if not name.startswith(".gsd-backups/")
    }
    assert after == before

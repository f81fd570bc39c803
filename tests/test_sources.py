"""Tests for upgrade source acquisition and fallback."""
from __future__ import annotations

import subprocess
import tarfile
from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import write_toolkit

from gsdctl.errors import InvalidSource, SourceUnavailable
from gsdctl.sources import SourceAcquirer, validate_source_tree
from gsdctl.versions import LocalSource, RegistryProbe, RegistrySource, Version, VersionResolver


def _acquirer(
    install_dir: Path,
    *,
    env: dict[str, str] | None = None,
    candidates: Sequence[str] = ("../gsd-upgrade", "../gsd-latest"),
    registry_up: bool = True,
    monkeypatch: pytest.MonkeyPatch | None = None,
) -> SourceAcquirer:
    resolver = VersionResolver(package_name="gsd-for-tabnine", registry_url="https://registry.test")
    if monkeypatch is not None:
        probe = RegistryProbe(True) if registry_up else RegistryProbe(False, "Request timed out")
        monkeypatch.setattr(resolver, "registry_available", lambda: probe)
    return SourceAcquirer(
        resolver,
        install_dir=install_dir,
        local_candidates=candidates,
        env=env or {},
        staging_root=install_dir.parent / "staging",
    )


def _fake_pack(tmp_path: Path, version: str, calls: list[list[str]]):
    """Return a ``_run_pack_command`` replacement that writes a real tarball."""
    package_root = write_toolkit(tmp_path / f"packed-{version}" / "package", version)

    def run(staging_dir: Path, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        calls.append(list(cmd))
        archive = staging_dir / f"gsd-for-tabnine-{version}.tgz"
        with tarfile.open(archive, "w:gz") as handle:
            handle.add(package_root, arcname="package")
        return subprocess.CompletedProcess(list(cmd), 0, stdout=archive.name, stderr="")

    return run


def test_validate_source_tree_lists_every_problem(tmp_path: Path) -> None:
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "package.json").write_text('{"name": "other", "version": "1.0.0"}', encoding="utf-8")

    with pytest.raises(InvalidSource) as excinfo:
        validate_source_tree(broken, "gsd-for-tabnine")

    problems = excinfo.value.problems
    assert any("expected 'gsd-for-tabnine'" in problem for problem in problems)
    assert "missing scripts/ directory" in problems
    assert "missing templates/ directory" in problems
    assert "missing guidelines/ directory" in problems


def test_explicit_local_source_is_validated(tmp_path: Path) -> None:
    install = write_toolkit(tmp_path / "gsd", "1.0.0")
    upgrade = write_toolkit(tmp_path / "elsewhere", "1.1.0")

    resolved = _acquirer(install).resolve(LocalSource(upgrade))

    assert resolved.kind == "local"
    assert resolved.version == Version(1, 1, 0)
    assert resolved.path == upgrade


def test_explicit_invalid_local_source_raises(tmp_path: Path) -> None:
    install = write_toolkit(tmp_path / "gsd", "1.0.0")
    with pytest.raises(InvalidSource):
        _acquirer(install).resolve(LocalSource(tmp_path / "missing"))


def test_candidate_paths_put_environment_override_first(tmp_path: Path) -> None:
    install = tmp_path / "project" / "gsd"
    override = tmp_path / "custom-upgrade"

    paths = _acquirer(install, env={"GSD_UPGRADE_PATH": str(override)}).candidate_paths()

    assert paths == [
        override,
        tmp_path / "project" / "gsd-upgrade",
        tmp_path / "project" / "gsd-latest",
    ]


def test_unreachable_registry_falls_back_to_local(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A registry timeout resolves to the first valid local candidate."""
    install = write_toolkit(tmp_path / "gsd", "1.0.0")
    write_toolkit(tmp_path / "gsd-latest", "1.2.0")
    acquirer = _acquirer(install, registry_up=False, monkeypatch=monkeypatch)

    resolved = acquirer.resolve()

    assert resolved.kind == "local"
    assert resolved.path == tmp_path / "gsd-latest"
    assert resolved.version == Version(1, 2, 0)


def test_registry_fetch_extracts_into_staging(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install = write_toolkit(tmp_path / "gsd", "1.0.0")
    acquirer = _acquirer(install, monkeypatch=monkeypatch)
    calls: list[list[str]] = []
    monkeypatch.setattr(acquirer, "_run_pack_command", _fake_pack(tmp_path, "1.3.0", calls))

    resolved = acquirer.resolve(version="1.3.0")

    assert calls == [["npm", "pack", "gsd-for-tabnine@1.3.0"]]
    assert resolved.kind == "registry"
    assert resolved.version == Version(1, 3, 0)
    assert resolved.staging_dir is not None
    assert resolved.path.is_relative_to(resolved.staging_dir)
    assert not resolved.path.is_relative_to(install)

    staging = resolved.staging_dir
    resolved.cleanup()
    assert not staging.exists()


def test_registry_fetch_failure_retries_local(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install = write_toolkit(tmp_path / "gsd", "1.0.0")
    write_toolkit(tmp_path / "gsd-upgrade", "1.1.0")
    acquirer = _acquirer(install, monkeypatch=monkeypatch)

    def failing_pack(staging_dir: Path, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(list(cmd), 1, stdout="", stderr="E404 not found")

    monkeypatch.setattr(acquirer, "_run_pack_command", failing_pack)

    resolved = acquirer.resolve(RegistrySource("gsd-for-tabnine"))

    assert resolved.kind == "local"
    assert resolved.version == Version(1, 1, 0)
    assert any("E404" in note for note in resolved.notes)
    assert list((tmp_path / "staging").iterdir()) == []


def test_no_source_anywhere_names_every_path(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install = write_toolkit(tmp_path / "gsd", "1.0.0")
    override = tmp_path / "override"
    acquirer = _acquirer(
        install,
        env={"GSD_UPGRADE_PATH": str(override)},
        registry_up=False,
        monkeypatch=monkeypatch,
    )

    with pytest.raises(SourceUnavailable) as excinfo:
        acquirer.resolve()

    message = str(excinfo.value)
    assert "Request timed out" in message
    for path in (override, tmp_path / "gsd-upgrade", tmp_path / "gsd-latest"):
        assert str(path) in message
    assert excinfo.value.tried == [override, tmp_path / "gsd-upgrade", tmp_path / "gsd-latest"]

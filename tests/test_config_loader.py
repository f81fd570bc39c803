"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from gsdctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.install_dir == Path("gsd")
    assert config.package_name == "gsd-for-tabnine"
    assert config.migrations_file is None
    assert config.local_candidates == ("../gsd-upgrade", "../gsd-latest", "../gsd-for-tabnine")
    assert config.registry.url == "https://registry.npmjs.org"
    assert config.registry.timeout == 3.0
    assert config.backups.root == Path(".gsd-backups")
    assert config.backups.exclude == ("node_modules",)
    assert config.skip_dependency_install is False


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "gsdctl.yml"
    cfg.write_text(
        "install_dir: {install}\n"
        "registry:\n"
        "  url: https://npm.example.test/\n"
        "  timeout: 10\n"
        "backups:\n"
        "  exclude:\n"
        "    - .cache/\n"
        "local_candidates:\n"
        "  - ../mirror\n"
    )
    cfg.write_text(cfg.read_text().format(install=str(tmp_path / "project" / "gsd")))

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.install_dir == tmp_path / "project" / "gsd"
    assert config.registry.url == "https://npm.example.test"
    assert config.registry.timeout == 10.0
    assert config.backups.root == tmp_path / "project" / ".gsd-backups"
    assert config.backups.exclude == ("node_modules", ".cache")
    assert config.local_candidates == ("../mirror",)


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("npm_bin: pnpm\nskip_dependency_install: false\n")
    env = {
        "GSDCTL_CONFIG_FILE": str(cfg),
        "GSDCTL_INSTALL_DIR": str(tmp_path / "gsd"),
        "GSDCTL_REGISTRY__TIMEOUT": "7.5",
        "GSDCTL_BACKUPS__ROOT": str(tmp_path / "bk"),
        "GSDCTL_SKIP_DEPENDENCY_INSTALL": "true",
        "GSDCTL_MIGRATIONS_FILE": str(tmp_path / "migrations.json"),
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.npm_bin == "pnpm"
    assert config.install_dir == tmp_path / "gsd"
    assert config.registry.timeout == 7.5
    assert config.backups.root == tmp_path / "bk"
    assert config.skip_dependency_install is True
    assert config.migrations_file == tmp_path / "migrations.json"


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """Non-mapping YAML raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_backups_keys_raise(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  compression: gzip\n")

    with pytest.raises(ConfigError, match="Unknown backups configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("registry:\n  url: ftp://mirror\n", "http"),
        ("registry:\n  timeout: 0\n", "greater than zero"),
        ("local_candidates:\n  - ''\n", "non-empty"),
        ("skip_dependency_install: maybe\n", "boolean"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})

"""Configuration loader for gsdctl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/gsdctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``GSDCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GSDCTL_REGISTRY__TIMEOUT=5
    export GSDCTL_BACKUPS__ROOT=/var/backups/gsd

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load gsdctl configuration. Install with "
        "`pip install gsdctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "GSDCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_LOCAL_CANDIDATES = ("../gsd-upgrade", "../gsd-latest", "../gsd-for-tabnine")
DEFAULT_BACKUP_EXCLUDES = ("node_modules",)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RegistryConfig:
    """Remote package registry settings."""

    url: str = "https://registry.npmjs.org"
    timeout: float = 3.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"url": self.url, "timeout": self.timeout}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    exclude: tuple[str, ...] = DEFAULT_BACKUP_EXCLUDES

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "exclude": list(self.exclude)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for gsdctl."""

    config_file: Path
    install_dir: Path
    logs_dir: Path
    package_name: str
    migrations_file: Path | None
    local_candidates: tuple[str, ...]
    skip_dependency_install: bool
    npm_bin: str
    registry: RegistryConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "logs_dir": str(self.logs_dir),
            "package_name": self.package_name,
            "migrations_file": str(self.migrations_file) if self.migrations_file else None,
            "local_candidates": list(self.local_candidates),
            "skip_dependency_install": self.skip_dependency_install,
            "npm_bin": self.npm_bin,
            "registry": self.registry.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/gsdctl/config.yml",
    "install_dir": "gsd",
    "logs_dir": "~/.local/state/gsdctl/logs",
    "package_name": "gsd-for-tabnine",
    "migrations_file": None,  # bundled registry when absent
    "local_candidates": list(DEFAULT_LOCAL_CANDIDATES),
    "skip_dependency_install": False,
    "npm_bin": "npm",
    "registry": {
        "url": "https://registry.npmjs.org",
        "timeout": 3.0,
    },
    "backups": {
        "root": None,  # derived from install_dir when absent
        "exclude": list(DEFAULT_BACKUP_EXCLUDES),
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    registry = raw.get("registry")
    if registry is not None:
        registry_map = _as_dict(registry, "registry")
        unknown = set(registry_map.keys()) - {"url", "timeout"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown registry configuration keys: {joined}.")
        url = registry_map.get("url")
        if url is not None and not str(url).startswith(("http://", "https://")):
            raise ConfigError(f"registry.url must be an http(s) URL. Got {url!r}.")

    backups = raw.get("backups")
    if backups is not None:
        backups_map = _as_dict(backups, "backups")
        unknown = set(backups_map.keys()) - {"root", "exclude"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown backups configuration keys: {joined}.")

    candidates = raw.get("local_candidates")
    if candidates is not None:
        for index, entry in enumerate(_as_sequence(candidates, "local_candidates")):
            if not isinstance(entry, str) or not entry.strip():
                raise ConfigError(f"local_candidates[{index}] must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))

    migrations_value = raw.get("migrations_file")
    migrations_file: Path | None = None
    if isinstance(migrations_value, (str, Path)):
        if str(migrations_value).strip():
            migrations_file = _to_path(migrations_value)
    elif migrations_value is not None:
        raise ConfigError("migrations_file must be a string, Path, or null.")

    candidates = tuple(
        str(entry).strip()
        for entry in _as_sequence(raw.get("local_candidates", []), "local_candidates")
    )

    registry_mapping = _as_dict(raw.get("registry"), "registry")
    registry = RegistryConfig(
        url=str(registry_mapping.get("url", "https://registry.npmjs.org")).rstrip("/"),
        timeout=_expect_positive_float(
            registry_mapping.get("timeout"), "registry.timeout", default=3.0
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    backups_root = (
        _to_path(backups_root_value)
        if backups_root_value
        else install_dir.parent / ".gsd-backups"
    )
    exclude_raw = backups_mapping.get("exclude")
    exclude: tuple[str, ...] = DEFAULT_BACKUP_EXCLUDES
    if exclude_raw is not None:
        entries = [
            str(item).strip().strip("/")
            for item in _as_sequence(exclude_raw, "backups.exclude")
        ]
        exclude = tuple(dict.fromkeys([*DEFAULT_BACKUP_EXCLUDES, *filter(None, entries)]))

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        logs_dir=logs_dir,
        package_name=str(raw.get("package_name", "gsd-for-tabnine")),
        migrations_file=migrations_file,
        local_candidates=candidates,
        skip_dependency_install=_expect_bool(
            raw.get("skip_dependency_install"), "skip_dependency_install", default=False
        ),
        npm_bin=str(raw.get("npm_bin", "npm")),
        registry=registry,
        backups=BackupConfig(root=backups_root, exclude=exclude),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "RegistryConfig",
    "load_config",
]

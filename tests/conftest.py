"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import pytest

PACKAGE_NAME = "gsd-for-tabnine"


def write_toolkit(
    root: Path,
    version: str,
    *,
    config: Mapping[str, object] | None = None,
    files: Mapping[str, str] | None = None,
    name: str = PACKAGE_NAME,
) -> Path:
    """Create a minimal toolkit tree at *root* and return it."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "package.json").write_text(
        json.dumps({"name": name, "version": version}, indent=2) + "\n",
        encoding="utf-8",
    )
    document = {"version": version, "theme": "light", "mode": "interactive"}
    if config is not None:
        document = dict(config)
    (root / ".gsd-config.json").write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    defaults = {
        "scripts/index.js": f"// toolkit {version}\n",
        "templates/PROJECT.md": f"# Project template {version}\n",
        "guidelines/react.md": f"# React guideline {version}\n",
        "README.md": f"GSD for Tabnine {version}\n",
    }
    for relative, content in {**defaults, **dict(files or {})}.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def read_json(path: Path) -> dict[str, object]:
    """Return the JSON document at *path*."""
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture(autouse=True)
def _isolate_upgrade_path(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's GSD_UPGRADE_PATH from leaking into tests."""
    monkeypatch.delenv("GSD_UPGRADE_PATH", raising=False)

"""JSON document helpers with atomic write semantics.

Manifests (``package.json``), the toolkit configuration (``.gsd-config.json``),
backup metadata and the migration registry are all JSON documents. Writes go
through a temporary file in the destination directory followed by
:func:`os.replace`, so readers see either the full new content or the old one.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

MANIFEST_NAME = "package.json"


class DocumentError(RuntimeError):
    """Raised when a JSON document cannot be read or written."""


def read_json(path: Path, *, label: str | None = None) -> dict[str, Any]:
    """Return the JSON object stored at *path*."""
    name = label or str(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise DocumentError(f"File not found: {name}") from exc
    except OSError as exc:
        raise DocumentError(f"Failed to read {name}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DocumentError(f"Invalid JSON in {name}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise DocumentError(f"{name} must contain a JSON object.")
    return dict(data)


def dump_json(payload: Mapping[str, object]) -> str:
    """Serialise *payload* the way gsdctl writes documents to disk."""
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(path: Path, payload: Mapping[str, object]) -> None:
    """Atomically persist *payload* to *path*."""
    write_text_atomic(path, dump_json(payload))


def write_text_atomic(path: Path, content: str) -> None:
    """Atomically replace *path* with *content*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        if path.exists():
            os.chmod(tmp_path, path.stat().st_mode & 0o777)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise DocumentError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def read_manifest(directory: Path) -> dict[str, Any]:
    """Return the ``package.json`` manifest stored in *directory*."""
    return read_json(directory / MANIFEST_NAME)


__all__ = [
    "DocumentError",
    "MANIFEST_NAME",
    "dump_json",
    "read_json",
    "read_manifest",
    "write_json_atomic",
    "write_text_atomic",
]

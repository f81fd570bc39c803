"""Built-in migration steps.

Each step is a plain function taking a :class:`MigrationContext`. Steps are
registered in :data:`IMPLEMENTATIONS` under the key the registry document
refers to; nothing is imported dynamically by path.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..documents import read_json, write_json_atomic
from ..merge import CONFIG_NAME

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
DEPRECATED_CONFIG_KEYS = ("autoUpdate", "legacyTemplates", "researchProvider")


@dataclass(frozen=True, slots=True)
class MigrationContext:
    """What a migration step may touch."""

    target_dir: Path
    dry_run: bool = False

    @property
    def config_path(self) -> Path:
        return self.target_dir / CONFIG_NAME

    def read_config(self) -> dict[str, Any] | None:
        """Return the toolkit config document, or ``None`` when absent."""
        if not self.config_path.exists():
            return None
        return read_json(self.config_path, label=CONFIG_NAME)

    def write_config(self, document: dict[str, Any]) -> None:
        write_json_atomic(self.config_path, document)


def add_config_schema_version(context: MigrationContext) -> None:
    """Stamp ``schemaVersion`` into the config document."""
    document = context.read_config()
    if document is None:
        logger.info("No %s in %s; nothing to stamp", CONFIG_NAME, context.target_dir)
        return
    current = document.get("schemaVersion")
    if isinstance(current, int) and not isinstance(current, bool):
        if current >= CURRENT_SCHEMA_VERSION:
            return
    document["schemaVersion"] = CURRENT_SCHEMA_VERSION
    context.write_config(document)


def drop_deprecated_config_keys(context: MigrationContext) -> None:
    """Remove keys the toolkit no longer reads."""
    document = context.read_config()
    if document is None:
        return
    removed = [key for key in DEPRECATED_CONFIG_KEYS if key in document]
    if not removed:
        return
    for key in removed:
        del document[key]
    context.write_config(document)
    logger.info("Removed deprecated config keys: %s", ", ".join(removed))


MigrationStep = Callable[[MigrationContext], None]

IMPLEMENTATIONS: dict[str, MigrationStep] = {
    "add-config-schema-version": add_config_schema_version,
    "drop-deprecated-config-keys": drop_deprecated_config_keys,
}


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DEPRECATED_CONFIG_KEYS",
    "IMPLEMENTATIONS",
    "MigrationContext",
    "MigrationStep",
    "add_config_schema_version",
    "drop_deprecated_config_keys",
]

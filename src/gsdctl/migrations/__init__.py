"""Version-to-version migrations for the toolkit installation."""
from __future__ import annotations

from .runner import (
    Migration,
    MigrationRegistryError,
    MigrationReport,
    MigrationResult,
    MigrationRunner,
    load_migrations,
)
from .steps import IMPLEMENTATIONS, MigrationContext

__all__ = [
    "IMPLEMENTATIONS",
    "Migration",
    "MigrationContext",
    "MigrationRegistryError",
    "MigrationReport",
    "MigrationResult",
    "MigrationRunner",
    "load_migrations",
]

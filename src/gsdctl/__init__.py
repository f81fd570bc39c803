"""gsdctl package bootstrap.

Upgrade, backup and migration tooling for an installed GSD for Tabnine
toolkit. The version is duplicated in ``pyproject.toml``.
"""
from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"

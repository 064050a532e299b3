"""Shared test fixtures."""

from pathlib import Path

# Seed config shipped with the repo
CONFIG_DIR = Path(__file__).parent.parent / "config"

MIGRATIONS_DIR = Path(__file__).parent.parent / "sean" / "database" / "migrations"

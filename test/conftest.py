"""Pytest configuration for the opsloop test suite."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Generator

import pytest


def _ensure_test_env() -> None:
    """Seed environment variables so settings never reach a real service."""
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("LOG_JSON", "false")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sqlalchemy.orm import sessionmaker  # noqa: E402

from helpers.ops_harness import sqlite_file_engine  # noqa: E402
from ops.data_access import SqlAlchemyOpsStore  # noqa: E402


@pytest.fixture
def sqlite_session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Provide a per-test sqlite session factory; each thread gets its own connection."""
    engine = sqlite_file_engine(tmp_path / "ops.db")
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def store(sqlite_session_factory: sessionmaker) -> SqlAlchemyOpsStore:
    """Provide a store over the per-test database."""
    return SqlAlchemyOpsStore(sqlite_session_factory)

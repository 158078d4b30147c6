"""Database engine, session factory and migration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from config import settings

logger = logging.getLogger(__name__)

_ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"

_session_factory: sessionmaker | None = None


def create_session_factory(url: str | None = None, *, echo: bool | None = None) -> sessionmaker:
    """Create a session factory bound to a new engine for ``url``."""
    engine = create_engine(
        url or settings.database.url,
        echo=settings.database.echo if echo is None else echo,
        pool_pre_ping=True,
    )
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session_factory() -> Callable[[], Session]:
    """Return the process-wide session factory built from settings."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory()
    return _session_factory


def run_migrations(url: str | None = None, revision: str = "head") -> None:
    """Upgrade the database schema to ``revision``."""
    alembic_cfg = Config(str(_ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(_ALEMBIC_INI.parent / "alembic"))
    alembic_cfg.attributes["database_url"] = url or settings.database.url
    alembic_cfg.attributes["configure_logger"] = False
    command.upgrade(alembic_cfg, revision)
    logger.info("Database migrations applied: revision=%s", revision)


def check_connection(session_factory: Callable[[], Session] | None = None) -> bool:
    """Check if the database connection is working."""
    factory = session_factory or get_session_factory()
    try:
        with factory() as session:
            session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False

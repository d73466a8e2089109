"""Database setup.

Provides SQLAlchemy engine, session factory, and declarative base.

Defaults to an on-disk SQLite database under ``data/modular_health.db`` at the
repository root, but respects an explicit environment override via
``MHEALTH_DB_URL`` (or ``MHEALTH_DATABASE_URL``) for testing or Postgres.
"""
from __future__ import annotations

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from mhealth_core.config import Settings
from urllib.parse import urlparse

_settings = Settings()

_env_url = os.getenv("MHEALTH_DB_URL") or os.getenv("MHEALTH_DATABASE_URL")
if _env_url:
    # If pointing to a SQLite file, ensure its directory exists
    parsed = urlparse(_env_url)
    if parsed.scheme == "sqlite" and parsed.path and parsed.path != ":memory:":
        _dir = os.path.dirname(parsed.path)
        if _dir:
            os.makedirs(_dir, exist_ok=True)
    DATABASE_URL = _env_url
else:
    _data_dir = _settings.data_dir()
    os.makedirs(_data_dir, exist_ok=True)
    DATABASE_URL = f"sqlite:///{os.path.join(_data_dir, 'modular_health.db')}"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


__all__ = [
    "DATABASE_URL",
    "engine",
    "SessionLocal",
    "Base",
]

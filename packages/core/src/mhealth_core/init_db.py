"""Database initialization helper.

Creates all tables and optional seed data (admin user, starter variables).
"""
from __future__ import annotations
import os
from sqlalchemy.orm import Session
from .db import Base, engine
from .models import User, Variable
from .auth import hash_password

DEFAULT_ADMIN_USER = os.environ.get("MHEALTH_ADMIN_USER", "admin")
DEFAULT_ADMIN_PASS = os.environ.get("MHEALTH_ADMIN_PASS", "admin")

STARTER_VARIABLES = [
    ("Water", "glasses"),
    ("Caffeine", "mg"),
    ("Supplements", None),
    ("Meditation", "min"),
]


def init_db(create_admin: bool = True, seed_variables: bool = True) -> None:
    """Create tables and optional seed records.

    Parameters
    ----------
    create_admin: bool
        If True and no users exist, create an initial admin user with
        environment-provided credentials (MHEALTH_ADMIN_USER/MHEALTH_ADMIN_PASS).
    seed_variables: bool
        If True and the variables table is empty, insert a few common variables.
    """
    Base.metadata.create_all(bind=engine)
    with Session(engine) as session:
        if create_admin and session.query(User).count() == 0:
            session.add(User(username=DEFAULT_ADMIN_USER, password_hash=hash_password(DEFAULT_ADMIN_PASS)))
        if seed_variables and session.query(Variable).count() == 0:
            session.add_all([Variable(label=label, unit=unit) for label, unit in STARTER_VARIABLES])
        session.commit()

if __name__ == "__main__":  # pragma: no cover
    init_db()

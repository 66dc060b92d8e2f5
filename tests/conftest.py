"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_badgelife.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOCAL_BADGES_MODE", "false")

from app.db.base_class import Base
from app.models.user.badge_model import Badge, BadgeSuspicion, UserBadge
from app.models.user.profile_model import Profile


# Ensure the app package is importable when tests run from the repo root.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.append(str(BACKEND_ROOT))


TABLES = [
    Badge.__table__,
    UserBadge.__table__,
    BadgeSuspicion.__table__,
    Profile.__table__,
]


@pytest.fixture()
def engine():
    # StaticPool: les sessions du test et celles de l'adaptateur partagent la même base mémoire
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine, tables=TABLES)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()

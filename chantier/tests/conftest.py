from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chantier.app.api.deps import get_app_settings, get_clock, get_db
from chantier.app.core.clock import FixedClock
from chantier.app.core.config import Settings
from chantier.app.db.base import Base
from chantier.app.db.models.models_v1 import Material, Project
from chantier.app.main import app

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def engine():
    """
    Base SQLite en mémoire, neuve pour chaque test.
    StaticPool : une seule connexion partagée (TestClient tourne dans un autre thread).
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(eng, "connect")
    def _fk_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        # Teardown only: SQLite's implicit row deletion on DROP TABLE trips the
        # self-referencing RESTRICT FK on material_operations.
        with eng.connect() as conn:
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    SessionTest = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionTest()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", clock_skew_seconds=300, conflict_retries=2)


@pytest.fixture
def material(db_session) -> Material:
    mat = Material(name="Ciment CEM II 32.5", unit="sac", cost_per_unit=Decimal("7.90"))
    db_session.add(mat)
    db_session.commit()
    return mat


@pytest.fixture
def project(db_session) -> Project:
    p = Project(name="Résidence Les Tilleuls")
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture
def client(db_session, clock, settings):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_app_settings] = lambda: settings
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()

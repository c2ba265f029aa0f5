"""
Pytest configuration and shared fixtures.

Every test gets a fresh in-memory SQLite database; the API's ``get_db``
dependency is overridden to use it.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DEBUG", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.models import Material, Unit
from app.utils.security import create_access_token

MASTER_ID = 1
OTHER_MASTER_ID = 99


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_headers(user_id, role="MASTER", parent_user_id=None):
    claims = {"sub": str(user_id), "role": role, "username": f"user{user_id}"}
    if parent_user_id is not None:
        claims["parent_user_id"] = parent_user_id
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def auth_headers():
    return make_headers(MASTER_ID)


@pytest.fixture
def child_headers():
    """Child account working inside the master's scope"""
    return make_headers(2, role="STAFF", parent_user_id=MASTER_ID)


@pytest.fixture
def other_owner_headers():
    return make_headers(OTHER_MASTER_ID)


@pytest.fixture
def units(db_session):
    """kg, g, t, box and pcs for the master account"""
    created = {}
    for code, name, unit_type in [
        ("kg", "Kilogram", "basic"),
        ("g", "Gram", "sub"),
        ("t", "Tonne", "basic"),
        ("box", "Box", "basic"),
        ("pcs", "Piece", "sub"),
    ]:
        unit = Unit(owner_id=MASTER_ID, unit_code=code, unit_name=name, unit_type=unit_type)
        db_session.add(unit)
        created[code] = unit
    db_session.commit()
    return {code: unit.unit_id for code, unit in created.items()}


@pytest.fixture
def material(db_session, units):
    item = Material(
        owner_id=MASTER_ID,
        material_code="M-001",
        material_name="Flour",
        base_unit_id=units["kg"],
    )
    db_session.add(item)
    db_session.commit()
    return item.material_id

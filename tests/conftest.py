# tests/conftest.py
import os
import sys

# project root first on sys.path so the package imports without installing it
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# keep the module-level engine off disk
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from slabworks.db import get_session, init_db
from slabworks.models import Material, Remnant


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine):
    from slabworks.api import app

    def _session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_material(session):
    def _make(**overrides) -> Material:
        values = dict(
            name="Blanco Itaunas",
            category="granite",
            sheet_stock=10,
            cost_per_sheet=300.0,
            sale_price_per_sheet=600.0,
            price_per_linear_meter=150.0,
            price_per_square_meter=120.0,
        )
        values.update(overrides)
        material = Material(**values)
        session.add(material)
        session.commit()
        session.refresh(material)
        return material

    return _make


@pytest.fixture
def make_remnant(session):
    def _make(material: Material, area_m2: float, **overrides) -> Remnant:
        remnant = Remnant(material_id=material.id, area_m2=area_m2, **overrides)
        session.add(remnant)
        session.commit()
        session.refresh(remnant)
        return remnant

    return _make

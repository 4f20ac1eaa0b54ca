"""
Shared fixtures for the Taolu Tracker tests.

Every test gets a fresh in-memory SQLite schema and a seeded
reference catalog.
"""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.engine import Base
from database.models_taolu import AgeGroup, DeductionCode, TaoluForm
from taolu_tracker.config import reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.close()


@pytest.fixture
def other_db(engine):
    """A second session on the same database, for interleaved writers."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.close()


@pytest.fixture
def catalog_data(db):
    """One 4-section form, one 2-section form and a handful of codes."""
    juniors = AgeGroup(name="Juniors", min_age=8, max_age=12)
    db.add(juniors)
    db.flush()

    changquan = TaoluForm(name="Changquan", sections_count=4, age_group_id=juniors.id)
    nanquan = TaoluForm(name="Nanquan", sections_count=2, age_group_id=juniors.id)
    retired = TaoluForm(name="Old Form", sections_count=3, is_active=False)
    db.add_all([changquan, nanquan, retired])

    codes = {
        number: DeductionCode(code_number=number, name=name, deduction_amount=1)
        for number, name in [
            ("10", "Bent arm"),
            ("2", "Loss of balance"),
            ("21", "Foot moved"),
            ("3", "Extra support"),
        ]
    }
    db.add_all(codes.values())
    db.commit()

    return SimpleNamespace(
        form=changquan,
        short_form=nanquan,
        retired_form=retired,
        age_group=juniors,
        codes=codes,
    )


@pytest.fixture
def client(db):
    """TestClient bound to the test database session."""
    from api.main import app
    from taolu_tracker.router import get_db

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()

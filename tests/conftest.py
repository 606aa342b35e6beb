import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labqc.config import Settings, get_settings
from labqc.database import get_db, init_db
from labqc.main import app
from labqc.qc.westgard import StatisticalBaseline

@pytest.fixture
def baseline():
    """Target mean 100, SD 5"""
    return StatisticalBaseline(mean=100.0, standard_deviation=5.0, unit="mg/dL")

@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", history_limit=20)

@pytest.fixture
def db_session():
    """In-memory SQLite session with all tables created"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()

@pytest.fixture
def client(db_session, settings):
    """API client bound to the in-memory database"""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

@pytest.fixture
def lot_params():
    return {
        "level_1": {
            "GLU": {"mean": 100.0, "sd": 5.0, "unit": "mg/dL"},
            "UREA": {"mean": 40.0, "sd": 2.0, "unit": "mg/dL"},
            "CHOL": {"mean": 180.0, "sd": 0, "unit": "mg/dL"},
        }
    }

@pytest.fixture
def active_lot(client, lot_params):
    """Equipment with an activated lot LOT123; returns (equipment_id, lot_id)"""
    response = client.post("/api/v1/qc/equipment", json={"name": "Chemistry analyzer", "model": "CX-9"})
    assert response.status_code == 200
    equipment_id = response.json()["equipment_id"]

    response = client.post("/api/v1/qc/lots", json={
        "equipment_id": equipment_id,
        "lot_number": "LOT123",
        "expiration_date": "2030-01-01",
        "qc_params": lot_params,
    })
    assert response.status_code == 200
    lot_id = response.json()["lot_id"]

    response = client.post(f"/api/v1/qc/lots/{lot_id}/activate")
    assert response.status_code == 200
    return equipment_id, lot_id

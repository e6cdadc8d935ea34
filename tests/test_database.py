# tests/test_database.py
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlmodel import select

from clinic_queue.database import get_engine, session_scope
from clinic_queue.errors import Fatal
from clinic_queue.main import app, get_service
from clinic_queue.models import Token
from clinic_queue.services import ClinicService

UNREACHABLE = "sqlite:////nonexistent-dir/clinic.db"


@pytest.fixture
def broken_engine():
    engine = get_engine(UNREACHABLE)
    yield engine
    engine.dispose()


def test_unreachable_store_raises_fatal(broken_engine):
    with pytest.raises(Fatal) as excinfo:
        with session_scope(broken_engine) as db:
            db.exec(select(Token)).all()
    assert excinfo.value.status_code == 500
    assert "Store unavailable" in excinfo.value.message


def test_service_reads_surface_fatal(broken_engine):
    service = ClinicService(broken_engine)
    with pytest.raises(Fatal):
        service.availability(date(2026, 10, 19))


def test_fatal_maps_to_500(broken_engine):
    app.dependency_overrides[get_service] = lambda: ClinicService(broken_engine)
    try:
        response = TestClient(app).get("/api/tokens/today")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 500
    assert response.json()["success"] is False

from collections.abc import Generator

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from dispatch import DispatchCoordinator, ReservationLocks
from main import app


@pytest.fixture
def db():
    """Fresh in-memory MongoDB database per test."""
    database = mongomock.MongoClient()["coco_transport_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def coordinator(db) -> DispatchCoordinator:
    return DispatchCoordinator(db, locks=ReservationLocks())


@pytest.fixture
def create_driver(client):
    counter = {"n": 0}

    def _create(**overrides):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "name": f"Driver {n}",
            "phone": f"+94 77 123 45{n:02d}",
            "email": f"driver{n}@example.com",
            "licenseNumber": f"LIC-{n:04d}",
        }
        data.update(overrides)
        response = client.post("/drivers", json=data)
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def create_vehicle(client):
    counter = {"n": 0}

    def _create(**overrides):
        counter["n"] += 1
        data = {
            "vehicleType": "truck",
            "licensePlate": f"WP-CAB-{counter['n']:04d}",
            "capacity": 10,
        }
        data.update(overrides)
        response = client.post("/vehicles", json=data)
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def job_request():
    """Valid create-job body for a driver/vehicle pair."""

    def _build(driver_id, vehicle_id, **overrides):
        data = {
            "jobType": "collect-waste",
            "startPoint": {"latitude": 6.9271, "longitude": 79.8612},
            "endPoint": {"latitude": 7.2906, "longitude": 80.6337},
            "wasteType": "coconut-husk",
            "quantity": 5,
            "specialRequirements": "Covered truck",
            "assignedDriver": driver_id,
            "assignedVehicle": vehicle_id,
        }
        data.update(overrides)
        return data

    return _build

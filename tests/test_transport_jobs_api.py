"""
API tests for the transport job endpoints and the reservation workflow.
"""

from bson import ObjectId

import pytest


@pytest.fixture
def pair(create_driver, create_vehicle):
    return create_driver(), create_vehicle(capacity=10)


def _create_job(client, job_request, driver, vehicle, **overrides):
    return client.post("/transport-jobs", json=job_request(driver["id"], vehicle["id"], **overrides))


class TestCreateJob:
    def test_create_reserves_driver_and_vehicle(self, client, pair, job_request):
        driver, vehicle = pair
        response = _create_job(client, job_request, driver, vehicle)

        assert response.status_code == 201
        job = response.json()
        assert job["status"] == "pending"
        assert job["quantity"] == 5
        assert job["completedAt"] is None
        assert job["distance"] is None
        assert job["createdAt"]
        assert job["assignedDriver"] == {"id": driver["id"], "name": driver["name"]}
        assert job["assignedVehicle"] == {"id": vehicle["id"], "licensePlate": vehicle["licensePlate"]}

        d = client.get(f"/drivers/{driver['id']}").json()
        v = client.get(f"/vehicles/{vehicle['id']}").json()
        assert d["status"] == "on-duty"
        assert d["vehicleAssigned"]["id"] == vehicle["id"]
        assert d["jobHistory"] == [job["id"]]
        assert v["status"] == "in-use"
        assert v["assignedDriver"]["id"] == driver["id"]
        assert v["jobHistory"] == [job["id"]]

    def test_same_driver_and_vehicle_twice_is_rejected(self, client, pair, job_request):
        driver, vehicle = pair
        assert _create_job(client, job_request, driver, vehicle).status_code == 201

        response = _create_job(client, job_request, driver, vehicle)

        assert response.status_code == 400
        assert response.json() == {"message": "Driver is not available"}
        assert len(client.get("/transport-jobs").json()) == 1

    def test_busy_vehicle_with_free_driver_is_rejected(self, client, pair, create_driver, job_request):
        driver, vehicle = pair
        _create_job(client, job_request, driver, vehicle)

        response = _create_job(client, job_request, create_driver(), vehicle)

        assert response.status_code == 400
        assert response.json()["message"] == "Vehicle is not available"

    @pytest.mark.parametrize("quantity", [10.5, 15, 1000])
    def test_quantity_over_capacity_is_rejected(self, client, pair, job_request, quantity):
        driver, vehicle = pair
        response = _create_job(client, job_request, driver, vehicle, quantity=quantity)

        assert response.status_code == 400
        assert response.json()["message"] == "Vehicle capacity is insufficient for the quantity"
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "available"
        assert client.get(f"/vehicles/{vehicle['id']}").json()["status"] == "available"

    def test_quantity_equal_to_capacity_is_accepted(self, client, pair, job_request):
        driver, vehicle = pair
        assert _create_job(client, job_request, driver, vehicle, quantity=10).status_code == 201

    @pytest.mark.parametrize(
        "field", ["jobType", "startPoint", "endPoint", "wasteType", "quantity", "assignedDriver", "assignedVehicle"]
    )
    def test_missing_required_field(self, client, pair, job_request, field):
        driver, vehicle = pair
        body = job_request(driver["id"], vehicle["id"])
        del body[field]

        response = client.post("/transport-jobs", json=body)

        assert response.status_code == 400
        assert response.json()["message"] == "All required fields must be provided"

    def test_empty_body(self, client):
        response = client.post("/transport-jobs")
        assert response.status_code == 400
        assert response.json()["message"] == "All required fields must be provided"

    @pytest.mark.parametrize(
        "point",
        [
            {"latitude": "north", "longitude": 79.8},
            {"latitude": 6.9},
            {"latitude": 95, "longitude": 79.8},
            {"latitude": 6.9, "longitude": True},
            "6.9,79.8",
        ],
    )
    def test_invalid_coordinates(self, client, pair, job_request, point):
        driver, vehicle = pair
        response = _create_job(client, job_request, driver, vehicle, endPoint=point)

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid coordinates for start or end point"

    def test_numeric_strings_are_accepted(self, client, pair, job_request):
        driver, vehicle = pair
        response = _create_job(
            client, job_request, driver, vehicle,
            startPoint={"latitude": "6.9271", "longitude": "79.8612"},
            quantity="2.5",
        )

        assert response.status_code == 201
        job = response.json()
        assert job["startPoint"] == {"latitude": 6.9271, "longitude": 79.8612}
        assert job["quantity"] == 2.5

    @pytest.mark.parametrize("quantity", [0, -3, "lots"])
    def test_quantity_must_be_positive(self, client, pair, job_request, quantity):
        driver, vehicle = pair
        response = _create_job(client, job_request, driver, vehicle, quantity=quantity)

        assert response.status_code == 400
        assert response.json()["message"] == "Quantity must be a positive number"

    def test_unknown_waste_type(self, client, pair, job_request):
        driver, vehicle = pair
        response = _create_job(client, job_request, driver, vehicle, wasteType="plastic")
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid wasteType"

    def test_unknown_driver(self, client, create_vehicle, job_request):
        vehicle = create_vehicle()
        response = client.post("/transport-jobs", json=job_request(str(ObjectId()), vehicle["id"]))

        assert response.status_code == 404
        assert response.json()["message"] == "Driver not found"

    def test_unknown_vehicle(self, client, create_driver, job_request):
        driver = create_driver()
        response = client.post("/transport-jobs", json=job_request(driver["id"], "not-an-id"))

        assert response.status_code == 404
        assert response.json()["message"] == "Vehicle not found"
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "available"

    def test_checks_run_in_order(self, client, create_driver, create_vehicle, job_request):
        busy = create_driver(status="off-duty")
        small = create_vehicle(capacity=1, status="under-maintenance")

        # driver availability is reported before any vehicle problem
        response = client.post("/transport-jobs", json=job_request(busy["id"], small["id"], quantity=5))
        assert response.json()["message"] == "Driver is not available"

        # vehicle availability is reported before capacity
        response = client.post("/transport-jobs", json=job_request(create_driver()["id"], small["id"], quantity=5))
        assert response.json()["message"] == "Vehicle is not available"


class TestUpdateJob:
    def test_complete_releases_reservations(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.put(f"/transport-jobs/{job['id']}", json={"status": "completed"})

        assert response.status_code == 200
        updated = response.json()
        assert updated["status"] == "completed"
        assert updated["completedAt"]
        d = client.get(f"/drivers/{driver['id']}").json()
        v = client.get(f"/vehicles/{vehicle['id']}").json()
        assert d["status"] == "available"
        assert d["vehicleAssigned"] is None
        assert v["status"] == "available"
        assert v["assignedDriver"] is None
        # history is kept
        assert d["jobHistory"] == [job["id"]]

    def test_cancel_releases_reservations(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.put(f"/transport-jobs/{job['id']}", json={"status": "cancelled"})

        assert response.status_code == 200
        assert response.json()["completedAt"]
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "available"
        assert client.get(f"/vehicles/{vehicle['id']}").json()["status"] == "available"

    def test_released_pair_can_take_a_new_job(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()
        client.put(f"/transport-jobs/{job['id']}", json={"status": "completed"})

        response = _create_job(client, job_request, driver, vehicle)

        assert response.status_code == 201
        d = client.get(f"/drivers/{driver['id']}").json()
        assert d["jobHistory"] == [job["id"], response.json()["id"]]

    def test_in_progress_keeps_reservations(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.put(
            f"/transport-jobs/{job['id']}",
            json={"status": "in-progress", "specialRequirements": "Call on arrival"},
        )

        assert response.status_code == 200
        assert response.json()["specialRequirements"] == "Call on arrival"
        assert response.json()["completedAt"] is None
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "on-duty"

    def test_completed_at_from_patch_is_kept(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.put(
            f"/transport-jobs/{job['id']}",
            json={"status": "completed", "completedAt": "2026-03-01T10:30:00Z"},
        )

        assert response.json()["completedAt"].startswith("2026-03-01T10:30:00")

    def test_terminal_job_cannot_be_reopened(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()
        client.put(f"/transport-jobs/{job['id']}", json={"status": "completed"})

        response = client.put(f"/transport-jobs/{job['id']}", json={"status": "pending"})

        assert response.status_code == 400
        assert response.json()["message"] == "Transport job is already completed"

    def test_assignment_cannot_be_changed(self, client, pair, create_driver, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()
        other = create_driver()

        response = client.put(f"/transport-jobs/{job['id']}", json={"assignedDriver": other["id"]})

        assert response.status_code == 200
        assert response.json()["assignedDriver"]["id"] == driver["id"]

    def test_quantity_change_checks_capacity(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.put(f"/transport-jobs/{job['id']}", json={"quantity": 11})

        assert response.status_code == 400
        assert response.json()["message"] == "Vehicle capacity is insufficient for the quantity"

    def test_invalid_status(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.put(f"/transport-jobs/{job['id']}", json={"status": "done"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid status"

    def test_unknown_job(self, client):
        response = client.put(f"/transport-jobs/{ObjectId()}", json={"status": "completed"})
        assert response.status_code == 404
        assert response.json()["message"] == "Transport job not found"

    def test_invalid_id(self, client):
        response = client.put("/transport-jobs/123", json={"status": "completed"})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid id"

    def test_complete_tolerates_deleted_driver(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()
        client.delete(f"/drivers/{driver['id']}")

        response = client.put(f"/transport-jobs/{job['id']}", json={"status": "completed"})

        assert response.status_code == 200
        assert response.json()["assignedDriver"] is None
        assert client.get(f"/vehicles/{vehicle['id']}").json()["status"] == "available"


class TestDeleteJob:
    @pytest.mark.parametrize("status", ["pending", "in-progress"])
    def test_delete_active_job_releases(self, client, pair, job_request, status):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()
        if status != "pending":
            client.put(f"/transport-jobs/{job['id']}", json={"status": status})

        response = client.delete(f"/transport-jobs/{job['id']}")

        assert response.status_code == 200
        assert response.json() == {"message": "Transport job deleted"}
        assert client.get(f"/transport-jobs/{job['id']}").status_code == 404
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "available"
        assert client.get(f"/vehicles/{vehicle['id']}").json()["status"] == "available"

    def test_delete_finished_job_leaves_resources_alone(self, client, pair, job_request):
        driver, vehicle = pair
        first = _create_job(client, job_request, driver, vehicle).json()
        client.put(f"/transport-jobs/{first['id']}", json={"status": "completed"})
        # the pair is now busy with a second job
        _create_job(client, job_request, driver, vehicle)

        response = client.delete(f"/transport-jobs/{first['id']}")

        assert response.status_code == 200
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "on-duty"
        assert client.get(f"/vehicles/{vehicle['id']}").json()["status"] == "in-use"

    def test_delete_unknown_job(self, client):
        response = client.delete(f"/transport-jobs/{ObjectId()}")
        assert response.status_code == 404


class TestListJobs:
    def test_list_by_status(self, client, create_driver, create_vehicle, job_request):
        ids = []
        for _ in range(3):
            job = client.post(
                "/transport-jobs",
                json=job_request(create_driver()["id"], create_vehicle()["id"]),
            ).json()
            ids.append(job["id"])
        client.put(f"/transport-jobs/{ids[1]}", json={"status": "completed"})

        pending = client.get("/transport-jobs/status/pending").json()
        completed = client.get("/transport-jobs/status/completed").json()

        assert [j["id"] for j in pending] == [ids[0], ids[2]]
        assert [j["id"] for j in completed] == [ids[1]]
        assert all(j["assignedDriver"]["name"] for j in pending)
        assert client.get("/transport-jobs/status/pending").json() == pending
        assert client.get("/transport-jobs/status/cancelled").json() == []

    def test_get_one(self, client, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()

        response = client.get(f"/transport-jobs/{job['id']}")

        assert response.status_code == 200
        assert response.json() == job


class TestReconcile:
    def test_releases_orphaned_reservations(self, client, db, pair, job_request):
        driver, vehicle = pair
        job = _create_job(client, job_request, driver, vehicle).json()
        # simulate a crash that lost the job document
        db["transport_jobs"].delete_one({"_id": ObjectId(job["id"])})

        response = client.post("/transport-jobs/reconcile")

        assert response.status_code == 200
        assert response.json() == {"driversReleased": [driver["id"]], "vehiclesReleased": [vehicle["id"]]}
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "available"
        assert client.post("/transport-jobs/reconcile").json() == {"driversReleased": [], "vehiclesReleased": []}

    def test_keeps_live_reservations(self, client, pair, job_request):
        driver, vehicle = pair
        _create_job(client, job_request, driver, vehicle)

        response = client.post("/transport-jobs/reconcile")

        assert response.json() == {"driversReleased": [], "vehiclesReleased": []}
        assert client.get(f"/drivers/{driver['id']}").json()["status"] == "on-duty"

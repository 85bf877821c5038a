"""
Dispatch coordinator for transport jobs.

A transport job binds exactly one driver and one vehicle. Creating the job
reserves both (driver on-duty, vehicle in-use); completing, cancelling or
deleting a job that still holds its reservation releases them.

Reservations are taken with conditional writes so two requests racing for
the same driver or vehicle cannot both win, and every check-then-set runs
inside a per-resource critical section for requests served by this process.
The three documents are still written separately: a failure between writes
is compensated where possible, and `reconcile` repairs drivers and vehicles
left reserved with no active job.
"""

import logging
import math
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import parse_object_id, utcnow
from errors import ResourceUnavailable, StorageFailure, ValidationError
from schemas import (
    JOB_TYPES,
    TERMINAL_STATUSES,
    WASTE_TYPES,
    DriverUpdate,
    TransportJobUpdate,
    VehicleUpdate,
)
from stores import DriverStore, JobStore, VehicleStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "jobType",
    "startPoint",
    "endPoint",
    "wasteType",
    "quantity",
    "assignedDriver",
    "assignedVehicle",
)


class ReservationLocks:
    """
    One lock per resource key, always acquired in sorted key order.

    A key's lock is dropped once nobody holds or waits for it, so the map
    only holds keys of requests in flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Optional[str]):
        ordered = sorted({k for k in keys if k})
        checked_out = []
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)


def driver_key(driver_id: Any) -> Optional[str]:
    return f"driver:{driver_id}" if driver_id is not None else None


def vehicle_key(vehicle_id: Any) -> Optional[str]:
    return f"vehicle:{vehicle_id}" if vehicle_id is not None else None


# Shared by every coordinator built in this process.
reservation_locks = ReservationLocks()


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _as_point(value: Any) -> Optional[Dict[str, float]]:
    if not isinstance(value, dict):
        return None
    latitude = _as_number(value.get("latitude"))
    longitude = _as_number(value.get("longitude"))
    if latitude is None or longitude is None:
        return None
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        return None
    return {"latitude": latitude, "longitude": longitude}


def _patch_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    field = error["loc"][0] if error["loc"] else "update"
    if field in ("startPoint", "endPoint"):
        return "Invalid coordinates for start or end point"
    if field == "quantity":
        return "Quantity must be a positive number"
    return f"Invalid {field}"


class DispatchCoordinator:
    def __init__(self, db: Database, locks: ReservationLocks = reservation_locks):
        self.drivers = DriverStore(db)
        self.vehicles = VehicleStore(db)
        self.jobs = JobStore(db)
        self.locks = locks

    # Reads

    def list_jobs(self) -> List[Dict[str, Any]]:
        return self.jobs.populate(self.jobs.list())

    def list_jobs_by_status(self, status: str) -> List[Dict[str, Any]]:
        return self.jobs.populate(self.jobs.list({"status": status}))

    def get_job(self, job_id: Any) -> Dict[str, Any]:
        return self.jobs.populate_one(self.jobs.get(job_id))

    # Job lifecycle

    def validate_request(self, request: Any) -> Dict[str, Any]:
        """Check a create request in order; the first failure wins."""
        if not isinstance(request, dict) or any(_is_missing(request.get(f)) for f in REQUIRED_FIELDS):
            raise ValidationError("All required fields must be provided")
        if request["jobType"] not in JOB_TYPES:
            raise ValidationError("Invalid jobType")
        if request["wasteType"] not in WASTE_TYPES:
            raise ValidationError("Invalid wasteType")

        start_point = _as_point(request["startPoint"])
        end_point = _as_point(request["endPoint"])
        if start_point is None or end_point is None:
            raise ValidationError("Invalid coordinates for start or end point")

        quantity = _as_number(request["quantity"])
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be a positive number")

        special = request.get("specialRequirements")
        if special is None:
            special = ""
        elif not isinstance(special, str):
            raise ValidationError("Invalid specialRequirements")

        return {
            "jobType": request["jobType"],
            "startPoint": start_point,
            "endPoint": end_point,
            "wasteType": request["wasteType"],
            "quantity": quantity,
            "specialRequirements": special,
        }

    def create_job(self, request: Any) -> Dict[str, Any]:
        fields = self.validate_request(request)
        quantity = fields["quantity"]
        driver_id = parse_object_id(request["assignedDriver"])
        vehicle_id = parse_object_id(request["assignedVehicle"])

        with self.locks.hold(driver_key(driver_id), vehicle_key(vehicle_id)):
            driver = self.drivers.get(driver_id)
            if driver.get("status") != "available":
                raise ResourceUnavailable("Driver is not available")
            vehicle = self.vehicles.get(vehicle_id)
            if vehicle.get("status") != "available":
                raise ResourceUnavailable("Vehicle is not available")
            if (vehicle.get("capacity") or 0) < quantity:
                raise ResourceUnavailable("Vehicle capacity is insufficient for the quantity")

            job_id = ObjectId()
            reserved = self.drivers.update_if(
                driver_id,
                {"status": "available"},
                {"status": "on-duty", "vehicleAssigned": vehicle_id},
                push={"jobHistory": job_id},
            )
            if reserved is None:
                raise ResourceUnavailable("Driver is not available")

            reserved = self.vehicles.update_if(
                vehicle_id,
                {"status": "available", "capacity": {"$gte": quantity}},
                {"status": "in-use", "assignedDriver": driver_id},
                push={"jobHistory": job_id},
            )
            if reserved is None:
                self._undo_driver(driver_id, vehicle_id, job_id)
                raise ResourceUnavailable("Vehicle is not available")

            job = dict(fields)
            job.update({
                "_id": job_id,
                "assignedDriver": driver_id,
                "assignedVehicle": vehicle_id,
                "status": "pending",
                "distance": None,
                "createdAt": utcnow(),
                "completedAt": None,
            })
            try:
                self.jobs.insert(job)
            except PyMongoError:
                logger.exception("Saving transport job %s failed, undoing reservations", job_id)
                self._undo_driver(driver_id, vehicle_id, job_id)
                self._undo_vehicle(vehicle_id, driver_id, job_id)
                raise StorageFailure("Could not save transport job")

        logger.info("Job %s reserved driver %s and vehicle %s", job_id, driver_id, vehicle_id)
        return self.get_job(job_id)

    def update_job(self, job_id: Any, patch: Any) -> Dict[str, Any]:
        job = self.jobs.get(job_id)
        if not isinstance(patch, dict):
            raise ValidationError("Invalid transport job update")
        try:
            update = TransportJobUpdate.model_validate(patch)
        except PydanticValidationError as exc:
            raise ValidationError(_patch_error(exc))
        changes = update.model_dump(exclude_none=True)

        with self.locks.hold(driver_key(job.get("assignedDriver")), vehicle_key(job.get("assignedVehicle"))):
            job = self.jobs.get(job["_id"])
            current = job.get("status")
            new_status = changes.get("status")
            if current in TERMINAL_STATUSES and new_status is not None and new_status != current:
                raise ValidationError(f"Transport job is already {current}")

            if "quantity" in changes and current not in TERMINAL_STATUSES:
                vehicle = self.vehicles.find(job.get("assignedVehicle"))
                if vehicle is not None and (vehicle.get("capacity") or 0) < changes["quantity"]:
                    raise ResourceUnavailable("Vehicle capacity is insufficient for the quantity")

            releasing = new_status in TERMINAL_STATUSES and current not in TERMINAL_STATUSES
            if releasing:
                changes["completedAt"] = changes.get("completedAt") or utcnow()

            if changes:
                job = self.jobs.update(job["_id"], changes)
            if releasing:
                self._release(job)
                logger.info("Job %s %s, reservations released", job["_id"], new_status)

        return self.jobs.populate_one(job)

    def delete_job(self, job_id: Any) -> Dict[str, str]:
        job = self.jobs.get(job_id)
        with self.locks.hold(driver_key(job.get("assignedDriver")), vehicle_key(job.get("assignedVehicle"))):
            job = self.jobs.delete(job["_id"])
            if job.get("status") not in TERMINAL_STATUSES:
                self._release(job)
        logger.info("Job %s deleted", job["_id"])
        return {"message": "Transport job deleted"}

    def _release(self, job: Dict[str, Any]) -> None:
        driver_id = job.get("assignedDriver")
        vehicle_id = job.get("assignedVehicle")
        # A reference cleared by a vehicle/driver deletion still counts as this job's binding.
        if driver_id is not None:
            released = self.drivers.update_if(
                driver_id,
                {"vehicleAssigned": {"$in": [vehicle_id, None]}},
                {"status": "available", "vehicleAssigned": None},
            )
            if released is None:
                logger.warning("Driver %s of job %s not released: missing or re-bound", driver_id, job["_id"])
        if vehicle_id is not None:
            released = self.vehicles.update_if(
                vehicle_id,
                {"assignedDriver": {"$in": [driver_id, None]}},
                {"status": "available", "assignedDriver": None},
            )
            if released is None:
                logger.warning("Vehicle %s of job %s not released: missing or re-bound", vehicle_id, job["_id"])

    def _undo_driver(self, driver_id, vehicle_id, job_id) -> None:
        logger.warning("Undoing reservation of driver %s for job %s", driver_id, job_id)
        self.drivers.update_if(
            driver_id,
            {"status": "on-duty", "vehicleAssigned": vehicle_id},
            {"status": "available", "vehicleAssigned": None},
            pull={"jobHistory": job_id},
        )

    def _undo_vehicle(self, vehicle_id, driver_id, job_id) -> None:
        logger.warning("Undoing reservation of vehicle %s for job %s", vehicle_id, job_id)
        self.vehicles.update_if(
            vehicle_id,
            {"status": "in-use", "assignedDriver": driver_id},
            {"status": "available", "assignedDriver": None},
            pull={"jobHistory": job_id},
        )

    def reconcile(self) -> Dict[str, List[str]]:
        """
        Release drivers on-duty and vehicles in-use that no active job holds.

        Safe to run repeatedly. Off-duty drivers and vehicles under
        maintenance are set by hand and left alone.
        """
        drivers_released = []
        for driver in self.drivers.list({"status": "on-duty"}):
            with self.locks.hold(driver_key(driver["_id"])):
                if self._holds(assignedDriver=driver["_id"]):
                    continue
                if self.drivers.update_if(
                    driver["_id"],
                    {"status": "on-duty"},
                    {"status": "available", "vehicleAssigned": None},
                ):
                    drivers_released.append(str(driver["_id"]))

        vehicles_released = []
        for vehicle in self.vehicles.list({"status": "in-use"}):
            with self.locks.hold(vehicle_key(vehicle["_id"])):
                if self._holds(assignedVehicle=vehicle["_id"]):
                    continue
                if self.vehicles.update_if(
                    vehicle["_id"],
                    {"status": "in-use"},
                    {"status": "available", "assignedDriver": None},
                ):
                    vehicles_released.append(str(vehicle["_id"]))

        if drivers_released or vehicles_released:
            logger.warning(
                "Reconciled orphaned reservations: drivers=%s vehicles=%s",
                drivers_released,
                vehicles_released,
            )
        return {"driversReleased": drivers_released, "vehiclesReleased": vehicles_released}

    def _holds(self, **reference) -> bool:
        query = {"status": {"$nin": list(TERMINAL_STATUSES)}}
        query.update(reference)
        return self.jobs.collection.find_one(query) is not None

    # Driver and vehicle changes that touch reservations

    def update_driver(self, driver_id: Any, update: DriverUpdate) -> Dict[str, Any]:
        changes = update.model_dump(exclude_none=True)
        with self.locks.hold(driver_key(parse_object_id(driver_id))):
            driver = self.drivers.get(driver_id)
            if changes.get("status") == "available" and self._holds(assignedDriver=driver["_id"]):
                raise ResourceUnavailable("Driver is bound to an active transport job")
            if changes:
                driver = self.drivers.update(driver["_id"], changes)
        return self.drivers.populate([driver])[0]

    def update_vehicle(self, vehicle_id: Any, update: VehicleUpdate) -> Dict[str, Any]:
        changes = update.model_dump(exclude_none=True)
        with self.locks.hold(vehicle_key(parse_object_id(vehicle_id))):
            vehicle = self.vehicles.get(vehicle_id)
            if changes.get("status") == "available" and self._holds(assignedVehicle=vehicle["_id"]):
                raise ResourceUnavailable("Vehicle is bound to an active transport job")
            if changes:
                vehicle = self.vehicles.update(vehicle["_id"], changes)
        return self.vehicles.populate([vehicle])[0]

    def delete_vehicle(self, vehicle_id: Any) -> Dict[str, str]:
        with self.locks.hold(vehicle_key(parse_object_id(vehicle_id))):
            vehicle = self.vehicles.delete(vehicle_id)
            if vehicle.get("assignedDriver") is not None:
                self.drivers.update_if(
                    vehicle["assignedDriver"],
                    {"vehicleAssigned": vehicle["_id"]},
                    {"vehicleAssigned": None},
                )
        return {"message": "Vehicle deleted"}

    def delete_driver(self, driver_id: Any) -> Dict[str, str]:
        with self.locks.hold(driver_key(parse_object_id(driver_id))):
            self.drivers.delete(driver_id)
        return {"message": "Driver deleted"}


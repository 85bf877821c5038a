import logging
import os
from contextlib import asynccontextmanager
from typing import Any, List

from bson import ObjectId
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import geo
from database import ensure_indexes, get_db, parse_object_id, utcnow
from dispatch import DispatchCoordinator
from errors import DispatchError
from schemas import Driver, DriverUpdate, Vehicle, VehicleUpdate
from stores import DriverStore, VehicleStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL is not set; requests needing storage will fail")
    yield


app = FastAPI(
    title="Coco Transport API",
    description="Driver, vehicle and transport job dispatch backend",
    lifespan=lifespan,
)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Errors are always {"message": ...}

FIELD_MESSAGES = {
    "email": "Invalid email format",
    "phone": "Invalid phone number",
    "licensePlate": "Invalid license plate format",
    "capacity": "Capacity must be a positive number",
}


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"message": "Invalid request"})
    error = errors[0]
    loc = [part for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    # json_invalid errors carry the byte offset in loc
    if error.get("type") == "json_invalid" or not loc or not isinstance(loc[0], str):
        return JSONResponse(status_code=400, content={"message": "Invalid request"})
    field = loc[0]
    if error.get("type") == "missing":
        message = f"Missing required field: {field}"
    else:
        message = FIELD_MESSAGES.get(field, f"Invalid {field}")
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Storage failure"})


# Utility

def object_id(_id: str) -> ObjectId:
    oid = parse_object_id(_id)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid id")
    return oid


def get_coordinator(db: Database = Depends(get_db)) -> DispatchCoordinator:
    return DispatchCoordinator(db)


@app.get("/")
def read_root():
    return {"message": "Coco transport backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    db = database.db
    if db is None:
        return response
    response["database"] = "✅ Available"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = db.name
    response["connection_status"] = "Connected"
    try:
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# Drivers
@app.post("/drivers", status_code=201)
def create_driver(driver: Driver, db: Database = Depends(get_db)):
    store = DriverStore(db)
    data = driver.model_dump()
    data["dateOfJoining"] = data["dateOfJoining"] or utcnow()
    data["vehicleAssigned"] = None
    data["jobHistory"] = []
    doc = store.insert(data)
    logger.info("Driver %s created", doc["_id"])
    return store.populate([doc])[0]


@app.get("/drivers")
def list_drivers(db: Database = Depends(get_db)):
    store = DriverStore(db)
    return store.populate(store.list())


@app.get("/drivers/status/{status}")
def list_drivers_by_status(status: str, db: Database = Depends(get_db)):
    store = DriverStore(db)
    return store.populate(store.list({"status": status}))


@app.get("/drivers/{driver_id}")
def get_driver(driver_id: str, db: Database = Depends(get_db)):
    store = DriverStore(db)
    return store.populate([store.get(object_id(driver_id))])[0]


@app.put("/drivers/{driver_id}")
def update_driver(driver_id: str, payload: DriverUpdate, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.update_driver(object_id(driver_id), payload)


@app.delete("/drivers/{driver_id}")
def delete_driver(driver_id: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.delete_driver(object_id(driver_id))


# Vehicles
@app.post("/vehicles", status_code=201)
def create_vehicle(vehicle: Vehicle, db: Database = Depends(get_db)):
    store = VehicleStore(db)
    data = vehicle.model_dump()
    data["assignedDriver"] = None
    data["jobHistory"] = []
    data["createdAt"] = utcnow()
    doc = store.insert(data)
    logger.info("Vehicle %s created", doc["_id"])
    return store.populate([doc])[0]


@app.get("/vehicles")
def list_vehicles(db: Database = Depends(get_db)):
    store = VehicleStore(db)
    return store.populate(store.list())


@app.get("/vehicles/status/{status}")
def list_vehicles_by_status(status: str, db: Database = Depends(get_db)):
    store = VehicleStore(db)
    return store.populate(store.list({"status": status}))


@app.get("/vehicles/{vehicle_id}")
def get_vehicle(vehicle_id: str, db: Database = Depends(get_db)):
    store = VehicleStore(db)
    return store.populate([store.get(object_id(vehicle_id))])[0]


@app.put("/vehicles/{vehicle_id}")
def update_vehicle(vehicle_id: str, payload: VehicleUpdate, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.update_vehicle(object_id(vehicle_id), payload)


@app.delete("/vehicles/{vehicle_id}")
def delete_vehicle(vehicle_id: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.delete_vehicle(object_id(vehicle_id))


# Transport jobs
@app.post("/transport-jobs", status_code=201)
def create_transport_job(payload: Any = Body(None), coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.create_job(payload)


@app.get("/transport-jobs")
def list_transport_jobs(coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.list_jobs()


@app.post("/transport-jobs/reconcile")
def reconcile_reservations(coordinator: DispatchCoordinator = Depends(get_coordinator)):
    """Release drivers and vehicles left reserved without an active job."""
    return coordinator.reconcile()


@app.get("/transport-jobs/status/{status}")
def list_transport_jobs_by_status(status: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.list_jobs_by_status(status)


@app.get("/transport-jobs/{job_id}")
def get_transport_job(job_id: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.get_job(object_id(job_id))


@app.put("/transport-jobs/{job_id}")
def update_transport_job(job_id: str, payload: Any = Body(None), coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.update_job(object_id(job_id), payload)


@app.delete("/transport-jobs/{job_id}")
def delete_transport_job(job_id: str, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.delete_job(object_id(job_id))


# Geocoding (Nominatim) and Routing (OSRM)

@app.get("/geo/search")
def geocode_search(q: str = Query(..., min_length=2), limit: int = 5):
    """Place search for the job form's map picker."""
    results: List[dict] = geo.geocode_search(q, limit)
    return {"results": results}


@app.get("/route")
def route(startLat: float, startLng: float, endLat: float, endLng: float):
    """Driving route between a job's start and end points."""
    return geo.route(startLat, startLng, endLat, endLng)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

"""
Record stores for drivers, vehicles and transport jobs.

Plain keyed persistence over one MongoDB collection each. No business rule
lives here; the dispatch coordinator decides what the conditional writes
expect.
"""

from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import DRIVERS, TRANSPORT_JOBS, VEHICLES, parse_object_id, to_str_id
from errors import ResourceNotFound, ValidationError


def _duplicate_field(exc: DuplicateKeyError) -> str:
    details = exc.details or {}
    key_value = details.get("keyValue") or details.get("keyPattern") or {}
    if key_value:
        return next(iter(key_value))
    # older servers only put the index name in the message
    message = str(exc)
    for field in ("licenseNumber", "licensePlate", "email"):
        if field in message:
            return field
    return "key"


class RecordStore:
    collection_name: str = ""
    label: str = "Record"

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[self.collection_name]

    def not_found(self) -> ResourceNotFound:
        return ResourceNotFound(f"{self.label} not found")

    def find(self, _id: Any) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(_id)
        if oid is None:
            return None
        return self.collection.find_one({"_id": oid})

    def get(self, _id: Any) -> Dict[str, Any]:
        doc = self.find(_id)
        if doc is None:
            raise self.not_found()
        return doc

    def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.collection.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ValidationError(f"{self.label} with this {_duplicate_field(exc)} already exists")
        doc["_id"] = result.inserted_id
        return doc

    def update(self, _id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        oid = parse_object_id(_id)
        if oid is None:
            raise self.not_found()
        try:
            doc = self.collection.find_one_and_update(
                {"_id": oid},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            raise ValidationError(f"{self.label} with this {_duplicate_field(exc)} already exists")
        if doc is None:
            raise self.not_found()
        return doc

    def update_if(
        self,
        _id: Any,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        push: Optional[Dict[str, Any]] = None,
        pull: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Compare-and-swap write: apply only if every expected field matches."""
        oid = parse_object_id(_id)
        if oid is None:
            return None
        update: Dict[str, Any] = {"$set": changes}
        if push:
            update["$push"] = push
        if pull:
            update["$pull"] = pull
        query = {"_id": oid}
        query.update(expected)
        return self.collection.find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )

    def delete(self, _id: Any) -> Dict[str, Any]:
        oid = parse_object_id(_id)
        doc = self.collection.find_one_and_delete({"_id": oid}) if oid is not None else None
        if doc is None:
            raise self.not_found()
        return doc

    def list(self, filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return list(self.collection.find(filter_dict or {}).sort("_id", ASCENDING))

    def names(self, ids: Iterable[Any], field: str) -> Dict[ObjectId, Dict[str, Any]]:
        """Projection {_id: {id, field}} for populating references."""
        oids = [oid for oid in ids if isinstance(oid, ObjectId)]
        if not oids:
            return {}
        cursor = self.collection.find({"_id": {"$in": oids}}, {field: 1})
        return {doc["_id"]: {"id": str(doc["_id"]), field: doc.get(field)} for doc in cursor}


class DriverStore(RecordStore):
    collection_name = DRIVERS
    label = "Driver"

    def populate(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        vehicles = VehicleStore(self.db).names((d.get("vehicleAssigned") for d in docs), "licensePlate")
        out = []
        for doc in docs:
            d = to_str_id(doc)
            d["vehicleAssigned"] = vehicles.get(doc.get("vehicleAssigned"))
            out.append(d)
        return out


class VehicleStore(RecordStore):
    collection_name = VEHICLES
    label = "Vehicle"

    def populate(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        drivers = DriverStore(self.db).names((d.get("assignedDriver") for d in docs), "name")
        out = []
        for doc in docs:
            d = to_str_id(doc)
            d["assignedDriver"] = drivers.get(doc.get("assignedDriver"))
            out.append(d)
        return out


class JobStore(RecordStore):
    collection_name = TRANSPORT_JOBS
    label = "Transport job"

    def populate(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        drivers = DriverStore(self.db).names((d.get("assignedDriver") for d in docs), "name")
        vehicles = VehicleStore(self.db).names((d.get("assignedVehicle") for d in docs), "licensePlate")
        out = []
        for doc in docs:
            d = to_str_id(doc)
            d["assignedDriver"] = drivers.get(doc.get("assignedDriver"))
            d["assignedVehicle"] = vehicles.get(doc.get("assignedVehicle"))
            out.append(d)
        return out

    def populate_one(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return self.populate([doc])[0]

"""
Human-facing registration numbers.

A serial is `max(serialNumber) + 1`, written under a unique index. When two
allocations race for the same number the loser re-reads the maximum and tries
again, up to SERIAL_ASSIGN_RETRIES times. Allocation never raises: `None`
means the serial is deferred and can be filled in later by `bulk_assign`.
"""
import logging
from typing import Optional

from bson.objectid import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

import config

logger = logging.getLogger(__name__)

HAS_SERIAL = {"serialNumber": {"$gt": 0}}
MISSING_SERIAL = {"$or": [{"serialNumber": {"$exists": False}}, {"serialNumber": None}, {"serialNumber": 0}]}


def _highest_serial(db) -> int:
    doc = db["registration"].find_one(HAS_SERIAL, {"serialNumber": 1}, sort=[("serialNumber", DESCENDING)])
    return doc["serialNumber"] if doc else 0


def auto_assign(db, registration_id) -> Optional[int]:
    if not isinstance(registration_id, ObjectId):
        if not ObjectId.is_valid(registration_id):
            logger.warning(f"Invalid registration id {registration_id} for serial number assignment")
            return None
        registration_id = ObjectId(registration_id)

    registrations = db["registration"]
    try:
        registration = registrations.find_one({"_id": registration_id}, {"serialNumber": 1, "email": 1})
        if not registration:
            logger.warning(f"Registration {registration_id} not found for serial number assignment")
            return None
        if registration.get("serialNumber") and registration["serialNumber"] > 0:
            return registration["serialNumber"]

        retries = 0
        while True:
            candidate = _highest_serial(db) + 1
            try:
                registrations.update_one({"_id": registration_id}, {"$set": {"serialNumber": candidate}})
            except DuplicateKeyError:
                if retries >= config.SERIAL_ASSIGN_RETRIES:
                    logger.error(f"Serial number {candidate} taken for {registration_id}, giving up")
                    return None
                retries += 1
                logger.warning(f"Serial number {candidate} taken for {registration_id}, retrying")
                continue
            logger.info(f"Assigned serial number {candidate} to registration {registration_id} ({registration.get('email')})")
            return candidate
    except PyMongoError as e:
        logger.error(f"Error assigning serial number to registration {registration_id}: {e}")
        return None


def bulk_assign(db) -> dict:
    """Give every registration without a serial one, oldest registration first."""
    pending = list(db["registration"].find(MISSING_SERIAL, {"email": 1, "name": 1}).sort("registrationDate", ASCENDING))
    results = []
    successful = 0
    for registration in pending:
        serial = auto_assign(db, registration["_id"])
        entry = {
            "id": str(registration["_id"]),
            "email": registration.get("email"),
            "name": registration.get("name"),
        }
        if serial:
            successful += 1
            entry.update({"serialNumber": serial, "status": "success"})
        else:
            entry.update({"status": "error", "error": "Failed to assign serial number"})
        results.append(entry)

    logger.info(f"Bulk serial number assignment: {successful} successful, {len(pending) - successful} failed")
    return {
        "summary": {
            "totalProcessed": len(pending),
            "successful": successful,
            "failed": len(pending) - successful,
        },
        "results": results,
    }


def serial_status(db) -> dict:
    registrations = db["registration"]
    total = registrations.count_documents({})
    serials = [doc["serialNumber"] for doc in registrations.find(HAS_SERIAL, {"serialNumber": 1}).sort("serialNumber", ASCENDING)]

    gaps = []
    for current, following in zip(serials, serials[1:]):
        if following - current > 1:
            gaps.append({"from": current + 1, "to": following - 1})

    return {
        "summary": {
            "totalRegistrations": total,
            "withSerial": len(serials),
            "withoutSerial": total - len(serials),
            "nextAvailableSerial": (serials[-1] + 1) if serials else 1,
        },
        "serialNumberRange": {
            "lowest": serials[0] if serials else None,
            "highest": serials[-1] if serials else None,
        },
        "gaps": gaps,
    }

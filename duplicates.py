"""
Duplicate registration cleanup.

Registrations are grouped by email. Within a group a completed payment always
wins; among unpaid attempts the newest one is kept. Deleting a registration
also removes its transactions and OTP records. The three deletes run in order
(transactions, OTP records, registration) and whatever was already removed is
restored if a later delete fails, so a registration is never left half gone.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from database import to_str_id
from errors import NotFoundError
from schemas import PaymentStatus

logger = logging.getLogger(__name__)

BUCKETS = {
    PaymentStatus.COMPLETED: "completed",
    PaymentStatus.PENDING: "pending",
    PaymentStatus.FINANCIAL_DIFFICULTY: "financialDifficulty",
    PaymentStatus.FOREIGN_TRANSACTION: "others",
    PaymentStatus.OTHER: "others",
}


def _newest_first(registrations: List[dict]) -> List[dict]:
    return sorted(registrations, key=lambda r: r.get("registrationDate") or datetime.min, reverse=True)


def _summary(registration: dict) -> dict:
    return {
        "id": str(registration["_id"]),
        "registrationDate": registration.get("registrationDate"),
        "name": registration.get("name"),
        "paymentStatus": registration.get("paymentStatus"),
        "formComplete": bool(registration.get("formSubmissionComplete")),
    }


def plan_group(registrations: List[dict]):
    """
    Decide which members of one email group to keep and which to delete.
    Returns (keep, delete, reason, breakdown); `reason` is empty when nothing
    is deleted.
    """
    buckets = {"completed": [], "pending": [], "financialDifficulty": [], "others": []}
    for registration in registrations:
        buckets[BUCKETS[PaymentStatus.parse(registration.get("paymentStatus"))]].append(registration)
    completed = buckets["completed"]
    pending = buckets["pending"]
    financial = buckets["financialDifficulty"]
    others = buckets["others"]
    breakdown = {name: len(members) for name, members in buckets.items()}

    if completed:
        delete = pending + financial + others
        reason = ""
        if delete:
            reason = (
                f"Keep {len(completed)} completed, delete {len(pending)} pending + "
                f"{len(financial)} financial-difficulty + {len(others)} others"
            )
        return completed, delete, reason, breakdown

    if len(pending) > 1:
        newest, *older = _newest_first(pending)
        date = newest.get("registrationDate")
        label = date.strftime("%d/%m/%Y") if date else "unknown date"
        reason = f"Keep newest pending ({label}), delete {len(older)} older pending"
        return [newest] + financial + others, older, reason, breakdown

    if len(financial) > 1:
        newest, *older = _newest_first(financial)
        reason = f"Keep newest financial-difficulty, delete {len(older)} older financial-difficulty"
        return pending + [newest] + others, older, reason, breakdown

    if len(others) > 1:
        newest, *older = _newest_first(others)
        reason = f"Keep newest registration with status '{newest.get('paymentStatus')}', delete {len(older)} older"
        return pending + financial + [newest], older, reason, breakdown

    return list(registrations), [], "", breakdown


def _otp_query(registration: dict) -> Optional[dict]:
    conditions = []
    if registration.get("email"):
        conditions.append({"email": registration["email"]})
    if registration.get("contactNumber"):
        conditions.append({"contactNumber": registration["contactNumber"]})
    return {"$or": conditions} if conditions else None


def cascade_delete(db, registration: dict):
    """
    Delete a registration with its transactions and OTP records. On failure the
    removed documents are put back and the error is raised again.
    """
    steps = [("transaction", {"registrationId": str(registration["_id"])})]
    otp_query = _otp_query(registration)
    if otp_query:
        steps.append(("otpverification", otp_query))

    removed = []
    try:
        for collection, query in steps:
            documents = list(db[collection].find(query))
            db[collection].delete_many(query)
            removed.append((collection, documents))
        result = db["registration"].delete_one({"_id": registration["_id"]})
        if result.deleted_count != 1:
            raise NotFoundError(f"Registration {registration['_id']} was already removed")
    except (PyMongoError, NotFoundError):
        for collection, documents in reversed(removed):
            if not documents:
                continue
            try:
                db[collection].insert_many(documents, ordered=False)
            except PyMongoError as e:
                logger.error(f"Could not restore {collection} documents for {registration['_id']}: {e}")
        raise


def resolve_duplicates(db, dry_run: bool = False) -> dict:
    groups = list(
        db["registration"].aggregate(
            [
                {"$group": {"_id": "$email", "count": {"$sum": 1}}},
                {"$match": {"count": {"$gt": 1}}},
                {"$sort": {"count": DESCENDING}},
            ]
        )
    )
    groups = [g for g in groups if g["_id"]]

    deleted_count = 0
    kept_count = 0
    processed = 0
    deletion_log = []

    for group in groups:
        email = group["_id"]
        registrations = list(db["registration"].find({"email": email}))
        keep, delete, reason, breakdown = plan_group(registrations)
        entry = {
            "email": email,
            "totalDuplicates": len(registrations),
            "reason": reason,
            "statusBreakdown": breakdown,
            "kept": [_summary(r) for r in keep],
            "deleted": [],
            "errors": [],
        }
        if delete:
            processed += 1
        else:
            logger.info(f"No duplicates to delete for email: {email}")

        for registration in delete:
            if not dry_run:
                try:
                    cascade_delete(db, registration)
                except (PyMongoError, NotFoundError) as e:
                    logger.error(f"Failed to delete duplicate registration {registration['_id']}: {e}")
                    entry["errors"].append({"id": str(registration["_id"]), "error": str(e)})
                    entry["kept"].append(_summary(registration))
                    continue
                logger.info(
                    f"Deleted duplicate registration: {registration['_id']} "
                    f"({registration.get('paymentStatus')}) for email: {email} - {reason}"
                )
            entry["deleted"].append(_summary(registration))
            deleted_count += 1

        kept_count += len(entry["kept"])
        deletion_log.append(entry)

    summary = {
        "totalEmailGroups": len(groups),
        "emailGroupsProcessed": processed,
        "registrationsKept": kept_count,
        "registrationsDeleted": deleted_count,
        "dryRun": dry_run,
    }
    logger.info(f"Duplicate deletion summary: {summary}")
    return {"summary": summary, "deletionLog": deletion_log}


def _group_ids(pairs) -> list:
    grouped = defaultdict(list)
    for value, registration_id in pairs:
        if value:
            grouped[value].append(str(registration_id))
    groups = [(value, ids) for value, ids in grouped.items() if len(ids) > 1]
    groups.sort(key=lambda item: len(item[1]), reverse=True)
    return groups


def find_duplicate_groups(db) -> dict:
    """Duplicate groups by email, contact number and WhatsApp number."""
    registrations = [
        to_str_id(r)
        for r in db["registration"].find(
            {}, {"email": 1, "contactNumber": 1, "whatsappNumber": 1, "formDataStructured.personalInfo.whatsappNumber": 1}
        )
    ]

    def whatsapp(registration):
        personal = (registration.get("formDataStructured") or {}).get("personalInfo") or {}
        return registration.get("whatsappNumber") or personal.get("whatsappNumber")

    report = {}
    for key, label, value_of in (
        ("byEmail", "email", lambda r: r.get("email")),
        ("byContact", "contactNumber", lambda r: r.get("contactNumber")),
        ("byWhatsApp", "whatsappNumber", whatsapp),
    ):
        groups = _group_ids((value_of(r), r["_id"]) for r in registrations)
        report[key] = {
            "groups": len(groups),
            "details": [{label: value, "count": len(ids), "registrationIds": ids} for value, ids in groups],
        }
    return {"totalRegistrations": len(registrations), "duplicates": report}

"""
Multi-step registration: saving form pages and the admin-side queries over the
registration collection.

Every saved page is sanitized, then merged section by section into the stored
form. Keys missing from a page keep their stored values, and the merged form
is sanitized again so an answer changed on a later visit also clears the
fields it invalidates. Step 1 creates the record and is gated on a verified
OTP for the same email and contact number.
"""
import logging
import math
import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import pydantic
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import notifications
import otp
import serials
from auth import AdminContext, can_access_school, school_filter
from database import create_document, parse_object_id, to_str_id, utcnow
from errors import AuthorizationError, ConflictError, DownstreamError, ForbiddenError, NotFoundError, ValidationError
from sanitize import sanitize_form_data, sanitize_step_data
from schemas import FormDataStructured, PaymentStatus, Registration

logger = logging.getLogger(__name__)

IST = timezone(timedelta(hours=5, minutes=30))
ALUMNI_FINAL_STEP = 8
STAFF_FINAL_STEP = 7
REGISTRATION_TYPES = ("Alumni", "Staff", "Other")
DUPLICATE_MESSAGE = "A registration with this email or contact number already exists"

# statuses a registrant can select on the form; "Completed" only comes from a recorded payment
SELF_DECLARED_STATUSES = (PaymentStatus.FINANCIAL_DIFFICULTY, PaymentStatus.FOREIGN_TRANSACTION)


def _validation_messages(error: pydantic.ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors())


def validate_form(form: dict) -> dict:
    """Check a structured form against the schema and fill section defaults."""
    try:
        return FormDataStructured.model_validate(form).model_dump(exclude_none=True)
    except pydantic.ValidationError as e:
        raise ValidationError("Validation error", error=_validation_messages(e))


def merge_form_data(existing: Optional[dict], incoming: Optional[dict]) -> dict:
    """
    Merge a submitted form into the stored one section by section. Within a
    section the submitted keys win and every other stored key is kept.
    """
    existing = existing or {}
    incoming = incoming or {}
    merged = {}
    for section in list(existing) + [s for s in incoming if s not in existing]:
        old = existing.get(section)
        new = incoming.get(section)
        if isinstance(old, dict) and isinstance(new, dict):
            merged[section] = {**old, **new}
        elif section in incoming and new is not None:
            merged[section] = new
        else:
            merged[section] = old
    return merged


def _root_mirror(step: int, final_step: int, form: dict, submitted: dict) -> dict:
    """
    Top-level copies of form answers kept for querying and indexing. Values come
    from the merged, sanitized form; only sections present in the submitted
    page are mirrored.
    """
    root = {}
    personal = form.get("personalInfo") or {}
    if step == 1 and "personalInfo" in submitted:
        for key in ("name", "whatsappNumber", "country", "school", "customSchoolName", "yearOfPassing"):
            if key in personal:
                root[key] = personal[key]
    attendance = form.get("eventAttendance")
    if step == 3 and attendance and "eventAttendance" in submitted:
        root["isAttending"] = bool(attendance.get("isAttending"))
        root["attendees"] = attendance.get("attendees")
    if step == final_step:
        financial = form.get("financial")
        if financial and "financial" in submitted:
            root["willContribute"] = bool(financial.get("willContribute"))
            root["contributionAmount"] = financial.get("contributionAmount", 0)
            status = PaymentStatus.parse(financial.get("paymentStatus"))
            if status in SELF_DECLARED_STATUSES:
                root["paymentStatus"] = status.value
        root["formSubmissionComplete"] = True
    return root


def save_step(
    db,
    step: int,
    step_data: Optional[dict],
    verification_token: Optional[str] = None,
    final_step: int = ALUMNI_FINAL_STEP,
    registration_type: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    if not isinstance(step, int) or isinstance(step, bool) or step < 1 or step > final_step:
        raise ValidationError("Invalid step number")
    if not step_data:
        raise ValidationError("No data provided for this step")

    sanitized = sanitize_step_data(step, step_data)
    form = sanitized.get("formDataStructured") or {}
    personal = form.get("personalInfo") or {}
    email = personal.get("email")
    if not email:
        raise ValidationError("Email is required to save a registration step")

    existing = db["registration"].find_one({"email": email})
    if existing:
        return _update_step(db, existing, step, form, final_step)
    if step != 1:
        raise ValidationError("Cannot create registration starting from step other than 1")
    return _create_registration(db, form, verification_token, registration_type, user_agent)


def _create_registration(db, form: dict, verification_token, registration_type, user_agent) -> dict:
    personal = form.get("personalInfo") or {}
    email = personal.get("email")
    contact_number = personal.get("contactNumber")
    if not email or not contact_number:
        raise ValidationError("Email and contact number are required for the first step")

    verified = db["otpverification"].find_one({"email": email, "contactNumber": contact_number, "verified": True})
    if not verified:
        raise AuthorizationError("OTP verification required before creating registration")
    if verification_token:
        otp.check_verification_token(verification_token, email, contact_number)

    form = validate_form(form)
    now = utcnow()
    try:
        registration = Registration(
            registrationType=registration_type or personal.get("registrationType") or "Alumni",
            name=personal.get("name") or "",
            email=email,
            contactNumber=contact_number,
            whatsappNumber=personal.get("whatsappNumber"),
            country=personal.get("country"),
            school=personal.get("school"),
            customSchoolName=personal.get("customSchoolName"),
            yearOfPassing=personal.get("yearOfPassing"),
            emailVerified=True,
            isAttending=False,
            willContribute=False,
            currentStep=1,
            registrationDate=now,
            lastUpdated=now,
            userAgent=user_agent,
            formDataStructured=form,
        )
    except pydantic.ValidationError as e:
        raise ValidationError("Validation error", error=_validation_messages(e))

    doc = registration.model_dump(exclude_none=True)
    doc["step1Complete"] = True
    try:
        registration_id = create_document(db, "registration", doc)
    except DuplicateKeyError as e:
        raise ConflictError(DUPLICATE_MESSAGE, error=str(e))

    logger.info(f"Registration {registration_id} created for {email}")
    serial = serials.auto_assign(db, registration_id)
    if serial is None:
        logger.warning(f"Serial number deferred for registration {registration_id}")

    return {
        "registrationId": registration_id,
        "currentStep": 1,
        "isComplete": False,
        "serialNumber": serial,
        "created": True,
    }


def _update_step(db, existing: dict, step: int, form: dict, final_step: int) -> dict:
    merged = sanitize_form_data(merge_form_data(existing.get("formDataStructured"), form))
    update = {
        "formDataStructured": validate_form(merged),
        "currentStep": step,
        f"step{step}Complete": True,
        "lastUpdated": utcnow(),
    }
    update.update(_root_mirror(step, final_step, update["formDataStructured"], form))

    try:
        updated = db["registration"].find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError as e:
        raise ConflictError(DUPLICATE_MESSAGE, error=str(e))
    if not updated:
        raise NotFoundError("Registration not found")

    is_complete = bool(updated.get("formSubmissionComplete"))
    email_sent = False
    if step == final_step and is_complete:
        try:
            email_sent = notifications.send_registration_confirmation(updated)
        except DownstreamError as e:
            logger.error(f"Failed to send registration confirmation email: {e.message} ({e.error})")

    logger.info(f"Step {step} saved for registration {updated['_id']}")
    return {
        "registrationId": str(updated["_id"]),
        "currentStep": step,
        "isComplete": is_complete,
        "serialNumber": updated.get("serialNumber"),
        "confirmationEmailSent": email_sent,
        "created": False,
    }


# Admin queries

def _ist_day_bound(value: str, end: bool) -> datetime:
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")
    local = datetime.combine(day, time.max if end else time.min, tzinfo=IST)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def _flag(value: Optional[str]) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    return value == "true"


def list_registrations(
    db,
    admin: AdminContext,
    page: int = 1,
    limit: int = 10,
    registration_type: Optional[str] = None,
    form_submission_complete: Optional[str] = None,
    is_attending: Optional[str] = None,
    payment_status: Optional[str] = None,
    school: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "registrationDate",
    sort_order: str = "desc",
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    query = dict(school_filter(admin))

    if registration_type:
        if registration_type not in REGISTRATION_TYPES:
            raise ValidationError("Invalid registration type")
        query["registrationType"] = registration_type

    complete = _flag(form_submission_complete)
    if complete is not None:
        query["formSubmissionComplete"] = complete

    attending = _flag(is_attending)
    if attending is not None:
        query["formDataStructured.eventAttendance.isAttending"] = attending

    if school and school.strip():
        if not can_access_school(admin, school):
            raise ForbiddenError("Access denied: You can only view registrations from your assigned schools")
        query["formDataStructured.personalInfo.school"] = school

    # dashboard views over payment state
    if payment_status == "complete":
        query["paymentStatus"] = PaymentStatus.COMPLETED.value
    elif payment_status == "incomplete":
        query["paymentStatus"] = PaymentStatus.PENDING.value
        query["formSubmissionComplete"] = False
    elif payment_status == "review":
        query["paymentStatus"] = PaymentStatus.PENDING.value
        query["formSubmissionComplete"] = True

    if from_date or to_date:
        query["registrationDate"] = {}
        if from_date:
            query["registrationDate"]["$gte"] = _ist_day_bound(from_date, end=False)
        if to_date:
            query["registrationDate"]["$lte"] = _ist_day_bound(to_date, end=True)

    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        conditions = [{"name": pattern}, {"email": pattern}, {"contactNumber": pattern}]
        query = {"$and": [query, {"$or": conditions}]} if query else {"$or": conditions}

    direction = ASCENDING if sort_order == "asc" else DESCENDING
    cursor = db["registration"].find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
    registrations = [to_str_id(doc) for doc in cursor]
    total = db["registration"].count_documents(query)

    return {
        "results": len(registrations),
        "totalRegistrations": total,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "data": registrations,
    }


def get_registration(db, registration_id: str) -> dict:
    oid = parse_object_id(registration_id, "registration ID")
    registration = db["registration"].find_one({"_id": oid})
    if not registration:
        raise NotFoundError("Registration not found")
    transactions = db["transaction"].find({"registrationId": str(oid)})
    return {
        "registration": to_str_id(registration),
        "transactions": [to_str_id(t) for t in transactions],
    }


def get_registration_by_contact(db, email: Optional[str], contact_number: Optional[str]) -> dict:
    """Look up an alumni registration for the update form."""
    if email:
        query = {"email": email}
    elif contact_number:
        query = {"contactNumber": contact_number}
    else:
        raise ValidationError("Email or contact number is required")
    query["registrationType"] = "Alumni"
    registration = db["registration"].find_one(query)
    if not registration:
        raise NotFoundError("No alumni registration found with the provided contact information")
    return to_str_id(registration)


def delete_registration(db, registration_id: str) -> int:
    oid = parse_object_id(registration_id, "registration ID")
    registration = db["registration"].find_one_and_delete({"_id": oid})
    if not registration:
        raise NotFoundError("Registration not found")
    removed = db["transaction"].delete_many({"registrationId": str(oid)}).deleted_count
    logger.info(f"Registration {oid} deleted with {removed} transactions")
    return removed


def registration_stats(db) -> dict:
    registrations = db["registration"]
    by_type = {
        row["_id"]: row["count"]
        for row in registrations.aggregate([{"$group": {"_id": "$registrationType", "count": {"$sum": 1}}}])
    }
    attending = registrations.count_documents({"isAttending": True})
    total = registrations.count_documents({})

    counts = {}
    for row in registrations.aggregate([{"$group": {"_id": "$paymentStatus", "count": {"$sum": 1}}}]):
        key = row["_id"] or PaymentStatus.PENDING.value
        counts[key] = counts.get(key, 0) + row["count"]
    collected = list(
        registrations.aggregate(
            [
                {"$match": {"paymentStatus": PaymentStatus.COMPLETED.value}},
                {"$group": {"_id": None, "total": {"$sum": "$contributionAmount"}}},
            ]
        )
    )

    return {
        "totalRegistrations": total,
        "byType": by_type,
        "byAttendance": {"attending": attending, "notAttending": total - attending},
        "payments": {
            "counts": counts,
            "totalAmountCollected": collected[0]["total"] if collected else 0,
        },
    }

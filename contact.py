"""
Contact form messages and their admin workflow.
"""
import logging
import math
import re
from typing import List, Optional, get_args

import pydantic
from pymongo import ASCENDING, DESCENDING, ReturnDocument

import notifications
from auth import AdminContext
from database import create_document, parse_object_id, to_str_id, utcnow
from errors import DownstreamError, NotFoundError, ValidationError
from schemas import AdminNote, ContactMessage, MessageStatus, ResponseData

logger = logging.getLogger(__name__)

STATUSES = get_args(MessageStatus)

# first match wins
CATEGORY_KEYWORDS = (
    ("payment-issue", ("payment", "transaction", "refund")),
    ("registration-help", ("registration", "register", "sign up")),
    ("technical-support", ("technical", "error", "bug", "not working")),
    ("summit-related", ("summit", "event", "schedule")),
    ("sponsorship", ("sponsor", "partnership")),
    ("complaint", ("complaint", "issue", "problem")),
    ("suggestion", ("suggest", "improve", "feature")),
)


def categorize(subject: str, message: str) -> str:
    text = f"{subject} {message}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "general-inquiry"


def _check_status(status: Optional[str]):
    if status not in STATUSES:
        raise ValidationError("Invalid status. Must be one of: " + ", ".join(STATUSES))


def _find(db, message_id: str) -> dict:
    oid = parse_object_id(message_id, "message ID")
    message = db["contactmessage"].find_one({"_id": oid})
    if not message:
        raise NotFoundError("Message not found")
    return message


def create_message(db, data: dict, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
    fields = {k: v for k, v in data.items() if v is not None}
    fields.update({"source": "website-contact-form", "ipAddress": ip_address, "userAgent": user_agent})
    try:
        message = ContactMessage(**fields)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid contact message", error=str(e))
    if message.category == "general-inquiry":
        message.category = categorize(message.subject, message.message)

    message_id = create_document(db, "contactmessage", message)
    saved = to_str_id(db["contactmessage"].find_one({"_id": parse_object_id(message_id)}))
    logger.info(f"Contact message {message_id} received from {message.email} ({message.category})")

    try:
        notifications.send_email(
            saved["email"],
            f"We received your message: {saved['subject']}",
            notifications.contact_confirmation_email(saved),
        )
    except DownstreamError as e:
        logger.error(f"Failed to send contact confirmation email: {e.message} ({e.error})")
    return saved


def list_messages(
    db,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    query = {}
    if status:
        query["status"] = status
    if category:
        query["category"] = category
    if priority:
        query["priority"] = priority
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{field: pattern} for field in ("subject", "message", "name", "email")]

    direction = ASCENDING if sort_order == "asc" else DESCENDING
    cursor = db["contactmessage"].find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
    messages = [to_str_id(m) for m in cursor]
    total = db["contactmessage"].count_documents(query)
    return {
        "data": messages,
        "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit), "limit": limit},
    }


def get_message(db, message_id: str) -> dict:
    """Fetch a message; opening a new one marks it read."""
    message = _find(db, message_id)
    if message.get("status") == "new":
        message = db["contactmessage"].find_one_and_update(
            {"_id": message["_id"]},
            {"$set": {"status": "read", "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    return to_str_id(message)


def update_status(db, message_id: str, status: str) -> dict:
    _check_status(status)
    message = _find(db, message_id)
    updated = db["contactmessage"].find_one_and_update(
        {"_id": message["_id"]},
        {"$set": {"status": status, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return to_str_id(updated)


def respond(db, message_id: str, admin: AdminContext, response_message: Optional[str], response_method: str = "email") -> dict:
    if not response_message or not response_message.strip():
        raise ValidationError("Response message is required")
    message = _find(db, message_id)
    try:
        response = ResponseData(
            respondedBy=admin.id,
            responseDate=utcnow(),
            responseMessage=response_message.strip(),
            responseMethod=response_method,
        )
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid response", error=str(e))

    updated = db["contactmessage"].find_one_and_update(
        {"_id": message["_id"]},
        {"$set": {"responseData": response.model_dump(), "status": "responded", "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info(f"Contact message {message_id} answered by {admin.email}")

    if response.responseMethod == "email":
        try:
            notifications.send_email(
                updated["email"],
                f"Re: {updated['subject']}",
                notifications.contact_response_email(updated, response.responseMessage),
            )
        except DownstreamError as e:
            logger.error(f"Failed to send response email: {e.message} ({e.error})")
    return to_str_id(updated)


def add_note(db, message_id: str, admin: AdminContext, note: Optional[str]) -> dict:
    if not note or not note.strip():
        raise ValidationError("Note is required")
    message = _find(db, message_id)
    try:
        entry = AdminNote(note=note.strip(), addedBy=admin.id, addedAt=utcnow())
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid note", error=str(e))
    updated = db["contactmessage"].find_one_and_update(
        {"_id": message["_id"]},
        {"$push": {"adminNotes": entry.model_dump()}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return to_str_id(updated)


def _counts(db, field: str) -> List[dict]:
    rows = db["contactmessage"].aggregate(
        [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}, {"$sort": {"count": DESCENDING}}]
    )
    return [{"_id": row["_id"], "count": row["count"]} for row in rows]


def message_stats(db) -> dict:
    by_status = {row["_id"]: row["count"] for row in _counts(db, "status")}
    overall = {"total": sum(by_status.values())}
    for status in STATUSES:
        key = "inProgress" if status == "in-progress" else status
        overall[key] = by_status.get(status, 0)
    return {
        "overall": overall,
        "byCategory": _counts(db, "category"),
        "byPriority": _counts(db, "priority"),
    }


def unread_count(db) -> int:
    return db["contactmessage"].count_documents({"status": "new"})


def bulk_update_status(db, message_ids: List[str], status: str) -> dict:
    if not isinstance(message_ids, list) or not message_ids:
        raise ValidationError("Message IDs array is required")
    _check_status(status)
    oids = [parse_object_id(message_id, f"message ID: {message_id}") for message_id in message_ids]
    result = db["contactmessage"].update_many(
        {"_id": {"$in": oids}},
        {"$set": {"status": status, "updatedAt": utcnow()}},
    )
    return {"modifiedCount": result.modified_count, "matchedCount": result.matched_count}

"""
Dashboard analytics over the registration and transaction collections.

Every query is limited to the schools the requesting admin may see. Days are
calendar days in IST; stored datetimes are naive UTC.
"""
from datetime import datetime, time, timedelta, timezone

from auth import AdminContext, school_filter
from errors import ValidationError
from registrations import IST
from sanitize import ATTENDEE_GROUPS
from schemas import PaymentStatus

PAID = PaymentStatus.COMPLETED.value
UNPAID = [PaymentStatus.PENDING.value, None, ""]
MAX_DAYS = 365


def _ist_midnight(days_ago: int = 0) -> datetime:
    """Start of an IST calendar day as naive UTC."""
    day = datetime.now(IST).date() - timedelta(days=days_ago)
    return datetime.combine(day, time.min, tzinfo=IST).astimezone(timezone.utc).replace(tzinfo=None)


def _ist_date(value: datetime):
    return value.replace(tzinfo=timezone.utc).astimezone(IST).date()


def _sum_amount(db, match: dict) -> float:
    rows = list(db["transaction"].aggregate([{"$match": match}, {"$group": {"_id": None, "total": {"$sum": "$amount"}}}]))
    return rows[0]["total"] if rows else 0


def count_attendees(attendees) -> int:
    total = 0
    for group in ATTENDEE_GROUPS:
        counts = (attendees or {}).get(group) or {}
        total += (counts.get("veg") or 0) + (counts.get("nonVeg") or 0)
    return total


def dashboard_stats(db, admin: AdminContext) -> dict:
    scope = school_filter(admin)
    registrations = db["registration"]
    today = _ist_midnight()

    if admin.sees_all_schools:
        payments_scope = {}
    else:
        ids = [str(doc["_id"]) for doc in registrations.find(scope, {"_id": 1})]
        payments_scope = {"registrationId": {"$in": ids}}

    attending = registrations.find(
        {**scope, "formDataStructured.eventAttendance.isAttending": True, "paymentStatus": PAID},
        {"formDataStructured.eventAttendance.attendees": 1},
    )
    total_attendees = sum(
        count_attendees(((doc.get("formDataStructured") or {}).get("eventAttendance") or {}).get("attendees"))
        for doc in attending
    )

    return {
        "totalRegistrations": registrations.count_documents(scope),
        "todaysRegistrations": registrations.count_documents({**scope, "registrationDate": {"$gte": today}}),
        "successfulPayments": registrations.count_documents({**scope, "paymentStatus": PAID}),
        "pendingPayments": registrations.count_documents({**scope, "paymentStatus": {"$in": UNPAID}}),
        "totalFundCollected": _sum_amount(db, payments_scope),
        "todaysPayments": _sum_amount(db, {**payments_scope, "createdAt": {"$gte": today}}),
        "totalAttendees": total_attendees,
    }


def payment_analytics(db, admin: AdminContext) -> list:
    """Count and amount per settled form payment status (paid or waived)."""
    rows = db["registration"].aggregate(
        [
            {
                "$match": {
                    **school_filter(admin),
                    "formDataStructured.financial.paymentStatus": {
                        "$in": [PAID, PaymentStatus.FINANCIAL_DIFFICULTY.value]
                    },
                }
            },
            {
                "$group": {
                    "_id": "$formDataStructured.financial.paymentStatus",
                    "count": {"$sum": 1},
                    "totalAmount": {"$sum": "$formDataStructured.financial.contributionAmount"},
                }
            },
            {"$sort": {"_id": 1}},
        ]
    )
    return [
        {
            "status": row["_id"],
            "count": row["count"],
            "totalAmount": row["totalAmount"],
            "avgAmount": round(row["totalAmount"] / row["count"], 2),
        }
        for row in rows
    ]


def daily_registrations(db, admin: AdminContext, days: int = 30) -> dict:
    """Registrations per IST day for the last `days` days, today included, zero-filled."""
    if days < 1 or days > MAX_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_DAYS}")

    start = _ist_midnight(days - 1)
    counts = {}
    for doc in db["registration"].find(
        {**school_filter(admin), "registrationDate": {"$gte": start}}, {"registrationDate": 1}
    ):
        day = _ist_date(doc["registrationDate"])
        counts[day] = counts.get(day, 0) + 1

    first = datetime.now(IST).date() - timedelta(days=days - 1)
    daily = []
    for offset in range(days):
        day = first + timedelta(days=offset)
        daily.append({"date": day.isoformat(), "count": counts.get(day, 0), "label": day.strftime("%b %d")})

    return {
        "dailyRegistrations": daily,
        "totalDays": days,
        "totalRegistrations": sum(entry["count"] for entry in daily),
    }


def _count_if(condition) -> dict:
    return {"$sum": {"$cond": [condition, 1, 0]}}


def district_analytics(db, admin: AdminContext) -> list:
    rows = db["registration"].aggregate(
        [
            {
                "$match": {
                    **school_filter(admin),
                    "formDataStructured.personalInfo.district": {"$exists": True, "$nin": [None, ""]},
                }
            },
            {
                "$group": {
                    "_id": "$formDataStructured.personalInfo.district",
                    "totalRegistrations": {"$sum": 1},
                    "alumniCount": _count_if({"$eq": ["$registrationType", "Alumni"]}),
                    "staffCount": _count_if({"$eq": ["$registrationType", "Staff"]}),
                    "attendingCount": _count_if({"$eq": ["$formDataStructured.eventAttendance.isAttending", True]}),
                    "paidCount": _count_if({"$eq": ["$paymentStatus", PAID]}),
                }
            },
            {"$sort": {"totalRegistrations": -1, "_id": 1}},
        ]
    )
    results = []
    for row in rows:
        row["district"] = row.pop("_id")
        results.append(row)
    return results

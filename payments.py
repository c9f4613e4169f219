"""
Payment and transaction recording.

Each operation writes the Transaction record and the Registration update inside
one `database.transaction` block. Callers may pass an idempotency key: a
request replayed with the same key returns the first result and writes nothing.
For transaction-backed operations the key is stored on the Transaction under a
unique index; for the legacy payment-history operations it is stored on the
history entry and the update is conditional on the key being absent.
"""
import logging
import secrets
import time
from typing import Any, Optional

import pydantic
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import notifications
from database import create_document, parse_object_id, to_str_id, transaction, utcnow
from errors import ConflictError, DownstreamError, NotFoundError, ValidationError
from sanitize import sanitize_financial
from schemas import Financial, PaymentStatus, Transaction

logger = logging.getLogger(__name__)

VALID_STATUSES = {status.value for status in PaymentStatus}


def generate_transaction_id() -> str:
    return f"TXN-{int(time.time() * 1000)}-{secrets.randbelow(10000):04d}"


def _check_amount(amount) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
        raise ValidationError("Amount must be a non-negative number")
    return amount


def _transaction_result(txn: dict, replayed: bool = False) -> dict:
    return {
        "transactionId": txn["transactionId"],
        "registrationId": txn.get("registrationId"),
        "amount": txn["amount"],
        "status": txn.get("status", "completed"),
        "replayed": replayed,
    }


def _replay(db, idempotency_key: Optional[str], registration_id: str) -> Optional[dict]:
    if not idempotency_key:
        return None
    existing = db["transaction"].find_one({"idempotencyKey": idempotency_key})
    if not existing:
        return None
    if existing.get("registrationId") != registration_id:
        raise ConflictError("Idempotency key already used for another registration")
    logger.info(f"Replaying payment {existing['transactionId']} for idempotency key {idempotency_key}")
    return _transaction_result(existing, replayed=True)


def _notify_payment(registration: dict, transaction_id: str, amount):
    try:
        notifications.send_payment_confirmation(registration, transaction_id, amount)
    except DownstreamError as e:
        logger.error(f"Failed to send payment confirmation email: {e.message} ({e.error})")


def _completed_update(transaction_id: str, amount) -> dict:
    return {
        "paymentStatus": PaymentStatus.COMPLETED.value,
        "paymentId": transaction_id,
        "willContribute": True,
        "contributionAmount": amount,
        "lastUpdated": utcnow(),
    }


def process_payment(
    db,
    registration_id: str,
    amount,
    payment_method: Optional[str] = None,
    payment_gateway_response: Any = None,
    is_anonymous: bool = False,
    purpose: str = "registration",
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """Record a completed payment and mark the registration paid."""
    oid = parse_object_id(registration_id, "registration ID")
    amount = _check_amount(amount)
    replay = _replay(db, idempotency_key, str(oid))
    if replay:
        return replay

    transaction_id = generate_transaction_id()
    try:
        with transaction(db) as session:
            registration = db["registration"].find_one({"_id": oid}, session=session)
            if not registration:
                raise NotFoundError("Registration not found")
            txn = Transaction(
                transactionId=transaction_id,
                registrationId=str(oid),
                name=registration.get("name"),
                email=registration.get("email"),
                contactNumber=registration.get("contactNumber"),
                amount=amount,
                paymentMethod=payment_method,
                paymentGatewayResponse=payment_gateway_response,
                status="completed",
                purpose=purpose,
                isAnonymous=is_anonymous,
                notes=notes,
                idempotencyKey=idempotency_key,
                completedAt=utcnow(),
            )
            create_document(db, "transaction", txn, session=session)
            update = _completed_update(transaction_id, amount)
            update["paymentDetails"] = payment_gateway_response
            registration = db["registration"].find_one_and_update(
                {"_id": oid},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
    except DuplicateKeyError:
        replay = _replay(db, idempotency_key, str(oid))
        if replay:
            return replay
        raise

    logger.info(f"Payment processed successfully: {transaction_id} for registration {oid}")
    if not is_anonymous:
        _notify_payment(registration, transaction_id, amount)
    return {
        "transactionId": transaction_id,
        "registrationId": str(oid),
        "amount": amount,
        "status": "completed",
        "replayed": False,
    }


def register_transaction(
    db,
    registration_id: str,
    amount,
    name: Optional[str] = None,
    email: Optional[str] = None,
    contact_number: Optional[str] = None,
    payment_method: Optional[str] = None,
    payment_gateway_response: Any = None,
    is_anonymous: bool = False,
    purpose: str = "registration",
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Record a gateway transaction. Only a `registration` purpose touches the
    registration itself; donations and other purposes are recorded as-is.
    """
    amount = _check_amount(amount)
    for_registration = purpose == "registration"
    oid = parse_object_id(registration_id, "registration ID") if for_registration else None
    replay = _replay(db, idempotency_key, registration_id if oid is None else str(oid))
    if replay:
        return replay

    transaction_id = generate_transaction_id()
    registration = None
    try:
        with transaction(db) as session:
            if for_registration and not db["registration"].find_one({"_id": oid}, {"_id": 1}, session=session):
                raise NotFoundError("Registration not found")
            txn = Transaction(
                transactionId=transaction_id,
                registrationId=registration_id if oid is None else str(oid),
                name=name,
                email=email,
                contactNumber=contact_number,
                amount=amount,
                paymentMethod=payment_method,
                paymentGatewayResponse=payment_gateway_response,
                status="completed",
                purpose=purpose,
                isAnonymous=is_anonymous,
                notes=notes,
                idempotencyKey=idempotency_key,
                completedAt=utcnow(),
            )
            create_document(db, "transaction", txn, session=session)
            if for_registration:
                registration = db["registration"].find_one_and_update(
                    {"_id": oid},
                    {"$set": _completed_update(transaction_id, amount)},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
                if not registration:
                    raise NotFoundError("Registration not found")
    except DuplicateKeyError:
        replay = _replay(db, idempotency_key, registration_id if oid is None else str(oid))
        if replay:
            return replay
        raise

    logger.info(f"Transaction {transaction_id} registered ({purpose}) for {registration_id}")
    if registration and not is_anonymous:
        _notify_payment(registration, transaction_id, amount)
    return {
        "transactionId": transaction_id,
        "registrationId": registration_id if oid is None else str(oid),
        "amount": amount,
        "status": "completed",
        "replayed": False,
    }


def _financial(registration: dict) -> dict:
    return dict(((registration.get("formDataStructured") or {}).get("financial")) or {})


def _history_entry(amount, payment_method, transaction_id, idempotency_key, suffix) -> dict:
    entry = {
        "amount": amount,
        "date": utcnow(),
        "paymentMethod": f"{payment_method}-{suffix}",
        "transactionId": transaction_id,
    }
    if idempotency_key:
        entry["idempotencyKey"] = idempotency_key
    return entry


def _validate_financial(financial: dict) -> dict:
    try:
        return Financial.model_validate(financial).model_dump(exclude_none=True)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid financial data", error=str(e))


def _already_applied(financial: dict, idempotency_key: Optional[str]) -> bool:
    if not idempotency_key:
        return False
    return any(entry.get("idempotencyKey") == idempotency_key for entry in financial.get("paymentHistory") or [])


def _apply_financial(db, oid, idempotency_key, update: dict, session) -> Optional[dict]:
    query = {"_id": oid}
    if idempotency_key:
        query["formDataStructured.financial.paymentHistory.idempotencyKey"] = {"$ne": idempotency_key}
    return db["registration"].find_one_and_update(
        query,
        {"$set": update},
        return_document=ReturnDocument.AFTER,
        session=session,
    )


def update_registration_payment(
    db,
    registration_id: str,
    payment_status: str,
    transaction_id: Optional[str] = None,
    payment_amount=0,
    payment_method: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """Legacy payment update: set the status, complete the form and log the initial payment."""
    oid = parse_object_id(registration_id, "registration ID")
    if payment_status not in VALID_STATUSES:
        raise ValidationError("Invalid payment status")
    status = PaymentStatus.parse(payment_status)
    payment_amount = _check_amount(payment_amount or 0)

    with transaction(db) as session:
        registration = db["registration"].find_one({"_id": oid}, session=session)
        if not registration:
            raise NotFoundError("Registration not found")
        financial = _financial(registration)
        if _already_applied(financial, idempotency_key):
            return to_str_id(registration)

        financial.update(
            {
                "paymentStatus": status.value,
                "paymentId": transaction_id,
                "contributionAmount": payment_amount,
                "willContribute": False,
                "paymentDetails": payment_method,
                "paymentHistory": list(financial.get("paymentHistory") or [])
                + [_history_entry(payment_amount, payment_method, transaction_id, idempotency_key, "Initial")],
            }
        )
        financial = _validate_financial(sanitize_financial(financial))
        updated = _apply_financial(
            db,
            oid,
            idempotency_key,
            {
                "paymentStatus": status.value,
                "paymentId": transaction_id,
                "contributionAmount": financial["contributionAmount"],
                "step8Complete": True,
                "formSubmissionComplete": True,
                "currentStep": 8,
                "formDataStructured.financial": financial,
                "lastUpdated": utcnow(),
            },
            session,
        )

    if updated is None:
        # a concurrent request with the same key won
        return to_str_id(db["registration"].find_one({"_id": oid}))
    logger.info(f"Registration {oid} payment updated to {status.value}")
    return to_str_id(updated)


def add_more_amount(
    db,
    registration_id: str,
    amount,
    transaction_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """Add an additional contribution on top of what the registrant already paid."""
    oid = parse_object_id(registration_id, "registration ID")
    amount = _check_amount(amount)

    with transaction(db) as session:
        registration = db["registration"].find_one({"_id": oid}, session=session)
        if not registration:
            raise NotFoundError("Registration not found")
        financial = _financial(registration)
        if _already_applied(financial, idempotency_key):
            return to_str_id(registration)
        if PaymentStatus.parse(financial.get("paymentStatus")) is PaymentStatus.FINANCIAL_DIFFICULTY:
            raise ValidationError("Cannot add an amount to a registration marked as financial difficulty")

        total = (financial.get("contributionAmount") or 0) + amount
        financial["contributionAmount"] = total
        financial["paymentHistory"] = list(financial.get("paymentHistory") or []) + [
            _history_entry(amount, payment_method, transaction_id, idempotency_key, "Additional")
        ]
        financial = _validate_financial(financial)
        updated = _apply_financial(
            db,
            oid,
            idempotency_key,
            {
                "contributionAmount": total,
                "formDataStructured.financial": financial,
                "lastUpdated": utcnow(),
            },
            session,
        )

    if updated is None:
        return to_str_id(db["registration"].find_one({"_id": oid}))
    logger.info(f"Added {amount} to registration {oid}, total contribution {total}")
    return to_str_id(updated)

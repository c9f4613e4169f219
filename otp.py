"""
OTP issuance and verification for the public registration flow.

A code is bound to an (email, contact number) identity. Verification is limited
by an expiry window and an attempt counter; once verified, the record stays in
place with `verified: true` and is what step 1 of the form checks before it
creates a registration.
"""
import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Optional

import jwt
from pymongo import ReturnDocument

import config
import notifications
from database import utcnow
from errors import (
    AuthorizationError,
    ConflictError,
    DownstreamError,
    NotFoundError,
    InvalidOtpError,
    OtpExpiredError,
    OtpLockedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TOKEN_PURPOSE = "registration-otp"


def generate_otp(length: int = config.OTP_LENGTH) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def identity_filter(email: Optional[str], contact_number: Optional[str]) -> dict:
    """
    Match an OTP record for the given identity. With both identifiers the
    match is exact on the pair; with one, on that field alone.
    """
    if email and contact_number:
        return {"email": email, "contactNumber": contact_number}
    if email:
        return {"email": email}
    if contact_number:
        return {"contactNumber": contact_number}
    raise ValidationError("Email or contact number is required")


def registration_filter(email: Optional[str], contact_number: Optional[str]) -> dict:
    conditions = []
    if email:
        conditions.append({"email": email})
    if contact_number:
        conditions.append({"contactNumber": contact_number})
    if not conditions:
        raise ValidationError("Email or contact number is required")
    return {"$or": conditions}


def _dispatch(email: Optional[str], contact_number: Optional[str], code: str) -> dict:
    """Send the code on every available channel; one channel failing does not stop the other."""
    jobs = {}
    with ThreadPoolExecutor(max_workers=2) as pool:
        if email:
            jobs["email"] = pool.submit(
                notifications.send_email,
                email,
                "OTP Verification for UNMA 2026 Registration",
                notifications.otp_email(code),
            )
        if contact_number:
            jobs["whatsapp"] = pool.submit(notifications.send_whatsapp_otp, contact_number, code)

    delivered = {}
    for channel, future in jobs.items():
        try:
            delivered[channel] = bool(future.result())
        except DownstreamError as e:
            logger.error(f"OTP delivery over {channel} failed: {e.message} ({e.error})")
            delivered[channel] = False
    return delivered


def request_otp(
    db,
    email: Optional[str],
    contact_number: Optional[str],
    is_update_flow: bool = False,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    if not is_update_flow and not (email and contact_number):
        raise ValidationError("Email and contact number are required")
    if is_update_flow and not (email or contact_number):
        raise ValidationError("Email or contact number is required")

    existing = db["registration"].find_one(registration_filter(email, contact_number))
    if not is_update_flow and existing and existing.get("formSubmissionComplete"):
        raise ConflictError(
            "Your registration was successful, should you need to modify your registration data, "
            "kindly wait for the release for update form."
        )
    if is_update_flow and not existing:
        raise ValidationError("No registration found with this email or contact number")

    code = generate_otp()
    fields = {
        "otp": code,
        "createdAt": utcnow(),
        "verified": False,
        "verifiedAt": None,
        "attempts": 0,
        "ipAddress": ip_address,
        "userAgent": user_agent,
    }
    if email:
        fields["email"] = email
    if contact_number:
        fields["contactNumber"] = contact_number

    record = db["otpverification"].find_one_and_update(
        identity_filter(email, contact_number),
        {"$set": fields},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )

    delivered = _dispatch(email, contact_number, code)
    logger.info(f"OTP issued for {email or '-'} / {contact_number or '-'}")

    result = {"otpId": str(record["_id"]), "delivery": delivered}
    if not config.is_production():
        result["otp"] = code
    return result


def issue_verification_token(email: Optional[str], contact_number: Optional[str]) -> str:
    payload = {
        "sub": email or contact_number,
        "email": email,
        "contactNumber": contact_number,
        "purpose": TOKEN_PURPOSE,
        "exp": utcnow() + timedelta(minutes=config.OTP_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def check_verification_token(token: str, email: Optional[str], contact_number: Optional[str]):
    """Reject a token that is expired, forged or issued for another identity."""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthorizationError("Verification token expired")
    except jwt.InvalidTokenError:
        raise AuthorizationError("Invalid verification token")
    if payload.get("purpose") != TOKEN_PURPOSE:
        raise AuthorizationError("Invalid verification token")
    if email and payload.get("email") and payload["email"] != email:
        raise AuthorizationError("Verification token does not match this registration")
    if contact_number and payload.get("contactNumber") and payload["contactNumber"] != contact_number:
        raise AuthorizationError("Verification token does not match this registration")
    return payload


def verify_otp(
    db,
    email: Optional[str],
    contact_number: Optional[str],
    otp: Optional[str],
    is_update_flow: bool = False,
) -> dict:
    if not otp:
        raise ValidationError("OTP is required")
    if not is_update_flow and not (email and contact_number):
        raise ValidationError("Email, contact number and OTP are required")

    otps = db["otpverification"]
    record = otps.find_one(identity_filter(email, contact_number))
    if not record:
        raise NotFoundError("No OTP verification found with this email or contact number")

    now = utcnow()
    if now - record["createdAt"] > timedelta(minutes=config.OTP_EXPIRY_MINUTES):
        raise OtpExpiredError("OTP has expired")

    attempts = record.get("attempts", 0) + 1
    if attempts > config.OTP_MAX_ATTEMPTS:
        otps.delete_one({"_id": record["_id"]})
        logger.warning(f"OTP locked out for {email or '-'} / {contact_number or '-'}")
        raise OtpLockedError("Maximum attempts exceeded. Please request a new OTP.")

    if record["otp"] != otp:
        otps.update_one({"_id": record["_id"]}, {"$set": {"attempts": attempts}})
        raise InvalidOtpError(config.OTP_MAX_ATTEMPTS - attempts)

    otps.update_one(
        {"_id": record["_id"]},
        {"$set": {"attempts": attempts, "verified": True, "verifiedAt": now}},
    )
    logger.info(f"OTP verified for {email or '-'} / {contact_number or '-'}")

    registration = db["registration"].find_one(registration_filter(email, contact_number))
    return {
        "verified": True,
        "verificationToken": issue_verification_token(email, contact_number),
        "existingRegistration": registration is not None,
        "registrationId": str(registration["_id"]) if registration else None,
    }

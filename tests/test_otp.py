from datetime import timedelta

import pytest

import notifications
import otp
from conftest import add_registration
from database import utcnow
from errors import (
    AuthorizationError,
    ConflictError,
    DownstreamError,
    InvalidOtpError,
    NotFoundError,
    OtpExpiredError,
    OtpLockedError,
    ValidationError,
)

EMAIL = "asha@example.com"
CONTACT = "9876543210"


def _otp_record(db, minutes_ago=0, code="123456", attempts=0):
    db["otpverification"].insert_one(
        {
            "email": EMAIL,
            "contactNumber": CONTACT,
            "otp": code,
            "createdAt": utcnow() - timedelta(minutes=minutes_ago),
            "verified": False,
            "attempts": attempts,
        }
    )


def test_request_requires_both_identifiers(db, outbox):
    with pytest.raises(ValidationError):
        otp.request_otp(db, EMAIL, None)


def test_request_upserts_and_dispatches(db, outbox):
    first = otp.request_otp(db, EMAIL, CONTACT)
    second = otp.request_otp(db, EMAIL, CONTACT)

    records = list(db["otpverification"].find())
    assert len(records) == 1
    assert records[0]["otp"] == second["otp"]
    assert records[0]["attempts"] == 0
    assert first["otpId"] == second["otpId"]
    assert second["delivery"] == {"email": True, "whatsapp": True}
    assert [m["to"] for m in outbox["email"]] == [EMAIL, EMAIL]
    assert outbox["whatsapp"][-1] == {"to": CONTACT, "otp": second["otp"]}
    assert second["otp"].isdigit() and len(second["otp"]) == 6


def test_request_resets_attempts(db, outbox):
    _otp_record(db, attempts=4)
    otp.request_otp(db, EMAIL, CONTACT)
    assert db["otpverification"].find_one()["attempts"] == 0


def test_channel_failure_does_not_fail_request(db, outbox, monkeypatch):
    def broken(contact_number, code):
        raise DownstreamError("WhatsApp down")

    monkeypatch.setattr(notifications, "send_whatsapp_otp", broken)
    result = otp.request_otp(db, EMAIL, CONTACT)
    assert result["delivery"] == {"email": True, "whatsapp": False}


def test_complete_registration_blocks_new_otp(db, outbox):
    add_registration(db, formSubmissionComplete=True)
    with pytest.raises(ConflictError):
        otp.request_otp(db, EMAIL, CONTACT)


def test_update_flow_needs_existing_registration(db, outbox):
    with pytest.raises(ValidationError):
        otp.request_otp(db, EMAIL, None, is_update_flow=True)
    add_registration(db, formSubmissionComplete=True)
    assert "otpId" in otp.request_otp(db, EMAIL, None, is_update_flow=True)


def test_verify_success_marks_verified(db):
    _otp_record(db)
    result = otp.verify_otp(db, EMAIL, CONTACT, "123456")
    record = db["otpverification"].find_one()
    assert record["verified"] is True
    assert record["verifiedAt"] is not None
    assert result["existingRegistration"] is False
    assert otp.check_verification_token(result["verificationToken"], EMAIL, CONTACT)["email"] == EMAIL


def test_verify_reports_existing_registration(db):
    registration_id = add_registration(db)
    _otp_record(db)
    result = otp.verify_otp(db, EMAIL, CONTACT, "123456")
    assert result["existingRegistration"] is True
    assert result["registrationId"] == str(registration_id)


def test_verify_just_inside_expiry_window(db):
    _otp_record(db, minutes_ago=59)
    assert otp.verify_otp(db, EMAIL, CONTACT, "123456")["verified"] is True


@pytest.mark.parametrize("code", ["123456", "000000"])
def test_verify_after_expiry_fails(db, code):
    _otp_record(db, minutes_ago=61)
    with pytest.raises(OtpExpiredError):
        otp.verify_otp(db, EMAIL, CONTACT, code)


def test_wrong_code_reports_remaining_attempts(db):
    _otp_record(db)
    with pytest.raises(InvalidOtpError) as exc:
        otp.verify_otp(db, EMAIL, CONTACT, "000000")
    assert exc.value.remaining_attempts == 4
    assert exc.value.status_code == 401
    assert db["otpverification"].find_one()["attempts"] == 1


def test_lockout_after_six_wrong_attempts(db):
    _otp_record(db)
    for _ in range(5):
        with pytest.raises(InvalidOtpError):
            otp.verify_otp(db, EMAIL, CONTACT, "000000")
    with pytest.raises(OtpLockedError):
        otp.verify_otp(db, EMAIL, CONTACT, "000000")

    assert db["otpverification"].find_one({"email": EMAIL}) is None
    with pytest.raises(NotFoundError):
        otp.verify_otp(db, EMAIL, CONTACT, "123456")


def test_pair_lookup_does_not_match_other_contact(db):
    _otp_record(db)
    with pytest.raises(NotFoundError):
        otp.verify_otp(db, EMAIL, "1111111111", "123456")


def test_token_for_other_identity_rejected():
    token = otp.issue_verification_token(EMAIL, CONTACT)
    with pytest.raises(AuthorizationError):
        otp.check_verification_token(token, "someone@example.com", CONTACT)
    with pytest.raises(AuthorizationError):
        otp.check_verification_token("not-a-token", EMAIL, CONTACT)


def test_send_and_verify_routes(client, db, outbox):
    sent = client.post("/registrations/send-otp", json={"email": EMAIL, "contactNumber": CONTACT})
    assert sent.status_code == 200
    code = sent.json()["data"]["otp"]

    wrong = client.post("/registrations/verify-otp", json={"email": EMAIL, "contactNumber": CONTACT, "otp": "x"})
    assert wrong.status_code == 401
    assert wrong.json() == {"status": "error", "message": "Invalid OTP. 4 attempts remaining."}

    ok = client.post("/registrations/verify-otp", json={"email": EMAIL, "contactNumber": CONTACT, "otp": code})
    assert ok.status_code == 200
    assert ok.json()["data"]["verified"] is True

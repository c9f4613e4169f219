import pytest

import registrations
from conftest import add_registration, form_payload, verified_otp
from errors import AuthorizationError, ConflictError, ValidationError
from otp import issue_verification_token

EMAIL = "asha@example.com"
CONTACT = "9876543210"


def test_step_one_requires_verified_otp(db, outbox):
    with pytest.raises(AuthorizationError):
        registrations.save_step(db, 1, form_payload())
    assert db["registration"].count_documents({}) == 0


def test_step_one_creates_registration(db, outbox):
    verified_otp(db)
    result = registrations.save_step(db, 1, form_payload())

    assert result["registrationId"]
    assert result["created"] is True
    assert result["serialNumber"] == 1
    saved = db["registration"].find_one({"email": EMAIL})
    assert saved["contactNumber"] == CONTACT
    assert saved["school"] == "JNV Kasaragod"
    assert saved["emailVerified"] is True
    assert saved["currentStep"] == 1
    assert saved["step1Complete"] is True
    assert saved["paymentStatus"] == "pending"
    assert saved["formDataStructured"]["personalInfo"]["district"] == "Kasaragod"


def test_step_one_checks_supplied_token(db, outbox):
    verified_otp(db)
    token = issue_verification_token("other@example.com", CONTACT)
    with pytest.raises(AuthorizationError):
        registrations.save_step(db, 1, form_payload(), verification_token=token)
    good = issue_verification_token(EMAIL, CONTACT)
    assert registrations.save_step(db, 1, form_payload(), verification_token=good)["created"] is True


def test_verified_otp_must_match_both_identifiers(db, outbox):
    verified_otp(db, contact="1111111111")
    with pytest.raises(AuthorizationError):
        registrations.save_step(db, 1, form_payload())


def test_creation_from_later_step_rejected(db, outbox):
    verified_otp(db)
    with pytest.raises(ValidationError):
        registrations.save_step(db, 3, form_payload())


@pytest.mark.parametrize("step", [0, 9])
def test_step_out_of_range(db, step):
    with pytest.raises(ValidationError):
        registrations.save_step(db, step, form_payload())


def test_empty_step_data_rejected(db):
    with pytest.raises(ValidationError):
        registrations.save_step(db, 2, {})


def test_duplicate_contact_maps_to_conflict(db, outbox):
    db["registration"].create_index([("contactNumber", 1), ("registrationType", 1)], unique=True)
    add_registration(db, email="first@example.com", contact=CONTACT)
    verified_otp(db)
    with pytest.raises(ConflictError) as exc:
        registrations.save_step(db, 1, form_payload())
    assert exc.value.message == "A registration with this email or contact number already exists"


def test_merge_keeps_unsubmitted_keys():
    merged = registrations.merge_form_data(
        {"sponsorship": {"a": 1, "b": 2}, "optional": {"tshirtInterest": "yes"}},
        {"sponsorship": {"b": 3}},
    )
    assert merged == {"sponsorship": {"a": 1, "b": 3}, "optional": {"tshirtInterest": "yes"}}


def test_later_step_merges_into_stored_form(db, outbox):
    verified_otp(db)
    registrations.save_step(db, 1, form_payload(professional={"profession": ["Doctor"], "professionalDetails": "ENT"}))
    result = registrations.save_step(db, 2, form_payload(professional={"profession": ["Doctor"], "keySkills": "surgery"}))

    assert result["created"] is False
    assert result["currentStep"] == 2
    saved = db["registration"].find_one({"email": EMAIL})
    professional = saved["formDataStructured"]["professional"]
    assert professional["profession"] == ["Doctor"]
    assert professional["professionalDetails"] == "ENT"
    assert professional["keySkills"] == "surgery"
    assert saved["step2Complete"] is True


def test_dropping_sponsorship_interest_clears_tier(db, outbox):
    verified_otp(db)
    registrations.save_step(
        db, 1, form_payload(sponsorship={"interestedInSponsorship": True, "sponsorshipTier": "gold"})
    )
    registrations.save_step(db, 4, form_payload(sponsorship={"interestedInSponsorship": False}))
    sponsorship = db["registration"].find_one({"email": EMAIL})["formDataStructured"]["sponsorship"]
    assert sponsorship["sponsorshipTier"] == ""


def test_step_three_mirrors_attendance(db, outbox):
    verified_otp(db)
    registrations.save_step(db, 1, form_payload())
    attendees = {"adults": {"veg": 2, "nonVeg": 1}}
    registrations.save_step(db, 3, form_payload(eventAttendance={"isAttending": True, "attendees": attendees}))

    saved = db["registration"].find_one({"email": EMAIL})
    assert saved["isAttending"] is True
    assert saved["attendees"]["adults"] == {"veg": 2, "nonVeg": 1}
    assert saved["attendees"]["toddlers"] == {"veg": 0, "nonVeg": 0}


def test_final_step_completes_and_sends_confirmation(db, outbox):
    verified_otp(db)
    registrations.save_step(db, 1, form_payload())
    result = registrations.save_step(
        db,
        8,
        form_payload(financial={"willContribute": True, "contributionAmount": 1000, "proposedAmount": 1000}),
    )

    assert result["isComplete"] is True
    assert result["confirmationEmailSent"] is True
    saved = db["registration"].find_one({"email": EMAIL})
    assert saved["formSubmissionComplete"] is True
    assert saved["willContribute"] is True
    assert saved["contributionAmount"] == 1000
    assert outbox["email"][-1]["subject"] == "UNMA 2026 Registration Confirmation"


def test_financial_difficulty_on_final_step(db, outbox):
    verified_otp(db)
    registrations.save_step(db, 1, form_payload())
    registrations.save_step(
        db,
        8,
        form_payload(financial={"paymentStatus": "financial-difficulty", "contributionAmount": 500, "proposedAmount": 500}),
    )
    saved = db["registration"].find_one({"email": EMAIL})
    assert saved["paymentStatus"] == "financial-difficulty"
    assert saved["contributionAmount"] == 0
    assert saved["formDataStructured"]["financial"]["proposedAmount"] == 0


def test_amount_resubmitted_after_financial_difficulty_stays_zero(db, outbox):
    verified_otp(db)
    registrations.save_step(db, 1, form_payload())
    registrations.save_step(db, 8, form_payload(financial={"paymentStatus": "financial-difficulty"}))
    registrations.save_step(db, 8, form_payload(financial={"contributionAmount": 500}))

    saved = db["registration"].find_one({"email": EMAIL})
    assert saved["formDataStructured"]["financial"]["contributionAmount"] == 0
    assert saved["paymentStatus"] == "financial-difficulty"
    assert saved["contributionAmount"] == 0


def test_staff_route_finishes_at_step_seven(client, db, outbox):
    verified_otp(db)
    created = client.post("/registrations/staff/1", json={"stepData": form_payload()})
    assert created.status_code == 201
    assert db["registration"].find_one({"email": EMAIL})["registrationType"] == "Staff"

    finished = client.post("/registrations/staff/7", json={"stepData": form_payload()})
    assert finished.status_code == 200
    assert finished.json()["data"]["isComplete"] is True


def test_step_route_statuses(client, db):
    denied = client.post("/registrations/step/1", json={"stepData": form_payload()})
    assert denied.status_code == 401
    assert denied.json()["status"] == "error"

    verified_otp(db)
    created = client.post("/registrations/step/1", json={"step": 1, "stepData": form_payload()})
    assert created.status_code == 201
    assert created.json()["data"]["registrationId"]

    updated = client.post("/registrations/step/2", json={"stepData": form_payload()})
    assert updated.status_code == 200
    assert updated.json()["data"]["currentStep"] == 2


def test_get_by_contact(client, db):
    add_registration(db)
    found = client.post("/registrations/get-by-contact", json={"contactNumber": CONTACT})
    assert found.status_code == 200
    assert found.json()["data"]["email"] == EMAIL
    missing = client.post("/registrations/get-by-contact", json={"email": "nobody@example.com"})
    assert missing.status_code == 404

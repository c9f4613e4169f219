from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import notifications
from auth import create_token
from database import get_db, utcnow
from main import app


@pytest.fixture
def db():
    return mongomock.MongoClient().unma


@pytest.fixture
def outbox(monkeypatch):
    sent = {"email": [], "whatsapp": []}

    def fake_email(to, subject, html):
        sent["email"].append({"to": to, "subject": subject, "html": html})
        return True

    def fake_whatsapp(contact_number, otp):
        sent["whatsapp"].append({"to": contact_number, "otp": otp})
        return True

    monkeypatch.setattr(notifications, "send_email", fake_email)
    monkeypatch.setattr(notifications, "send_whatsapp_otp", fake_whatsapp)
    return sent


@pytest.fixture
def client(db, outbox):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _admin_headers(db, email, role="admin", schools=None, all_schools=False):
    db["admin"].insert_one(
        {
            "name": email.split("@")[0],
            "email": email,
            "role": role,
            "assignedSchools": schools or [],
            "permissions": {"canViewAllSchools": all_schools},
            "isActive": True,
        }
    )
    return {"Authorization": f"Bearer {create_token({'sub': email})}"}


@pytest.fixture
def super_admin_headers(db):
    return _admin_headers(db, "root@unma.in", role="super_admin")


@pytest.fixture
def admin_headers(db):
    return _admin_headers(db, "staff@unma.in", all_schools=True)


@pytest.fixture
def school_admin_headers(db):
    return _admin_headers(db, "kasaragod@unma.in", role="school_admin", schools=["JNV Kasaragod"])


def form_payload(email="asha@example.com", contact="9876543210", **sections):
    form = {
        "personalInfo": {
            "name": "Asha",
            "email": email,
            "contactNumber": contact,
            "country": "IN",
            "stateUT": "Kerala",
            "district": "Kasaragod",
            "school": "JNV Kasaragod",
            "yearOfPassing": "2005",
        }
    }
    form.update(sections)
    return {"formDataStructured": form}


def verified_otp(db, email="asha@example.com", contact="9876543210"):
    db["otpverification"].insert_one(
        {
            "email": email,
            "contactNumber": contact,
            "otp": "123456",
            "createdAt": utcnow(),
            "verified": True,
            "verifiedAt": utcnow(),
            "attempts": 1,
        }
    )


def add_registration(db, email="asha@example.com", contact="9876543210", days_ago=0, **fields):
    doc = {
        "registrationType": "Alumni",
        "name": "Asha",
        "email": email,
        "contactNumber": contact,
        "school": "JNV Kasaragod",
        "paymentStatus": "pending",
        "formSubmissionComplete": False,
        "currentStep": 1,
        "registrationDate": utcnow() - timedelta(days=days_ago),
        "formDataStructured": {"personalInfo": {"email": email, "contactNumber": contact, "school": "JNV Kasaragod"}},
    }
    doc.update(fields)
    return db["registration"].insert_one(doc).inserted_id

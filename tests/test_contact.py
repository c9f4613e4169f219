import pytest

import contact
from auth import AdminContext
from errors import NotFoundError, ValidationError

ADMIN = AdminContext(id="admin-1", email="staff@unma.in", role="admin")


def _message(db, **overrides):
    data = {"name": "Ravi", "email": "ravi@example.com", "subject": "Hello", "message": "Just saying hi"}
    data.update(overrides)
    return contact.create_message(db, data)


@pytest.mark.parametrize(
    "subject, message, expected",
    [
        ("Refund please", "my card was charged twice", "payment-issue"),
        ("Cannot register", "the form stops", "registration-help"),
        ("Site", "page not working on mobile", "technical-support"),
        ("Summit", "what is the schedule", "summit-related"),
        ("Partnership", "we want to sponsor", "sponsorship"),
        ("Hello", "just saying hi", "general-inquiry"),
    ],
)
def test_categorize(subject, message, expected):
    assert contact.categorize(subject, message) == expected


def test_create_message_categorizes_and_confirms(db, outbox):
    saved = _message(db, subject="Payment failed")
    assert saved["category"] == "payment-issue"
    assert saved["status"] == "new"
    assert saved["source"] == "website-contact-form"
    assert outbox["email"][0]["to"] == "ravi@example.com"


def test_explicit_category_kept(db, outbox):
    saved = _message(db, subject="Payment failed", category="complaint")
    assert saved["category"] == "complaint"


def test_invalid_email_rejected(db, outbox):
    with pytest.raises(ValidationError):
        _message(db, email="not-an-email")


def test_opening_new_message_marks_read(db, outbox):
    saved = _message(db)
    assert contact.get_message(db, saved["_id"])["status"] == "read"
    with pytest.raises(NotFoundError):
        contact.get_message(db, "5f5f5f5f5f5f5f5f5f5f5f5f")


def test_status_update_validates(db, outbox):
    saved = _message(db)
    assert contact.update_status(db, saved["_id"], "resolved")["status"] == "resolved"
    with pytest.raises(ValidationError):
        contact.update_status(db, saved["_id"], "archived")


def test_respond_sets_response_and_emails(db, outbox):
    saved = _message(db)
    updated = contact.respond(db, saved["_id"], ADMIN, "  Thanks, we will call you.  ")
    assert updated["status"] == "responded"
    assert updated["responseData"]["responseMessage"] == "Thanks, we will call you."
    assert updated["responseData"]["respondedBy"] == "admin-1"
    assert outbox["email"][-1]["subject"] == "Re: Hello"


def test_respond_requires_text(db, outbox):
    saved = _message(db)
    with pytest.raises(ValidationError):
        contact.respond(db, saved["_id"], ADMIN, "   ")


def test_notes_are_appended(db, outbox):
    saved = _message(db)
    contact.add_note(db, saved["_id"], ADMIN, "called back")
    updated = contact.add_note(db, saved["_id"], ADMIN, "resolved on phone")
    assert [n["note"] for n in updated["adminNotes"]] == ["called back", "resolved on phone"]


def test_stats_and_unread(db, outbox):
    first = _message(db)
    _message(db, subject="Payment issue")
    contact.update_status(db, first["_id"], "in-progress")

    stats = contact.message_stats(db)
    assert stats["overall"]["total"] == 2
    assert stats["overall"]["new"] == 1
    assert stats["overall"]["inProgress"] == 1
    assert contact.unread_count(db) == 1


def test_list_messages_filters(db, outbox):
    _message(db, subject="Payment issue")
    _message(db, subject="Hello there")
    result = contact.list_messages(db, category="payment-issue")
    assert [m["subject"] for m in result["data"]] == ["Payment issue"]
    assert result["pagination"] == {"total": 1, "page": 1, "pages": 1, "limit": 10}


def test_contact_routes(client, db, admin_headers, super_admin_headers):
    sent = client.post(
        "/contact-messages/send-message",
        json={"email": "ravi@example.com", "subject": "Event schedule", "message": "When does it start?"},
    )
    assert sent.status_code == 201
    message_id = sent.json()["data"]["_id"]

    assert client.get("/contact-messages/unread-count", headers=admin_headers).json()["data"] == {"unreadCount": 1}
    assert client.get(f"/contact-messages/{message_id}", headers=admin_headers).json()["data"]["status"] == "read"

    bulk = {"messageIds": [message_id], "status": "spam"}
    assert client.put("/contact-messages/bulk/status", json=bulk, headers=admin_headers).status_code == 403
    done = client.put("/contact-messages/bulk/status", json=bulk, headers=super_admin_headers)
    assert done.json()["data"] == {"modifiedCount": 1, "matchedCount": 1}

    invalid = client.post(
        "/contact-messages/send-message", json={"email": "nope", "subject": "x", "message": "y"}
    )
    assert invalid.status_code == 400

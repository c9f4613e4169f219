import pytest
import requests

import config
import notifications
from errors import DownstreamError


def test_email_skipped_without_smtp(monkeypatch):
    monkeypatch.setattr(config, "SMTP_HOST", None)
    assert notifications.send_email("a@example.com", "Hi", "<p>hi</p>") is False


def test_whatsapp_skipped_without_key(monkeypatch):
    monkeypatch.setattr(config, "WHATSAPP_API_KEY", "")
    assert notifications.send_whatsapp_otp("9876543210", "123456") is False


def test_whatsapp_failure_raises_downstream(monkeypatch):
    monkeypatch.setattr(config, "WHATSAPP_API_KEY", "key")

    def boom(*args, **kwargs):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(requests, "post", boom)
    with pytest.raises(DownstreamError):
        notifications.send_whatsapp_otp("9876543210", "123456")


def test_whatsapp_posts_template(monkeypatch):
    monkeypatch.setattr(config, "WHATSAPP_API_KEY", "key")
    calls = []

    class Ok:
        def raise_for_status(self):
            return None

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, headers))
        return Ok()

    monkeypatch.setattr(requests, "post", fake_post)
    assert notifications.send_whatsapp_otp("9876543210", "654321") is True
    url, payload, headers = calls[0]
    assert payload["to"] == "9876543210"
    assert payload["template"]["components"][0]["parameters"][0]["text"] == "654321"
    assert headers == {"Authorization": "Bearer key"}


def test_bodies_escape_user_text():
    html = notifications.contact_response_email({"name": "<b>Ravi</b>", "subject": "x"}, "<script>")
    assert "<script>" not in html
    assert "&lt;b&gt;Ravi&lt;/b&gt;" in html


def test_confirmation_includes_serial():
    html = notifications.registration_confirmation_email({"name": "Asha", "serialNumber": 42, "school": "JNV"})
    assert "42" in html

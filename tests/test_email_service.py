import email
import smtplib

import pytest

from conftest import make_settings
from portal.service.email import EmailService


class FakeSMTP:
    """Records what would have been sent."""

    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        if password != "right":
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def sendmail(self, from_addr, to_addr, message):
        FakeSMTP.sent.append((from_addr, to_addr, message))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _bodies(raw):
    message = email.message_from_string(raw)
    parts = [part.get_payload(decode=True).decode("utf-8") for part in message.walk() if not part.is_multipart()]
    return parts[0], parts[1]


def _configured(**overrides):
    options = {
        "smtp_host": "mail.example.com",
        "smtp_user": "portal@example.com",
        "smtp_password": "right",
        "base_url": "https://portal.example.com/",
    }
    options.update(overrides)
    return EmailService(**options)


class TestDevMode:
    def test_unconfigured_service_logs_instead_of_sending(self, smtp):
        service = EmailService()
        assert not service.is_configured
        assert service.send_password_reset("ayse@example.com", "Ayşe", "tok")
        assert smtp.sent == []

    def test_from_settings(self, tmp_path):
        settings = make_settings(
            tmp_path,
            smtp_host="mail.example.com",
            email_from_address="noreply@example.com",
            app_base_url="https://portal.example.com",
            reset_token_ttl_minutes=15,
        )
        service = EmailService.from_settings(settings)
        assert service.is_configured
        assert service.from_email == "noreply@example.com"
        assert service.reset_ttl_minutes == 15


class TestDelivery:
    def test_verification_link(self, smtp):
        assert _configured().send_email_verification("ayse@example.com", "Ayşe", "abc123")
        from_addr, to_addr, message = smtp.sent[0]
        assert from_addr == "portal@example.com"
        assert to_addr == "ayse@example.com"
        text, html_body = _bodies(message)
        assert "https://portal.example.com/verify-email?token=abc123" in text
        assert "Hello Ayşe," in html_body

    def test_reset_link(self, smtp):
        assert _configured().send_password_reset("ayse@example.com", "Ayşe", "xyz789")
        text, _ = _bodies(smtp.sent[0][2])
        assert "https://portal.example.com/reset-password?token=xyz789" in text

    def test_names_are_escaped_in_html(self):
        html_body, text_body = _configured()._render(
            title="t",
            name="<b>Ayşe</b>",
            intro="i",
            url="https://portal.example.com/x?a=1&b=2",
            button="b",
            expiry="e",
            ignore="g",
        )
        assert "&lt;b&gt;" in html_body
        assert "a=1&amp;b=2" in html_body
        assert "<b>Ayşe</b>" in text_body

    def test_missing_name_has_fallback(self):
        _, text_body = _configured()._render(
            title="t", name="", intro="i", url="u", button="b", expiry="e", ignore="g"
        )
        assert "Hello there," in text_body


class TestFailures:
    def test_auth_failure_returns_false(self, smtp):
        service = _configured(smtp_password="wrong")
        assert service.send_password_reset("ayse@example.com", "Ayşe", "tok") is False
        assert smtp.sent == []

    def test_connection_failure_returns_false(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        assert _configured().send_email_verification("ayse@example.com", "Ayşe", "tok") is False

    def test_recipient_is_redacted_in_logs(self):
        service = _configured()
        assert service._redact_email("ayse@example.com") == "ay***@example.com"
        assert service._redact_email("nobody") == "redacted"

"""Tests for the SMTP email service."""

import smtplib

from tokenward.service.email import EmailService, _describe_ttl


class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipient, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        FakeSMTP.sent.append((sender, recipient, message))


def _service():
    return EmailService(
        smtp_host="smtp.test",
        from_email="noreply@test.example",
        base_url="https://auth.test/",
    )


class TestEmailService:
    def test_links_use_base_url(self):
        service = _service()

        assert service.verification_url("a b") == "https://auth.test/verify-email?token=a%20b"
        assert service.reset_url("tok") == "https://auth.test/reset-password?token=tok"

    def test_unconfigured_service_logs_instead_of_sending(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        FakeSMTP.sent = []

        assert EmailService().send_verification_email("a@example.com", "tok") is True
        assert FakeSMTP.sent == []

    def test_sends_over_smtp(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        FakeSMTP.sent = []
        FakeSMTP.fail_with = None

        assert _service().send_password_reset_email("a@example.com", "tok") is True
        sender, recipient, message = FakeSMTP.sent[0]
        assert sender == "noreply@test.example"
        assert recipient == "a@example.com"
        assert "reset-password?token=tok" in message

    def test_smtp_failure_reported_not_raised(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        FakeSMTP.fail_with = smtplib.SMTPServerDisconnected("gone")
        try:
            assert _service().send_verification_email("a@example.com", "tok") is False
        finally:
            FakeSMTP.fail_with = None

    def test_describe_ttl(self):
        assert _describe_ttl(3600) == "1 hour"
        assert _describe_ttl(86400) == "24 hours"
        assert _describe_ttl(900) == "15 minutes"

from authcore.service import email as email_module
from authcore.service.email import EmailService, register_email_handlers
from authcore.service.events import (
    EventBus,
    PasswordChanged,
    PasswordResetRequested,
    UserDeleted,
    UserRegistered,
)


def test_dev_mode_records_outbox():
    service = EmailService()
    assert not service.is_configured
    assert service.send_welcome("a@example.com", needs_verification=True)
    assert service.outbox == [("a@example.com", "Welcome to authcore")]


def test_handlers_follow_events():
    bus = EventBus()
    service = EmailService(from_name="Acme")
    register_email_handlers(bus, service)

    bus.publish(UserRegistered(user_id="u", email="a@example.com", email_verified=True))
    bus.publish(UserDeleted(user_id="u", email="a@example.com"))
    assert [subject for _, subject in service.outbox] == [
        "Welcome to Acme",
        "Your Acme account was deleted",
    ]


def test_verification_link_only_when_unverified(monkeypatch):
    bodies = []
    service = EmailService(base_url="https://app.example.com/")
    monkeypatch.setattr(
        service, "_send_email", lambda to, subject, body: bodies.append(body) or True
    )

    service.send_welcome("a@example.com", needs_verification=True)
    service.send_welcome("a@example.com", needs_verification=False)
    assert "https://app.example.com/verify-email" in bodies[0]
    assert "verify-email" not in bodies[1]


def test_smtp_failure_returns_false(monkeypatch):
    class FailingSMTP:
        def __init__(self, *args, **kwargs):
            raise OSError("connection refused")

    monkeypatch.setattr(email_module.smtplib, "SMTP", FailingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    assert service.is_configured
    assert service.send_account_deleted("a@example.com") is False


def test_smtp_send(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            pass

        def login(self, user, password):
            sent.append(("login", user))

        def sendmail(self, from_addr, to_addr, message):
            sent.append(("sendmail", from_addr, to_addr))

    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    assert service.send_welcome("a@example.com", needs_verification=False)
    assert sent == [("login", "mailer"), ("sendmail", "noreply@example.com", "a@example.com")]
    assert service.outbox == []


def test_password_mails_follow_events(monkeypatch):
    bus = EventBus()
    service = EmailService(from_name="Acme", base_url="https://app.example.com")
    register_email_handlers(bus, service)
    bodies = []
    send = service._send_email

    def capture(to, subject, body):
        bodies.append(body)
        return send(to, subject, body)

    monkeypatch.setattr(service, "_send_email", capture)

    bus.publish(PasswordResetRequested(user_id="u", email="a@example.com", token="reset-tok"))
    bus.publish(PasswordChanged(user_id="u", email="a@example.com", via_reset=True))
    assert [subject for _, subject in service.outbox] == [
        "Reset your Acme password",
        "Your Acme password was changed",
    ]
    assert "https://app.example.com/reset-password?token=reset-tok" in bodies[0]
    assert "15 minutes" in bodies[0]


def test_reset_token_hidden_from_event_repr():
    event = PasswordResetRequested(user_id="u", email="a@example.com", token="reset-tok")
    assert "reset-tok" not in repr(event)

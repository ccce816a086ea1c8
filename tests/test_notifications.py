import smtplib

import pytest

from orderflow.application.notifications import format_money
from orderflow.core_settings import Settings
from orderflow.domain.errors import NotificationError
from orderflow.infrastructure import mailer
from orderflow.infrastructure.mailer import SmtpNotificationSink


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.messages = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.messages.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_smtp_sink_sends_plain_text(fake_smtp):
    sink = SmtpNotificationSink(Settings(MAIL_USERNAME="shop@example.com", MAIL_PASSWORD="app-password"))

    result = sink.send("buyer@example.com", "Order #123456 received", "Hello")

    smtp = fake_smtp.instances[0]
    assert smtp.logged_in == ("shop@example.com", "app-password")
    msg = smtp.messages[0]
    assert msg["To"] == "buyer@example.com"
    assert msg["Reply-To"] == "shop@example.com"
    assert result["message_id"] == msg["Message-ID"]


def test_smtp_sink_without_password_refuses(fake_smtp):
    with pytest.raises(NotificationError):
        SmtpNotificationSink(Settings(MAIL_PASSWORD=None)).send("a@example.com", "s", "t")
    assert fake_smtp.instances == []


def test_smtp_failure_becomes_notification_error(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "try later")

    monkeypatch.setattr(mailer.smtplib, "SMTP", refuse)
    with pytest.raises(NotificationError):
        SmtpNotificationSink(Settings(MAIL_PASSWORD="pw")).send("a@example.com", "s", "t")


def test_failed_delivery_is_reported_not_raised(notifier, sink, make_product, place_order):
    order = place_order((make_product(), 1))
    sink.fail = True

    assert notifier.payment_success(order) is False
    assert notifier.operator_alert("Pool empty", "details", order.id) is False


def test_order_mail_content(notifier, sink, make_product, place_order):
    order = place_order((make_product(name="Spotify 1 month", price=59000), 2), note="for my brother")

    created = sink.matching("received")[0]
    assert f"#{order.order_code}" in created["subject"]
    assert "Spotify 1 month" in created["text"]
    assert format_money(118000) in created["text"]
    assert order.checkout_url in created["text"]
    admin = sink.matching("] created")[0]
    assert admin["to"] == "ops@example.com"


def test_format_money():
    assert format_money(1500000) == "1.500.000 VND"

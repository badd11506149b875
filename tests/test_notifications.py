from datetime import datetime

import pytest

import notifications
from notifications import (
    Message, MemoryNotifier, NotificationDispatcher, SmtpNotifier, build_notifier,
    invitation_message, reminder_message, completion_notice,
)

pytestmark = pytest.mark.unit


class _Course:
    title = "Fire Safety"


def test_background_worker_delivers_queued_messages():
    notifier = MemoryNotifier()
    dispatcher = NotificationDispatcher(notifier)

    dispatcher.dispatch(Message("a@x.com", "Hi", "<p>hi</p>"))
    dispatcher.dispatch(Message("b@x.com", "Hi", "<p>hi</p>"))
    dispatcher.stop()

    assert [m.to for m in notifier.sent] == ["a@x.com", "b@x.com"]


def test_dispatch_never_raises_but_deliver_does():
    notifier = MemoryNotifier(failing={"down@x.com"})
    dispatcher = NotificationDispatcher(notifier, sync=True)

    dispatcher.dispatch(Message("down@x.com", "Hi", ""))
    dispatcher.dispatch(None)
    dispatcher.dispatch(Message("", "Hi", ""))

    assert notifier.sent == []
    with pytest.raises(ConnectionError):
        dispatcher.deliver(Message("down@x.com", "Hi", ""))


def test_invitation_links_token_or_login_page():
    deadline = datetime(2024, 4, 1)

    with_token = invitation_message("a@x.com", _Course(), deadline, "http://lms", token="abc")
    known_user = invitation_message("a@x.com", _Course(), deadline, "http://lms")

    assert "http://lms/course-access/abc" in with_token.html
    assert "01/04/2024" in with_token.html
    assert "http://lms/login" in known_user.html
    assert reminder_message("a@x.com", _Course(), None, "http://lms").subject == "Reminder: Fire Safety"


def test_completion_notice_needs_hr_address():
    assert completion_notice(None, object(), _Course(), object()) is None


class _FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.calls = []
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        self.calls.append("ehlo")

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def send_message(self, msg):
        self.calls.append(("send", msg["To"], msg["Subject"]))


def test_smtp_notifier_uses_starttls_and_login(monkeypatch):
    _FakeSMTP.instances.clear()
    monkeypatch.setattr(notifications.smtplib, "SMTP", _FakeSMTP)

    SmtpNotifier("smtp.x.com", 587, user="bot", password="pw").send("a@x.com", "Hello", "<p>x</p>")

    calls = _FakeSMTP.instances[0].calls
    assert "starttls" in calls
    assert ("login", "bot") in calls
    assert ("send", "a@x.com", "Hello") in calls


def test_build_notifier_defaults_to_smtp():
    notifier = build_notifier({"SMTP_HOST": "smtp.x.com", "SMTP_PORT": 25, "SMTP_FROM": "lms@x.com"})

    assert isinstance(notifier, SmtpNotifier)
    assert (notifier.host, notifier.port, notifier.sender) == ("smtp.x.com", 25, "lms@x.com")

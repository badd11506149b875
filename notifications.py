"""
Envio de e-mails (convites, lembretes, certificado, aviso ao RH)

O envio nunca faz parte da transação: o engine grava, dá commit e só então
entrega a mensagem ao dispatcher. Falha de SMTP só gera log.
"""

import logging
import queue
import smtplib
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional

from flask import current_app
from markupsafe import Markup

log = logging.getLogger(__name__)


@dataclass
class Message:
    to: str
    subject: str
    html: str


# =========================
# Notifiers (transporte)
# =========================
class Notifier:
    def send(self, to: str, subject: str, html: str) -> None:
        raise NotImplementedError


class SmtpNotifier(Notifier):
    def __init__(self, host, port, user=None, password=None, sender="noreply@traintrack.com", timeout=20):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def send(self, to, subject, html):
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("Este e-mail requer um cliente com suporte a HTML.")
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.ehlo()
            if self.port == 587:
                smtp.starttls()
                smtp.ehlo()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.send_message(msg)


class MemoryNotifier(Notifier):
    """Guarda as mensagens em memória (testes). `failing` simula destinatários com erro."""

    def __init__(self, failing=None):
        self.sent: List[Message] = []
        self.failing = set(failing or ())

    def send(self, to, subject, html):
        if to in self.failing:
            raise ConnectionError(f"SMTP recusou {to}")
        self.sent.append(Message(to, subject, html))

    def to(self, address) -> List[Message]:
        return [m for m in self.sent if m.to == address]


# =========================
# Dispatcher (fila + worker)
# =========================
class NotificationDispatcher:
    def __init__(self, notifier: Notifier, sync: bool = False):
        self.notifier = notifier
        self.sync = sync
        self._queue: "queue.Queue[Optional[Message]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self.sync or (self._thread and self._thread.is_alive()):
            return
        self._thread = threading.Thread(target=self._run, name="notification-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        if self._thread and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout)

    def deliver(self, message: Message) -> None:
        """Envio síncrono; propaga o erro do transporte para quem chamou."""
        self.notifier.send(message.to, message.subject, message.html)

    def dispatch(self, message: Optional[Message]) -> None:
        """Fire-and-forget: nunca levanta exceção."""
        if message is None or not message.to:
            return
        if self.sync:
            self._safe_send(message)
            return
        self.start()
        self._queue.put(message)

    def _safe_send(self, message: Message) -> bool:
        try:
            self.deliver(message)
            return True
        except Exception as e:
            log.warning("Falha ao enviar e-mail para %s (%s): %s", message.to, message.subject, e)
            return False

    def _run(self):
        while True:
            message = self._queue.get()
            try:
                if message is None:
                    return
                self._safe_send(message)
            finally:
                self._queue.task_done()


def build_notifier(config) -> Notifier:
    notifier = config.get("NOTIFIER")
    if notifier is not None:
        return notifier
    return SmtpNotifier(
        host=config["SMTP_HOST"],
        port=config["SMTP_PORT"],
        user=config.get("SMTP_USER"),
        password=config.get("SMTP_PASS"),
        sender=config.get("SMTP_FROM") or "noreply@traintrack.com",
    )


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions["notifications"]


# =========================
# Mensagens
# =========================
# Markup.format escapa todo valor interpolado (nome, curso, assinatura...)
_LAYOUT = Markup("""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2 style="color: #1e3a8a;">{title}</h2>
      {body}
      <p style="color: #6b7280; font-size: 12px;">TrainTrack LMS</p>
    </div>
    """)


def _layout(title, body) -> str:
    return str(_LAYOUT.format(title=title, body=body))


def _fmt_date(dt):
    return dt.strftime("%d/%m/%Y") if dt else "-"


def _access_link(base_url, token):
    return f"{base_url}/course-access/{token}" if token else f"{base_url}/login"


def invitation_message(to, course, deadline, base_url, token=None) -> Message:
    body = Markup("""
      <p>You have been assigned the training course <strong>{title}</strong>.</p>
      <p>Please complete it by <strong>{deadline}</strong>.</p>
      <p><a href="{link}">Start the course</a></p>
    """).format(title=course.title, deadline=_fmt_date(deadline), link=_access_link(base_url, token))
    return Message(to, f"Training assignment: {course.title}", _layout("New course assignment", body))


def reminder_message(to, course, deadline, base_url, token=None) -> Message:
    body = Markup("""
      <p>This is a reminder that <strong>{title}</strong> is still pending.</p>
      <p>Deadline: <strong>{deadline}</strong>.</p>
      <p><a href="{link}">Continue the course</a></p>
    """).format(title=course.title, deadline=_fmt_date(deadline), link=_access_link(base_url, token))
    return Message(to, f"Reminder: {course.title}", _layout("Training reminder", body))


def certificate_message(user, course, certificate) -> Message:
    data = certificate.certificate_data or {}
    expires = data.get("expiresAt")
    validity = Markup("<p>Valid until: <strong>{}</strong></p>").format(expires[:10]) if expires else ""
    body = Markup("""
      <p>Congratulations {name}! You completed <strong>{title}</strong>.</p>
      <p>Certificate ID: <strong>{code}</strong></p>
      <p>Score: {score}%</p>
      {validity}
    """).format(
        name=user.name,
        title=course.title,
        code=data.get("certificateId", "-"),
        score=data.get("score", "-"),
        validity=validity,
    )
    return Message(user.email, f"Certificate issued: {course.title}", _layout("Certificate of completion", body))


def completion_notice(hr_email, user, course, certificate) -> Optional[Message]:
    if not hr_email:
        return None
    data = certificate.certificate_data or {}
    body = Markup("""
      <p><strong>{name}</strong> ({email}) completed <strong>{title}</strong>.</p>
      <p>Employee ID: {employee_id} | Department: {department}</p>
      <p>Score: {score}% | Certificate: {code}</p>
    """).format(
        name=user.name,
        email=user.email,
        title=course.title,
        employee_id=user.employee_id or "-",
        department=user.department or "-",
        score=data.get("score", "-"),
        code=data.get("certificateId", "-"),
    )
    return Message(hr_email, f"Training completed: {user.name} - {course.title}", _layout("Training completion", body))


def password_reset_message(user, token, base_url) -> Message:
    body = Markup("""
      <p>Hello {name},</p>
      <p>A password reset was requested for your account. The link is valid for one hour.</p>
      <p><a href="{link}">Reset password</a></p>
      <p>If you did not request this, ignore this e-mail.</p>
    """).format(name=user.name, link=f"{base_url}/reset-password?token={token}")
    return Message(user.email, "Password reset", _layout("Password reset", body))

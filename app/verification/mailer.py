from __future__ import annotations

import logging
import smtplib
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Iterator

import requests

from app.utils.masking import mask_email
from app.verification.errors import DeliveryError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMail:
    to: str
    subject: str
    html_body: str


class MailSender(ABC):
    """`send` returns on success and raises DeliveryError otherwise. Never retried here."""

    @abstractmethod
    def send(self, to: str, subject: str, html_body: str) -> None: ...


class ConsoleMailSender(MailSender):
    """Logs instead of sending and keeps the last messages for local runs and tests."""

    def __init__(self, *, keep: int = 100):
        self._outbox: deque[OutboundMail] = deque(maxlen=keep)
        self._lock = threading.Lock()

    def send(self, to: str, subject: str, html_body: str) -> None:
        with self._lock:
            self._outbox.append(OutboundMail(to=to, subject=subject, html_body=html_body))
        log.info("mail (console) to=%s subject=%s", mask_email(to), subject)

    @property
    def outbox(self) -> list[OutboundMail]:
        with self._lock:
            return list(self._outbox)

    def last_to(self, to: str) -> OutboundMail | None:
        for mail in reversed(self.outbox):
            if mail.to == to:
                return mail
        return None


class SmtpMailSender(MailSender):
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str,
        use_tls: bool = True,
        use_ssl: bool = False,
        timeout: int = 15,
    ):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._sender = sender
        self._use_ssl = use_ssl
        self._use_tls = use_tls and not use_ssl
        self._timeout = timeout

    @contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        if self._use_ssl:
            server: smtplib.SMTP = smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        else:
            server = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        try:
            if self._use_tls:
                server.starttls()
            if self._username and self._password:
                server.login(self._username, self._password)
            yield server
        finally:
            try:
                server.quit()
            except smtplib.SMTPException:
                log.debug("SMTP quit failed", exc_info=True)

    def send(self, to: str, subject: str, html_body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._sender
        msg["To"] = to
        msg.set_content("This message requires an HTML-capable email client.")
        msg.add_alternative(html_body, subtype="html")
        try:
            with self._connection() as smtp:
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            log.warning("smtp send failed to=%s err=%s", mask_email(to), type(e).__name__)
            raise DeliveryError(details={"transport": "smtp", "error": type(e).__name__}) from e
        log.info("mail sent to=%s subject=%s", mask_email(to), subject)


class WebhookMailSender(MailSender):
    """POSTs `{to, subject, htmlBody}` as JSON to a mail relay."""

    def __init__(self, *, url: str, token: str = "", sender: str = "", timeout: int = 15, session=None):
        self._url = str(url or "").strip()
        self._token = token
        self._sender = sender
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, to: str, subject: str, html_body: str) -> None:
        if not self._url:
            raise DeliveryError(details={"transport": "webhook", "error": "MAIL_WEBHOOK_URL not configured"})
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        payload = {"to": to, "from": self._sender, "subject": subject, "htmlBody": html_body}
        try:
            resp = self._session.post(self._url, json=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as e:
            log.warning("mail webhook failed to=%s err=%s", mask_email(to), type(e).__name__)
            raise DeliveryError(details={"transport": "webhook", "error": type(e).__name__}) from e
        if resp.status_code >= 300:
            log.warning("mail webhook rejected to=%s status=%s", mask_email(to), resp.status_code)
            raise DeliveryError(details={"transport": "webhook", "status": resp.status_code})
        log.info("mail sent to=%s subject=%s", mask_email(to), subject)

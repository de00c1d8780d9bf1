"""Outbound email for statements, SAFT exports and digests."""

import abc
import base64
import logging
import mimetypes
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import requests

from .config import read_bool
from .errors import ConfigurationError, NotificationError

LOGGER = logging.getLogger(__name__)


@dataclass
class Attachment:
    """Either a file on disk (path) or an in-memory buffer (content)."""

    filename: str
    path: Optional[str] = None
    content: Optional[bytes] = None
    content_type: Optional[str] = None

    def read(self) -> bytes:
        if self.content is not None:
            return self.content
        if not self.path:
            raise ValueError(f"Attachment {self.filename} has neither path nor content")
        with open(self.path, "rb") as fh:
            return fh.read()

    @property
    def mime_type(self) -> str:
        return self.content_type or mimetypes.guess_type(self.filename)[0] or "application/octet-stream"


class EmailClient(abc.ABC):
    @abc.abstractmethod
    def send(self, to: str, subject: str, text: str, attachments: Sequence[Attachment] = ()) -> None:
        """Deliver one message or raise NotificationError."""


class ConsoleEmailClient(EmailClient):
    """Logs messages instead of sending them; used for dry runs and tests."""

    def __init__(self) -> None:
        self.records: List[Dict[str, object]] = []

    def send(self, to: str, subject: str, text: str, attachments: Sequence[Attachment] = ()) -> None:
        names = [a.filename for a in attachments]
        self.records.append({"to": to, "subject": subject, "text": text, "attachments": names})
        LOGGER.info("[console] Email to %s: %s (attachments: %s)", to, subject, ", ".join(names) or "none")


class SendGridEmailClient(EmailClient):
    endpoint = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: Optional[str], sender_email: Optional[str], sender_name: Optional[str] = None,
                 sandbox_mode: bool = False, timeout: float = 10.0):
        if not api_key:
            raise ConfigurationError("SENDGRID_API_KEY is required to send email.")
        if not sender_email:
            raise ConfigurationError("SENDGRID_SENDER_EMAIL is required to send email.")
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name or "Owner Portal"
        self.sandbox_mode = sandbox_mode
        self.timeout = timeout

    def build_payload(self, to: str, subject: str, text: str, attachments: Sequence[Attachment]) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender_email, "name": self.sender_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}],
        }
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(a.read()).decode("ascii"),
                    "filename": a.filename,
                    "type": a.mime_type,
                    "disposition": "attachment",
                }
                for a in attachments
            ]
        if self.sandbox_mode:
            payload["mail_settings"] = {"sandbox_mode": {"enable": True}}
        return payload

    def send(self, to: str, subject: str, text: str, attachments: Sequence[Attachment] = ()) -> None:
        payload = self.build_payload(to, subject, text, attachments)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            resp = requests.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"Network error contacting SendGrid: {e}") from e
        if resp.status_code >= 400:
            raise NotificationError(f"SendGrid rejected message to {to}: HTTP {resp.status_code} {resp.text}")
        LOGGER.info("Email sent to %s: %s", to, subject)


def build_email_client_from_env(fallback_to_console: bool = True) -> EmailClient:
    transport = os.getenv("EMAIL_TRANSPORT", "auto").strip().lower()
    if transport == "console":
        return ConsoleEmailClient()
    try:
        return SendGridEmailClient(
            api_key=os.getenv("SENDGRID_API_KEY"),
            sender_email=os.getenv("SENDGRID_SENDER_EMAIL") or os.getenv("EMAIL_FROM"),
            sender_name=os.getenv("SENDGRID_SENDER_NAME"),
            sandbox_mode=read_bool("SENDGRID_SANDBOX_MODE"),
        )
    except ConfigurationError as e:
        if transport == "sendgrid" or not fallback_to_console:
            raise
        LOGGER.warning("%s; falling back to console output.", e)
        return ConsoleEmailClient()

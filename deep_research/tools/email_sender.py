"""Report delivery through the SendGrid v3 mail API."""

from __future__ import annotations

import base64
from typing import Protocol

import httpx
from loguru import logger

from deep_research.config import settings

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
ATTACHMENT_NAME = "research-report.pdf"


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str, attachment: bytes) -> None: ...


class SendGridEmailSender:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        email_from: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = settings.sendgrid_api_key if api_key is None else api_key
        self.email_from = settings.email_from if email_from is None else email_from
        self._transport = transport

    async def send(self, to: str, subject: str, body: str, attachment: bytes) -> None:
        if not self.api_key:
            raise RuntimeError("SENDGRID_API_KEY is not set")
        if not self.email_from:
            raise RuntimeError("EMAIL_FROM is not set")

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.email_from},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
            "attachments": [
                {
                    "content": base64.b64encode(attachment).decode("ascii"),
                    "filename": ATTACHMENT_NAME,
                    "type": "application/pdf",
                    "disposition": "attachment",
                }
            ],
        }
        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            response = await client.post(
                SENDGRID_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
            )
        if response.status_code >= 400:
            raise RuntimeError(f"SendGrid error: {response.text}")
        logger.info(f"Report email accepted by SendGrid for {to}")


class StubEmailSender:
    """Records messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, to: str, subject: str, body: str, attachment: bytes) -> None:
        self.sent.append({"to": to, "subject": subject, "body": body, "attachment": attachment})
        logger.info(f"[stub] report email to {to}: {subject}")


def build_email_sender() -> EmailSender:
    return StubEmailSender() if settings.stub_email else SendGridEmailSender()

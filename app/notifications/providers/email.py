import asyncio
import logging
import smtplib
from email.message import EmailMessage

import httpx

from app.notifications.providers.base import EmailPayload, ProviderError, SendResult, post_with_timeout

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class SmtpEmailProvider:
    name = "smtp"

    def __init__(self, host: str, port: int, user: str, password: str, sender: str | None = None, timeout: float = 15.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    def _build_message(self, payload: EmailPayload) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = payload.to
        message["Subject"] = payload.subject
        message.set_content(payload.text)
        if payload.html:
            message.add_alternative(payload.html, subtype="html")
        return message

    def _send_blocking(self, message: EmailMessage) -> None:
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as client:
                client.login(self.user, self.password)
                client.send_message(message)
            return
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
            client.starttls()
            client.login(self.user, self.password)
            client.send_message(message)

    async def send(self, payload: EmailPayload) -> SendResult:
        message = self._build_message(payload)
        try:
            await asyncio.wait_for(asyncio.to_thread(self._send_blocking, message), timeout=self.timeout + 1)
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"SMTP timed out after {self.timeout:.0f}s", transient=True) from exc
        except smtplib.SMTPResponseException as exc:
            # 4xx replies are temporary by SMTP convention, 5xx are final.
            raise ProviderError(
                f"SMTP failed: {exc.smtp_code} {exc.smtp_error!r}",
                transient=400 <= exc.smtp_code < 500,
            ) from exc
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, OSError) as exc:
            raise ProviderError(f"SMTP network error: {exc}", transient=True) from exc
        except smtplib.SMTPException as exc:
            raise ProviderError(f"SMTP failed: {exc}") from exc
        return SendResult(provider=self.name, message_id=message.get("Message-ID"))


class ResendEmailProvider:
    name = "resend"

    def __init__(self, api_key: str, sender: str, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._client = client

    async def send(self, payload: EmailPayload) -> SendResult:
        body = {"from": self.sender, "to": payload.to, "subject": payload.subject, "text": payload.text}
        if payload.html:
            body["html"] = payload.html
        response = await post_with_timeout(
            self._client,
            "Resend",
            RESEND_API_URL,
            self.timeout,
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return SendResult(provider=self.name, message_id=message_id)


class HttpEmailGatewayProvider:
    name = "email-gateway"

    def __init__(self, url: str, api_key: str | None = None, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def send(self, payload: EmailPayload) -> SendResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        await post_with_timeout(
            self._client,
            "Email gateway",
            self.url,
            self.timeout,
            json={"to": payload.to, "subject": payload.subject, "message": payload.text},
            headers=headers,
        )
        return SendResult(provider=self.name)

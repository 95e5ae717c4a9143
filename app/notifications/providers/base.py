import asyncio
from dataclasses import dataclass
from typing import Protocol

import httpx

from app.notifications.retry import is_transient_http_status


class ProviderError(Exception):
    """Delivery failure reported by a channel provider."""

    def __init__(self, message: str, http_status: int | None = None, transient: bool = False):
        self.message = message
        self.http_status = http_status
        self.transient = transient
        super().__init__(message)

    @classmethod
    def from_response(cls, provider: str, response: httpx.Response) -> "ProviderError":
        detail = (response.text or "").strip()[:300]
        return cls(
            f"{provider} failed: {response.status_code} {detail}".strip(),
            http_status=response.status_code,
            transient=is_transient_http_status(response.status_code),
        )


class ProviderNotConfigured(ProviderError):
    def __init__(self, channel: str):
        super().__init__(f"No {channel} provider configured", transient=False)


def is_retryable(exc: BaseException) -> bool:
    """Network-level failures and 408/429/5xx answers are worth another attempt."""
    if isinstance(exc, ProviderError):
        return exc.transient
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError, TimeoutError))


@dataclass(frozen=True)
class EmailPayload:
    to: str
    subject: str
    text: str
    html: str | None = None


@dataclass(frozen=True)
class SmsPayload:
    to: str
    message: str


@dataclass(frozen=True)
class SendResult:
    provider: str
    message_id: str | None = None


class EmailProvider(Protocol):
    name: str

    async def send(self, payload: EmailPayload) -> SendResult:
        ...


class SmsProvider(Protocol):
    name: str

    async def send(self, payload: SmsPayload) -> SendResult:
        ...


async def post_with_timeout(
    client: httpx.AsyncClient | None,
    provider: str,
    url: str,
    timeout: float,
    **kwargs,
) -> httpx.Response:
    return await _request(client, provider, "POST", url, timeout, **kwargs)


async def get_with_timeout(
    client: httpx.AsyncClient | None,
    provider: str,
    url: str,
    timeout: float,
    **kwargs,
) -> httpx.Response:
    return await _request(client, provider, "GET", url, timeout, **kwargs)


async def _request(
    client: httpx.AsyncClient | None,
    provider: str,
    method: str,
    url: str,
    timeout: float,
    **kwargs,
) -> httpx.Response:
    try:
        if client is not None:
            response = await client.request(method, url, timeout=timeout, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderError(f"{provider} timed out after {timeout:.0f}s", transient=True) from exc
    except httpx.TransportError as exc:
        raise ProviderError(f"{provider} network error: {exc}", transient=True) from exc

    if response.is_error:
        raise ProviderError.from_response(provider, response)
    return response

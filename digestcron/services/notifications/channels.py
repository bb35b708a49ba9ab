from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

import httpx

from digestcron.core.config import Settings, get_settings
from digestcron.core.errors import ChannelError, PermanentChannelError, TransientChannelError
from digestcron.services.resilience import (
    RetryPolicy,
    RetryableError,
    default_is_retryable,
    default_retry_policy,
    retry_async,
)
from digestcron.services.telemetry import increment_counter, record_send


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingEmail:
    to: list[str]
    subject: str
    body: str
    cc: list[str] | None = None


@dataclass(frozen=True)
class SendReceipt:
    attempts: int
    id: str | None = None


class EmailSender(Protocol):
    async def send(self, message: OutgoingEmail) -> SendReceipt: ...


class SlackPoster(Protocol):
    async def post(self, webhook_url: str, text: str) -> SendReceipt: ...


class WebhookPoster(Protocol):
    async def post(self, url: str, payload: dict[str, Any]) -> SendReceipt: ...


@dataclass
class ChannelSenders:
    email: EmailSender
    slack: SlackPoster
    webhook: WebhookPoster


def classify_response(channel: str, response: httpx.Response) -> ChannelError:
    # 429 and 5xx are worth retrying; other 4xx are final.
    status = int(response.status_code)
    message = f"{channel} responded {status}"
    if status == 429 or status >= 500:
        return TransientChannelError(message, kind="http", status=status)
    return PermanentChannelError(message, kind="http", status=status)


def _raise_final(channel: str, error: RetryableError, attempts: int) -> None:
    error_cls = TransientChannelError if default_is_retryable(error) else PermanentChannelError
    raise error_cls(error.message, kind=error.kind, status=error.status, code=error.code, attempts=attempts)


async def _post_with_retry(
    channel: str,
    call: Callable[[], Awaitable[httpx.Response]],
    *,
    policy: RetryPolicy | None,
) -> tuple[httpx.Response, int]:
    # Every channel shares the same attempt/budget rules and surfaces attempts to callers.
    async def _attempt() -> httpx.Response:
        response = await call()
        if response.status_code >= 400:
            raise classify_response(channel, response)
        return response

    started = time.perf_counter()
    result = await retry_async(_attempt, policy=policy or default_retry_policy())
    latency_ms = (time.perf_counter() - started) * 1000.0
    record_send(channel=channel, latency_ms=latency_ms, success=result.ok, attempts=result.attempts)
    if not result.ok or result.value is None:
        increment_counter(f"send_failures_total.{channel}")
        _raise_final(channel, result.error or RetryableError(kind="network", message="send failed"), result.attempts)
    increment_counter(f"sends_total.{channel}")
    return result.value, result.attempts


class _HttpChannel:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._policy = policy

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        timeout_s = max(0.2, self._settings.ext_call_timeout_ms / 1000.0)
        if self._client is not None:
            return await self._client.post(url, timeout=timeout_s, **kwargs)
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await client.post(url, **kwargs)


class HttpSlackPoster(_HttpChannel):
    async def post(self, webhook_url: str, text: str) -> SendReceipt:
        _response, attempts = await _post_with_retry(
            "slack",
            lambda: self._post(webhook_url, json={"text": text}),
            policy=self._policy,
        )
        return SendReceipt(attempts=attempts)


class HttpWebhookPoster(_HttpChannel):
    async def post(self, url: str, payload: dict[str, Any]) -> SendReceipt:
        _response, attempts = await _post_with_retry(
            "webhook",
            lambda: self._post(url, json=payload, headers={"Content-Type": "application/json"}),
            policy=self._policy,
        )
        return SendReceipt(attempts=attempts)


def build_mime_message(message: OutgoingEmail, *, sender: str | None) -> bytes:
    mime = EmailMessage()
    mime["To"] = ", ".join(message.to)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    if sender:
        mime["From"] = sender
    mime["Subject"] = message.subject
    mime.set_content(message.body)
    return mime.as_bytes()


class GmailEmailSender(_HttpChannel):
    """Send mail through the Gmail REST API as the service identity."""

    def __init__(
        self,
        access_token: str,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(settings=settings, client=client, policy=policy)
        self._access_token = access_token

    async def send(self, message: OutgoingEmail) -> SendReceipt:
        raw = base64.urlsafe_b64encode(build_mime_message(message, sender=self._settings.email_from)).decode("ascii")
        response, attempts = await _post_with_retry(
            "email",
            lambda: self._post(
                self._settings.gmail_send_url,
                json={"raw": raw},
                headers={"Authorization": f"Bearer {self._access_token}"},
            ),
            policy=self._policy,
        )
        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return SendReceipt(attempts=attempts, id=message_id)


class NoopEmailSender:
    """Log instead of sending; used when no mail provider is configured."""

    async def send(self, message: OutgoingEmail) -> SendReceipt:
        logger.info("email_noop_send to=%s subject=%s", ",".join(message.to), message.subject)
        increment_counter("sends_total.email_noop")
        return SendReceipt(attempts=1, id=f"noop-{uuid4().hex}")


def build_channel_senders(*, access_token: str | None, settings: Settings | None = None) -> ChannelSenders:
    settings = settings or get_settings()
    if settings.email_provider.lower() == "gmail" and access_token:
        email: EmailSender = GmailEmailSender(access_token, settings=settings)
    else:
        email = NoopEmailSender()
    return ChannelSenders(
        email=email,
        slack=HttpSlackPoster(settings=settings),
        webhook=HttpWebhookPoster(settings=settings),
    )

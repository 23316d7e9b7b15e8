from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from .config import Settings

logger = logging.getLogger(__name__)

SmsResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class SmsSendResult:
    status: SmsResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    response_message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == "sent"


class SmsTransport(Protocol):
    def send_sms(self, to_number: str, body: str) -> SmsSendResult: ...


class StubSmsTransport:
    """Local transport: succeeds unless disabled or the number is listed in ``fail_numbers``."""

    def __init__(self, *, enabled: bool, fail_numbers: set[str] | None = None) -> None:
        self._enabled = enabled
        self._fail_numbers = frozenset(fail_numbers or ())
        self.sent: list[tuple[str, str]] = []

    def send_sms(self, to_number: str, body: str) -> SmsSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="sms_disabled",
                response_message="SMS delivery is disabled",
            )

        if to_number in self._fail_numbers:
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                response_message=f"Stub transport forced failure for {mask_contact_number(to_number)}",
            )

        self.sent.append((to_number, body))
        message_id = f"stub-{len(self.sent)}-{int(attempted_at.timestamp())}"
        return SmsSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id,
            response_message="Message accepted",
        )


class _SmsSendError(Exception):
    """Internal error raised when an SMS gateway request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpSmsTransport:
    """Gateway transport that posts one JSON message per call."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        sender_name: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._sender_name = sender_name.strip()
        self._timeout_seconds = timeout_seconds

    def send_sms(self, to_number: str, body: str) -> SmsSendResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "to": to_number,
            "message": body,
            "sender_name": self._sender_name,
        }

        try:
            response_data = self._post(request_payload)
        except _SmsSendError as exc:
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                response_message=f"{exc.message} (recipient: {mask_contact_number(to_number)})",
            )

        if str(response_data.get("status", "sent")).lower() not in {"sent", "queued", "accepted", "ok"}:
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="gateway_rejected",
                response_message=str(response_data.get("message") or response_data.get("status")),
            )

        return SmsSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id"),
            response_message=str(response_data.get("message") or "Message accepted"),
        )

    def _post(self, body: dict[str, str]) -> dict[str, str]:
        """Send a POST request to the gateway messages endpoint."""
        url = f"{self._base_url}/v1/sms/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _SmsSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _SmsSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _SmsSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _SmsSendError(
                error_code="invalid_response",
                message=f"Gateway returned invalid JSON: {exc}",
            ) from exc


def create_sms_transport(settings: Settings) -> SmsTransport:
    if settings.sms_transport_type == "http":
        if not settings.sms_api_base_url.strip() or not settings.sms_api_key.strip():
            logger.warning("SMS_TRANSPORT_TYPE=http without gateway credentials; SMS delivery is disabled")
            return StubSmsTransport(enabled=False)
        return HttpSmsTransport(
            base_url=settings.sms_api_base_url,
            api_key=settings.sms_api_key,
            sender_name=settings.sms_sender_name,
            timeout_seconds=settings.sms_timeout_seconds,
        )
    return StubSmsTransport(enabled=settings.sms_enabled)


def mask_contact_number(contact_number: str) -> str:
    normalized = contact_number.strip()
    if not normalized:
        return "***"

    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"

from __future__ import annotations

import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from disconnection_web.config import Settings
from disconnection_web.sms_transport import (
    HttpSmsTransport,
    StubSmsTransport,
    create_sms_transport,
    mask_contact_number,
)


def _make_transport(
    *,
    base_url: str = "https://sms.gateway.test/",
    api_key: str = "test-api-key-abc123",
) -> HttpSmsTransport:
    return HttpSmsTransport(base_url=base_url, api_key=api_key, sender_name="WATERUTIL", timeout_seconds=5)


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("disconnection_web.sms_transport.urllib.request.urlopen")
def test_http_transport_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "sms-123", "status": "queued"})

    result = _make_transport().send_sms("09171234567", "Hello Juan")

    assert result.status == "sent"
    assert result.is_success
    assert result.provider_message_id == "sms-123"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://sms.gateway.test/v1/sms/send"
    assert request_arg.get_header("Authorization") == "Bearer test-api-key-abc123"
    assert request_arg.get_header("Content-type") == "application/json"
    assert mock_urlopen.call_args.kwargs["timeout"] == 5
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body == {"to": "09171234567", "message": "Hello Juan", "sender_name": "WATERUTIL"}


@patch("disconnection_web.sms_transport.urllib.request.urlopen")
def test_http_transport_gateway_rejection(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"status": "rejected", "message": "invalid number"})

    result = _make_transport().send_sms("0917", "Hello")

    assert result.status == "failed"
    assert result.error_code == "gateway_rejected"
    assert result.response_message == "invalid number"


@patch("disconnection_web.sms_transport.urllib.request.urlopen")
def test_http_transport_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://sms.gateway.test/v1/sms/send",
        code=503,
        msg="Service Unavailable",
        hdrs=None,  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_transport().send_sms("09171234567", "Hello")

    assert result.status == "failed"
    assert result.error_code == "http_503"
    assert result.response_message is not None
    assert "HTTP 503" in result.response_message
    assert "***4567" in result.response_message
    assert "09171234567" not in result.response_message


@patch("disconnection_web.sms_transport.urllib.request.urlopen")
def test_http_transport_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(reason="Name or service not known")

    result = _make_transport().send_sms("09171234567", "Hello")

    assert result.status == "failed"
    assert result.error_code == "connection_error"


@patch("disconnection_web.sms_transport.urllib.request.urlopen")
def test_http_transport_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_transport().send_sms("09171234567", "Hello")

    assert result.status == "failed"
    assert result.error_code == "timeout"


def test_http_transport_requires_url_and_key() -> None:
    with pytest.raises(ValueError, match="base_url"):
        _make_transport(base_url="  ")
    with pytest.raises(ValueError, match="api_key"):
        _make_transport(api_key="")


def test_stub_transport_honours_enabled_flag_and_forced_failures() -> None:
    disabled = StubSmsTransport(enabled=False).send_sms("0917", "Hi")
    assert disabled.status == "failed"
    assert disabled.error_code == "sms_disabled"

    stub = StubSmsTransport(enabled=True, fail_numbers={"09990000000"})
    assert stub.send_sms("09990000000", "Hi").error_code == "stub_delivery_failed"
    delivered = stub.send_sms("09171234567", "Hi")
    assert delivered.is_success
    assert stub.sent == [("09171234567", "Hi")]


def test_create_sms_transport_selects_implementation() -> None:
    assert isinstance(create_sms_transport(Settings()), StubSmsTransport)
    http = create_sms_transport(
        Settings(sms_transport_type="http", sms_api_base_url="https://sms.gateway.test", sms_api_key="key")
    )
    assert isinstance(http, HttpSmsTransport)

    missing_credentials = create_sms_transport(Settings(sms_transport_type="http"))
    assert isinstance(missing_credentials, StubSmsTransport)
    assert missing_credentials.send_sms("0917", "Hi").error_code == "sms_disabled"


def test_mask_contact_number() -> None:
    assert mask_contact_number("+63 917 123 4567") == "***4567"
    assert mask_contact_number("") == "***"
    assert mask_contact_number("abc") == "***"
    assert mask_contact_number("abcdef") == "ab***ef"

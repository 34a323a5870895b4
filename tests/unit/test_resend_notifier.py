from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from timecapsule.clients.resend import ResendNotifier


def _notifier(handler) -> ResendNotifier:
    return ResendNotifier(api_key="re_test", sender="Capsule <hi@example.com>", transport=httpx.MockTransport(handler))


def _send(notifier: ResendNotifier):
    return asyncio.run(notifier.send(to="friend@example.com", subject="Ready", html_body="<p>hi</p>"))


@pytest.mark.unit
def test_accepted_message_returns_provider_id() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "email_123"})

    result = _send(_notifier(_handler))

    assert result.delivered is True
    assert result.external_id == "email_123"
    assert seen[0].headers["Authorization"] == "Bearer re_test"
    body = json.loads(seen[0].content)
    assert body == {
        "from": "Capsule <hi@example.com>",
        "to": ["friend@example.com"],
        "subject": "Ready",
        "html": "<p>hi</p>",
    }


@pytest.mark.unit
def test_forbidden_with_message_id_counts_as_delivered() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"id": "email_456", "message": "testing domain"})

    result = _send(_notifier(_handler))

    assert result.delivered is True
    assert result.external_id == "email_456"


@pytest.mark.unit
def test_free_tier_rejection_gets_actionable_reason() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "You can only send testing emails to your own address"})

    result = _send(_notifier(_handler))

    assert result.delivered is False
    assert result.error_code == "notifier_rejected"
    assert "free tier" in result.reason


@pytest.mark.unit
def test_validation_rejection_keeps_provider_message() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "Invalid `to` field"})

    result = _send(_notifier(_handler))

    assert result.delivered is False
    assert result.error_code == "notifier_rejected"
    assert result.reason == "Invalid `to` field"
    assert result.status_code == 422


@pytest.mark.unit
def test_server_error_is_unavailable() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    result = _send(_notifier(_handler))

    assert result.error_code == "notifier_unavailable"
    assert result.reason == "Email provider answered HTTP 502"


@pytest.mark.unit
def test_transport_timeout_maps_to_timeout_code() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    result = _send(_notifier(_handler))

    assert result.delivered is False
    assert result.error_code == "notifier_timeout"


@pytest.mark.unit
def test_connection_error_maps_to_unavailable_code() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    result = _send(_notifier(_handler))

    assert result.error_code == "notifier_unavailable"

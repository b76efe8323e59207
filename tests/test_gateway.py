"""
제공사 게이트웨이 테스트 (httpx.MockTransport로 제공사 API 흉내)
"""
import asyncio
import hashlib
import hmac
import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from gamehub.services.errors import ProviderError, UnknownProviderFamily
from gamehub.services.gateway import GatewayRegistry, HttpProviderGateway


def make_gateway(handler, secret="s3cret"):
    client = httpx.AsyncClient(base_url="https://provider.example", transport=httpx.MockTransport(handler))
    return HttpProviderGateway("honor", "https://provider.example", api_key="key-1", api_secret=secret, client=client)


def test_requests_are_signed():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json={"launch_url": "https://honor.example/play/201", "session_id": "p-1"})

    gateway = make_gateway(handler)
    ticket = asyncio.run(gateway.get_launch_url("user-1", 201))

    assert ticket.launch_url == "https://honor.example/play/201"
    assert ticket.session_id == "p-1"
    request = seen[0]
    assert request.url.path == "/game/launch"
    assert request.headers["X-Api-Key"] == "key-1"
    expected = hmac.new(b"s3cret", request.content, hashlib.sha256).hexdigest()
    assert request.headers["X-Signature"] == expected
    assert json.loads(request.content) == {"user_id": "user-1", "game_id": 201}


def test_withdraw_parses_amount_and_deltas():
    def handler(request: httpx.Request):
        return httpx.Response(200, json={"ok": True, "amount": "1500.50", "bet_total": "300", "win_total": "120"})

    result = asyncio.run(make_gateway(handler).withdraw("user-1", "honor"))

    assert result.amount == Decimal("1500.50")
    assert result.bet_total == Decimal("300")
    assert result.win_total == Decimal("120")


def test_http_errors_become_provider_errors():
    def handler(request: httpx.Request):
        return httpx.Response(503, json={"error": "maintenance"})

    registry = GatewayRegistry({"honor": make_gateway(handler)}, timeout=1.0)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(registry.get("honor").deposit("user-1", Decimal("100")))

    assert exc_info.value.family == "honor"
    assert exc_info.value.operation == "deposit"
    assert exc_info.value.timed_out is False


def test_rejected_deposit_is_provider_error():
    def handler(request: httpx.Request):
        return httpx.Response(200, json={"ok": False, "error": "wallet locked"})

    registry = GatewayRegistry({"honor": make_gateway(handler)}, timeout=1.0)

    with pytest.raises(ProviderError):
        asyncio.run(registry.get("honor").deposit("user-1", Decimal("100")))


def test_query_active_session():
    def handler(request: httpx.Request):
        assert request.method == "GET"
        assert request.url.path == "/sessions/user-1"
        return httpx.Response(200, json={"is_active": True, "game_id": 201, "status": "playing"})

    state = asyncio.run(make_gateway(handler).query_active_session("user-1"))

    assert state.is_active is True
    assert state.family == "honor"
    assert state.game_id == 201


def test_registry_from_settings_and_unknown_family():
    settings = SimpleNamespace(
        PROVIDER_CALL_TIMEOUT_SECONDS=3.0,
        PROVIDER_ENDPOINTS={"invest": {"base_url": "https://invest.example", "api_key": "k"}}
    )

    registry = GatewayRegistry.from_settings(settings)

    assert registry.families() == ["invest"]
    assert registry.get("invest").timeout == 3.0
    with pytest.raises(UnknownProviderFamily):
        registry.get("oroplay")
    asyncio.run(registry.aclose())

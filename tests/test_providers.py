import base64
import json

import httpx
import pytest
from datetime import datetime, timezone
from quota_tracker.config import ProviderConfig
from quota_tracker.errors import CredentialMissing, ProtocolError, TransportError
from quota_tracker.models import ProviderKind
from quota_tracker.providers import create_provider
from quota_tracker.providers.chatgpt import (
    AUTH_CLAIMS_KEY,
    ChatGPTProvider,
    decode_jwt_payload,
    looks_like_jwt,
)
from quota_tracker.providers.minimax import MiniMaxProvider
from quota_tracker.providers.openai import OpenAIProvider
from quota_tracker.providers.tavily import TavilyProvider


def make_jwt(claims: dict) -> str:
    def encode(part: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(part).encode()).decode().rstrip("=")

    return f"{encode({'alg': 'RS256', 'typ': 'JWT'})}.{encode(claims)}.signature"


def test_create_provider():
    provider = create_provider(ProviderKind.TAVILY, ProviderConfig(api_key="tvly-key"))
    assert isinstance(provider, TavilyProvider)
    assert create_provider("minimax", ProviderConfig(api_key="k")).name == "minimax"

    with pytest.raises(ValueError, match="Unknown provider"):
        create_provider("anthropic", ProviderConfig(api_key="k"))


@pytest.mark.asyncio
async def test_missing_credential_skips_network():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    provider = TavilyProvider(ProviderConfig(api_key="   "), transport=httpx.MockTransport(handler))
    with pytest.raises(CredentialMissing) as exc_info:
        await provider.fetch_usage()

    assert str(exc_info.value) == "No API key configured"
    assert calls == []


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = TavilyProvider(ProviderConfig(api_key="tvly-key"), transport=httpx.MockTransport(handler))
    with pytest.raises(TransportError) as exc_info:
        await provider._request_json(TavilyProvider.API_URL)

    assert str(exc_info.value) == "Network error: connection refused"


# MiniMax

def test_minimax_parse_coding_plan():
    provider = MiniMaxProvider(ProviderConfig(api_key="mm-key"))
    usage = provider.parse_coding_plan({
        "base_resp": {"status_code": 0, "status_msg": "success"},
        "model_remains": [
            {
                "current_interval_usage_count": 120,
                "current_interval_total_count": 300,
                "end_time": 1769776934422,
            }
        ],
    })

    assert usage.primary.remaining == 120
    assert usage.primary.total == 300
    assert usage.primary.used == 180
    assert usage.primary.reset_at == datetime(2026, 1, 30, 12, 42, 14, 422000, tzinfo=timezone.utc)


def test_minimax_coding_plan_error_status():
    provider = MiniMaxProvider(ProviderConfig(api_key="mm-key"))
    assert provider.parse_coding_plan(
        {"base_resp": {"status_code": 1004, "status_msg": "cookie is missing"}}
    ) is None


@pytest.mark.asyncio
async def test_minimax_falls_back_to_pay_as_you_go():
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == MiniMaxProvider.CODING_PLAN_URL:
            return httpx.Response(200, json={"base_resp": {"status_code": 2049}})
        return httpx.Response(200, json={"data": {"balance": "88.5"}})

    provider = MiniMaxProvider(ProviderConfig(api_key="mm-key"), transport=httpx.MockTransport(handler))
    usage = await provider.fetch_usage()

    assert usage.primary.remaining == 88.5
    assert usage.primary.total is None


# Tavily

def test_tavily_key_limit_wins():
    provider = TavilyProvider(ProviderConfig(api_key="tvly-key"))
    usage = provider.parse_usage({
        "key": {"usage": 250, "limit": 1000},
        "account": {"current_plan": "Researcher", "plan_usage": 400, "plan_limit": 5000},
    })

    assert usage.primary.total == 1000
    assert usage.primary.used == 250
    assert usage.primary.remaining == 750
    assert usage.subscription_plan == "Researcher"


def test_tavily_falls_back_to_plan_limit():
    provider = TavilyProvider(ProviderConfig(api_key="tvly-key"))
    usage = provider.parse_usage({
        "key": {"usage": None, "limit": 0},
        "account": {"plan_usage": 400, "plan_limit": 5000},
    })

    assert usage.primary.total == 5000
    assert usage.primary.used == 400
    assert usage.subscription_plan is None


# OpenAI

@pytest.mark.asyncio
async def test_openai_subscription_and_month_usage():
    seen_params = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/subscription"):
            return httpx.Response(200, json={"hard_limit_usd": 120, "plan": {"title": "Pay-as-you-go"}})
        seen_params.update(request.url.params)
        return httpx.Response(200, json={"total_usage": 4550})

    provider = OpenAIProvider(ProviderConfig(api_key="sk-openai"), transport=httpx.MockTransport(handler))
    usage = await provider.fetch_usage()

    assert usage.primary.total == 120
    assert usage.primary.used == 45.5
    assert usage.primary.remaining == 74.5
    assert usage.subscription_plan == "Pay-as-you-go"
    assert set(seen_params) == {"start_date", "end_date"}


@pytest.mark.asyncio
async def test_openai_invalid_key():
    provider = OpenAIProvider(
        ProviderConfig(api_key="sk-bad"),
        transport=httpx.MockTransport(lambda request: httpx.Response(401)),
    )
    with pytest.raises(ProtocolError) as exc_info:
        await provider.fetch_usage()

    assert exc_info.value.is_auth_error
    assert str(exc_info.value) == "HTTP 401: Invalid API Key"


def test_openai_month_range():
    provider = OpenAIProvider(ProviderConfig(api_key="sk-openai"))
    assert provider._month_range(datetime(2024, 2, 17).date()) == ("2024-02-01", "2024-02-29")
    assert provider._month_range(datetime(2024, 12, 3).date()) == ("2024-12-01", "2024-12-31")


# ChatGPT

def test_jwt_helpers():
    token = make_jwt({"sub": "user-1234567890", "exp": 1900000000})
    assert looks_like_jwt(token)
    assert not looks_like_jwt("session-cookie-value")
    assert decode_jwt_payload(token)["sub"] == "user-1234567890"
    assert decode_jwt_payload("not.a-jwt") is None


def test_chatgpt_parse_usage_message_cap():
    provider = ChatGPTProvider(ProviderConfig(api_key="token"))
    usage = provider.parse_usage(
        {"message_cap": {"remaining": 20, "cap": 80, "reset_at": "2030-01-01T00:00:00Z"}},
        {"account": {
            "plan_type": "plus",
            "is_paid_subscription_active": True,
            "next_billing_date": "2030-02-01T00:00:00Z",
        }},
    )

    assert usage.primary.remaining == 20
    assert usage.primary.total == 80
    assert usage.primary.used == 60
    assert usage.primary.reset_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert usage.secondary.reset_at == datetime(2030, 2, 1, tzinfo=timezone.utc)
    assert usage.subscription_plan == "plus"


def test_chatgpt_parse_usage_subscription_only():
    provider = ChatGPTProvider(ProviderConfig(api_key="token"))
    usage = provider.parse_usage(None, {"is_paid_subscription_active": "true"})

    assert usage.subscription_plan == "active"
    assert not usage.primary.has_data


def test_chatgpt_parse_usage_jwt_fallback():
    provider = ChatGPTProvider(ProviderConfig(api_key="token"))
    usage = provider.parse_usage(
        None, None, {AUTH_CLAIMS_KEY: {"chatgpt_plan_type": "Pro"}, "exp": 1900000000}
    )

    assert usage.subscription_plan == "pro"
    assert usage.secondary.reset_at == datetime.fromtimestamp(1900000000, tz=timezone.utc)


def test_chatgpt_parse_usage_nothing():
    provider = ChatGPTProvider(ProviderConfig(api_key="token"))
    assert provider.parse_usage({}, {}, None) is None


@pytest.mark.asyncio
async def test_chatgpt_fetch_with_access_token():
    token = make_jwt({"sub": "user-1234567890", AUTH_CLAIMS_KEY: {"chatgpt_plan_type": "plus"}})

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == f"Bearer {token}"
        assert request.headers["oai-device-id"]
        if "chat-requirements" in request.url.path:
            return httpx.Response(200, json={"limits": {"remaining_messages": 35, "message_cap": 40}})
        return httpx.Response(200, json={"account": {"plan_type": "plus"}})

    provider = ChatGPTProvider(ProviderConfig(api_key=token), transport=httpx.MockTransport(handler))
    usage = await provider.fetch_usage()

    assert usage.primary.remaining == 35
    assert usage.primary.total == 40
    assert usage.subscription_plan == "plus"


@pytest.mark.asyncio
async def test_chatgpt_cookie_exchange_failure_is_auth_error():
    provider = ChatGPTProvider(
        ProviderConfig(api_key="cookie-value"),
        transport=httpx.MockTransport(lambda request: httpx.Response(403)),
    )
    with pytest.raises(ProtocolError) as exc_info:
        await provider.fetch_usage()

    assert exc_info.value.status_code == 401

import httpx
import pytest
from datetime import datetime, timezone
from quota_tracker.providers.kimi import KimiProvider
from quota_tracker.config import ProviderConfig
from quota_tracker.errors import ProtocolError


@pytest.fixture
def kimi_provider():
    config = ProviderConfig(api_key="test-key")
    return KimiProvider(config)


@pytest.fixture
def sample_kimi_response():
    return {
        "user": {
            "userId": "11111111111111111111",
            "region": "REGION_CN",
            "membership": {
                "level": "LEVEL_TRIAL"
            },
            "businessId": ""
        },
        "usage": {
            "limit": "100",
            "used": "13",
            "remaining": "87",
            "resetTime": "2026-02-06T08:31:59.863136Z"
        },
        "limits": [
            {
                "window": {
                    "duration": 300,
                    "timeUnit": "TIME_UNIT_MINUTE"
                },
                "detail": {
                    "limit": "100",
                    "used": "65",
                    "remaining": "35",
                    "resetTime": "2026-01-30T13:31:59.863136Z"
                }
            }
        ]
    }


def test_kimi_authenticate(kimi_provider):
    kimi_provider.authenticate()
    assert kimi_provider._headers["Authorization"] == "Bearer test-key"
    assert kimi_provider._headers["Content-Type"] == "application/json"


def test_kimi_parse_usage(kimi_provider, sample_kimi_response):
    usage = kimi_provider.parse_usage(sample_kimi_response)

    assert usage.subscription_plan == "Trial"

    # Primary cycle comes from the top-level usage object
    assert usage.primary.total == 100
    assert usage.primary.used == 13
    assert usage.primary.remaining == 87
    assert usage.primary.reset_at == datetime(2026, 2, 6, 8, 31, 59, 863136, tzinfo=timezone.utc)

    # Secondary cycle is the 300 minute window from the limits array
    assert usage.secondary.window == "300 minute"
    assert usage.secondary.total == 100
    assert usage.secondary.used == 65
    assert usage.secondary.remaining == 35
    assert usage.secondary.reset_at == datetime(2026, 1, 30, 13, 31, 59, 863136, tzinfo=timezone.utc)


def test_kimi_parse_usage_derives_missing_counter(kimi_provider):
    usage = kimi_provider.parse_usage({"usage": {"limit": "100", "remaining": "40"}})
    assert usage.primary.used == 60


def test_kimi_limit_selection_prefers_soonest_reset(kimi_provider):
    now = datetime.now(timezone.utc)
    soon = int(now.timestamp()) + 600
    later = int(now.timestamp()) + 86_400
    raw = {
        "limits": [
            {"detail": {"limit": 10, "used": 1, "resetTime": later}},
            {"detail": {"limit": 20, "used": 5, "resetTime": soon}},
        ]
    }
    usage = kimi_provider.parse_usage(raw)
    assert usage.secondary.total == 20


def test_kimi_candidate_order_by_key_prefix():
    code_key = KimiProvider(ProviderConfig(api_key="sk-kimi-abc"))
    platform_key = KimiProvider(ProviderConfig(api_key="sk-abc"))

    assert [label for label, _ in code_key.candidates()][0] == "Kimi Code"
    assert [label for label, _ in platform_key.candidates()][0] == "Moonshot Open Platform"


def test_kimi_parse_balance(kimi_provider):
    usage = kimi_provider.parse_balance(
        {"data": {"available_balance": 49.5, "voucher_balance": 10, "cash_balance": 39.5}}
    )
    assert usage.primary.remaining == 49.5
    assert usage.secondary.remaining == 10
    assert usage.subscription_plan == "Open Platform"


def test_kimi_parse_legacy_wallet_and_stats(kimi_provider):
    usage = kimi_provider.parse_legacy(
        {"data": {"available_balance": "30"}},
        {"total_tokens": 700, "monthly_quota": 1000, "reset_timestamp": 1769776934422},
    )
    assert usage.primary.used == 700
    assert usage.primary.total == 1000
    assert usage.primary.remaining == 300
    assert usage.primary.reset_at == datetime(2026, 1, 30, 12, 42, 14, 422000, tzinfo=timezone.utc)


def test_kimi_parse_legacy_nothing(kimi_provider):
    assert kimi_provider.parse_legacy(None, None) is None


@pytest.mark.asyncio
async def test_kimi_falls_back_to_second_moonshot_host():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.host == "api.moonshot.cn":
            return httpx.Response(503)
        if request.url.host == "api.moonshot.ai":
            return httpx.Response(200, json={"data": {"available_balance": 12}})
        return httpx.Response(404)

    provider = KimiProvider(ProviderConfig(api_key="sk-abc"), transport=httpx.MockTransport(handler))
    usage = await provider.fetch_usage()

    assert usage.primary.remaining == 12
    assert seen == [
        "https://api.moonshot.cn/v1/users/me/balance",
        "https://api.moonshot.ai/v1/users/me/balance",
    ]


@pytest.mark.asyncio
async def test_kimi_reports_first_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.kimi.com":
            return httpx.Response(401, json={"error": {"message": "invalid key"}})
        return httpx.Response(404)

    provider = KimiProvider(
        ProviderConfig(api_key="sk-kimi-bad"), transport=httpx.MockTransport(handler)
    )
    with pytest.raises(ProtocolError) as exc_info:
        await provider.fetch_usage()

    assert exc_info.value.status_code == 401
    assert str(exc_info.value) == "HTTP 401: invalid key"


@pytest.mark.asyncio
async def test_kimi_unexpected_payload_falls_through():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.kimi.com":
            return httpx.Response(200, json={"usage": ["unexpected"]})
        if request.url.host == "api.moonshot.cn":
            return httpx.Response(200, json={"data": {"available_balance": 7}})
        return httpx.Response(404)

    provider = KimiProvider(ProviderConfig(api_key="sk-kimi-x"), transport=httpx.MockTransport(handler))
    usage = await provider.fetch_usage()

    assert usage.primary.remaining == 7


@pytest.mark.asyncio
async def test_kimi_keeps_earliest_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.kimi.com":
            return httpx.Response(401, json={"error": {"message": "invalid key"}})
        if request.url.host == "api.moonshot.cn":
            return httpx.Response(403, json={"error": {"message": "forbidden"}})
        return httpx.Response(404)

    provider = KimiProvider(
        ProviderConfig(api_key="sk-kimi-bad"), transport=httpx.MockTransport(handler)
    )
    with pytest.raises(ProtocolError) as exc_info:
        await provider.fetch_usage()

    assert exc_info.value.status_code == 401

from datetime import datetime, timezone
from quota_tracker.formatter import format_amount, format_plan, format_usage_simple
from quota_tracker.models import (
    Account,
    CycleMetrics,
    CycleQuota,
    ProviderKind,
    ResolvedSnapshot,
    build_aggregate,
    error_aggregate,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_format_amount():
    assert format_amount(None) == "--"
    assert format_amount(42) == "42"
    assert format_amount(1234) == "1.2K"


def test_format_plan():
    assert format_plan(None) is None
    assert format_plan("plus") == "Plus"
    assert format_plan("active") == "Subscribed"
    assert format_plan("lite") == "Lite"


def test_format_usage_simple():
    ok = build_aggregate(
        Account(id="kimi", name="Work", provider=ProviderKind.KIMI, api_key="k"),
        ResolvedSnapshot(
            primary=CycleQuota.from_metrics(
                CycleMetrics(total=100000, used=75500),
                reset_at=NOW,
                is_estimated=True,
            ),
            subscription_plan="Trial",
        ),
        NOW,
    )
    failed = error_aggregate(
        Account(id="openai", provider=ProviderKind.OPENAI, api_key="k"),
        "HTTP 401: Invalid API Key",
        NOW,
    )

    output = format_usage_simple([ok, failed])

    assert "Account: Work [KIMI (Moonshot)]" in output
    assert "Plan: Trial" in output
    assert "75.5K/100.0K (75.5%) (remaining: 24.5K)" in output
    assert "(estimated)" in output
    assert "Account: OpenAI API [OpenAI API]" in output
    assert "Error: HTTP 401: Invalid API Key" in output

import logging
from datetime import datetime
from typing import Any

from ..errors import ProtocolError, TransportError
from ..extractor import (
    coverage_score,
    parse_date_string,
    parse_epoch,
    parse_number,
    pick_number,
    pick_timestamp,
    reset_priority,
)
from ..models import CycleMetrics, UsageSnapshot
from .base import BaseProvider, Candidate

logger = logging.getLogger(__name__)

KIMI_CODE_KEY_PREFIX = "sk-kimi-"
RESET_KEYS = ("resetTime", "reset_time", "nextResetTime", "next_reset_time")


class KimiProvider(BaseProvider):
    """Kimi Code / Moonshot open platform usage provider."""

    API_URL = "https://api.kimi.com/coding/v1/usages"
    MOONSHOT_BASE_URLS = ["https://api.moonshot.cn", "https://api.moonshot.ai"]
    LEGACY_BASE_URL = "https://api.moonshot.cn"
    WALLET_ENDPOINTS = [
        "/v1/wallet",
        "/v1/balance",
        "/v1/user/wallet",
        "/v1/account/balance",
        "/v1/quota",
    ]
    STATS_ENDPOINTS = [
        "/v1/usage",
        "/v1/stats",
        "/v1/user/usage",
        "/v1/account/usage",
        "/v1/billing/usage",
    ]
    REQUEST_TIMEOUT = 10.0

    @property
    def name(self) -> str:
        return "kimi"

    def candidates(self) -> list[Candidate]:
        kimi_code = ("Kimi Code", self._fetch_kimi_code)
        moonshot = ("Moonshot Open Platform", self._fetch_moonshot_balance)
        if self.credential.startswith(KIMI_CODE_KEY_PREFIX):
            official = [kimi_code, moonshot]
        else:
            official = [moonshot, kimi_code]
        return [*official, ("legacy wallet", self._fetch_legacy)]

    async def _fetch_kimi_code(self) -> UsageSnapshot:
        raw_data = await self._request_json(self.API_URL, timeout=self.REQUEST_TIMEOUT)
        return self.parse_usage(raw_data)

    def _parse_reset_time(self, raw: Any) -> datetime | None:
        """Parse ISO format reset time string (or epoch number) to datetime."""
        if raw is None:
            return None
        if isinstance(raw, str):
            return parse_date_string(raw)
        return parse_epoch(raw)

    def _normalize_membership(self, level: str) -> str:
        return level.replace("LEVEL_", "").replace("_", " ").title()

    def _parse_limits(self, raw_data: dict) -> list[CycleMetrics]:
        """Parse per-window rate limits from response."""
        limits = []
        raw_limits = raw_data.get("limits")
        if not isinstance(raw_limits, list):
            return limits

        for limit in raw_limits:
            if not isinstance(limit, dict):
                continue
            window = limit.get("window") or {}
            detail = limit.get("detail") if isinstance(limit.get("detail"), dict) else limit

            reset_time = pick_timestamp(detail, *RESET_KEYS) or pick_timestamp(limit, *RESET_KEYS)
            metrics = CycleMetrics(
                total=pick_number(detail, "limit", "total", "max", "quota"),
                used=pick_number(detail, "used", "consumed"),
                remaining=pick_number(detail, "remaining", "remain", "available"),
                reset_at=reset_time,
                window=self._format_window(window),
            )
            if metrics.has_data:
                limits.append(metrics)
        return limits

    def _format_window(self, window: Any) -> str | None:
        if not isinstance(window, dict) or "duration" not in window:
            return None
        unit = str(window.get("timeUnit", "")).replace("TIME_UNIT_", "").lower()
        return f"{window['duration']} {unit}".strip()

    def _pick_nearest_upcoming(self, limits: list[CycleMetrics]) -> CycleMetrics | None:
        """Window resetting soonest; richer field coverage breaks ties."""
        with_reset = [limit for limit in limits if limit.reset_at is not None]
        source = with_reset or limits
        if not source:
            return None
        now = self._now()
        return min(
            source,
            key=lambda limit: (reset_priority(limit.reset_at, now), -coverage_score(limit)),
        )

    def parse_usage(self, raw_data: dict) -> UsageSnapshot:
        """Parse Kimi Code response into a UsageSnapshot."""
        user = raw_data.get("user") or {}
        usage = raw_data.get("usage") or {}

        membership = (user.get("membership") or {}).get("level")
        primary = CycleMetrics(
            total=parse_number(usage.get("limit")),
            used=parse_number(usage.get("used")),
            remaining=parse_number(usage.get("remaining")),
            reset_at=self._parse_reset_time(usage.get("resetTime", usage.get("reset_time"))),
        )
        secondary = self._pick_nearest_upcoming(self._parse_limits(raw_data))

        return UsageSnapshot(
            primary=primary,
            secondary=secondary or CycleMetrics(),
            subscription_plan=(
                self._normalize_membership(membership) if isinstance(membership, str) else None
            ),
        )

    async def _fetch_moonshot_balance(self) -> UsageSnapshot | None:
        """Open platform balance; tries the next regional host on 404/5xx."""
        last_error: ProtocolError | TransportError | None = None
        for base_url in self.MOONSHOT_BASE_URLS:
            try:
                raw_data = await self._request_json(
                    f"{base_url}/v1/users/me/balance", timeout=self.REQUEST_TIMEOUT
                )
            except ProtocolError as e:
                if e.status_code == 404 or e.status_code >= 500:
                    last_error = e
                    continue
                raise
            except TransportError as e:
                last_error = e
                continue

            snapshot = self.parse_balance(raw_data)
            if snapshot is not None:
                return snapshot

        if last_error is not None:
            raise last_error
        return None

    def parse_balance(self, raw_data: dict) -> UsageSnapshot | None:
        """The balance endpoint only exposes remaining money, not token counts."""
        data = raw_data.get("data")
        if not isinstance(data, dict):
            return None
        cash = parse_number(data.get("cash_balance"))
        return UsageSnapshot(
            primary=CycleMetrics(remaining=pick_number(data, "available_balance", "balance")),
            secondary=CycleMetrics(remaining=parse_number(data.get("voucher_balance"))),
            subscription_plan="Open Platform" if cash is not None else None,
        )

    async def _probe_json(self, endpoints: list[str], params: dict | None = None) -> dict | None:
        for endpoint in endpoints:
            try:
                return await self._request_json(
                    f"{self.LEGACY_BASE_URL}{endpoint}",
                    params=params,
                    timeout=self.REQUEST_TIMEOUT,
                )
            except (ProtocolError, TransportError) as e:
                logger.debug(f"kimi {endpoint} failed: {e}")
        return None

    async def _fetch_legacy(self) -> UsageSnapshot | None:
        wallet = await self._probe_json(self.WALLET_ENDPOINTS)
        start_of_month = self._now().replace(day=1).strftime("%Y-%m-%d")
        stats = await self._probe_json(self.STATS_ENDPOINTS, params={"start_date": start_of_month})
        return self.parse_legacy(wallet, stats)

    def parse_legacy(self, wallet: dict | None, stats: dict | None) -> UsageSnapshot | None:
        remaining = used = total = None
        reset_at = None

        if wallet is not None:
            data = wallet.get("data")
            if isinstance(data, dict):
                remaining = pick_number(data, "available_balance", "balance")
                total = pick_number(data, "total_balance", "total_vouchers")
                used = pick_number(data, "used_balance", "consumed")
                reset_at = pick_timestamp(data, "refresh_at", "refresh_timestamp")
            if remaining is None and total is None:
                remaining = parse_number(wallet.get("balance"))
                total = parse_number(wallet.get("quota"))
                used = parse_number(wallet.get("consumed")) if used is None else used

        if stats is not None:
            if used is None:
                used = pick_number(stats, "total_tokens", "total_usage")
            if total is None:
                total = pick_number(stats, "monthly_quota", "monthly_limit")
            if total is not None and used is not None:
                remaining = max(0.0, total - used)
            if reset_at is None:
                reset_at = pick_timestamp(stats, "monthly_reset_at", "reset_timestamp")

        primary = CycleMetrics(remaining=remaining, used=used, total=total, reset_at=reset_at)
        if not primary.has_data:
            return None
        return UsageSnapshot(primary=primary)

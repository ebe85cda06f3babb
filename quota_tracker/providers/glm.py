import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial

from ..errors import DecodingError, ProtocolError, TransportError
from ..extractor import (
    coverage_score,
    parse_epoch,
    pick_number,
    reset_priority,
)
from ..models import CycleMetrics, UsageSnapshot
from .base import BaseProvider, Candidate

logger = logging.getLogger(__name__)

PERCENTAGE_LIMIT_TYPES = ("TOKENS_LIMIT",)
COUNTED_LIMIT_TYPES = ("TIME_LIMIT", "TPM_LIMIT", "QPM_LIMIT")


class GLMProvider(BaseProvider):
    """智谱 GLM / BigModel usage provider."""

    BIGMODEL_BASE_URL = "https://open.bigmodel.cn"
    ZAI_BASE_URL = "https://api.z.ai"
    USER_INFO_ENDPOINTS = [
        "/api/user/info",
        "/api/user/balance",
        "/api/resources",
        "/api/account/info",
        "/api/user",
    ]
    QUOTA_LIMIT_PATH = "/api/monitor/usage/quota/limit"
    MODEL_USAGE_PATH = "/api/monitor/usage/model-usage"
    USER_INFO_TIMEOUT = 10.0

    @property
    def name(self) -> str:
        return "glm"

    @property
    def base_url(self) -> str:
        if ".z.ai" in self.credential or self.credential.startswith("z-"):
            return self.ZAI_BASE_URL
        return self.BIGMODEL_BASE_URL

    def candidates(self) -> list[Candidate]:
        user_info: list[Candidate] = [
            (f"user info {endpoint}", partial(self._fetch_user_info, endpoint))
            for endpoint in self.USER_INFO_ENDPOINTS
        ]
        return [*user_info, ("quota limit", self._fetch_quota_limit)]

    async def _fetch_user_info(self, endpoint: str) -> UsageSnapshot | None:
        raw_data = await self._request_json(
            f"{self.base_url}{endpoint}", timeout=self.USER_INFO_TIMEOUT
        )
        return self.parse_user_info(raw_data)

    def parse_user_info(self, raw_data: dict) -> UsageSnapshot | None:
        """Read wallet-style balances from a user info response."""
        data = raw_data.get("data")
        containers = [
            raw_data.get("wallet"),
            data.get("wallet") if isinstance(data, dict) else None,
            raw_data.get("quota"),
        ]
        for wallet in containers:
            if not isinstance(wallet, dict):
                continue
            total = pick_number(wallet, "totalQuota", "total_quota", "total")
            used = pick_number(wallet, "usedQuota", "used_quota", "used")
            remaining = pick_number(wallet, "remainQuota", "remain_quota", "remaining")
            if total is None or total <= 0:
                continue
            if used is None and remaining is None:
                used = 0.0
            return UsageSnapshot(
                primary=CycleMetrics(remaining=remaining, used=used, total=total)
            )
        return None

    async def _fetch_quota_limit(self) -> UsageSnapshot:
        quota_data, model_data = await asyncio.gather(
            self._request_json(f"{self.base_url}{self.QUOTA_LIMIT_PATH}"),
            self._fetch_model_usage(),
        )
        return self.parse_usage(quota_data, model_data)

    async def _fetch_model_usage(self) -> dict | None:
        start_of_day = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
        end_of_day = start_of_day + timedelta(days=1)
        try:
            return await self._request_json(
                f"{self.base_url}{self.MODEL_USAGE_PATH}",
                params={
                    "startTime": start_of_day.strftime("%Y-%m-%d %H:%M:%S"),
                    "endTime": end_of_day.strftime("%Y-%m-%d %H:%M:%S"),
                },
            )
        except (ProtocolError, TransportError, DecodingError) as e:
            logger.debug(f"glm model usage failed: {e}")
            return None

    def _get_unit_name(self, unit: int) -> str:
        """Convert unit code to readable name."""
        unit_names = {
            1: "second",
            2: "minute",
            3: "hour",
            4: "day",
            5: "month",
            6: "year",
        }
        return unit_names.get(unit, f"unit_{unit}")

    def _parse_limits(self, data: dict) -> list[CycleMetrics]:
        """Parse rate limits from response."""
        limits = []
        raw_limits = data.get("limits")
        if not isinstance(raw_limits, list):
            return limits

        for limit in raw_limits:
            if not isinstance(limit, dict):
                continue
            limit_type = limit.get("type", "")

            reset_time = parse_epoch(
                limit.get("nextResetTime", limit.get("refreshTime", limit.get("refresh_time")))
            )

            # unit: 1=second, 2=minute, 3=hour, 4=day, 5=month, 6=year
            # number: the count of units (e.g., 5 hours, 1 month)
            window = None
            if "unit" in limit:
                window = f"{limit.get('number', 1)} {self._get_unit_name(limit['unit'])}"

            total = pick_number(limit, "usage", "total", "limit", "max")
            used = pick_number(limit, "currentValue", "current", "used")
            percentage = pick_number(limit, "percentage")

            if limit_type in PERCENTAGE_LIMIT_TYPES and total is None and percentage is not None:
                # only percentage now
                metrics = CycleMetrics(
                    total=100.0,
                    used=percentage,
                    reset_at=reset_time,
                    is_percentage_only=True,
                    window=window,
                )
            elif limit_type in PERCENTAGE_LIMIT_TYPES + COUNTED_LIMIT_TYPES:
                metrics = CycleMetrics(
                    total=total,
                    used=used,
                    remaining=pick_number(limit, "remaining"),
                    reset_at=reset_time,
                    window=window,
                )
            else:
                continue

            if metrics.has_data:
                limits.append(metrics)
        return limits

    def parse_usage(self, raw_data: dict, model_usage: dict | None = None) -> UsageSnapshot:
        """Parse quota limit response (plus optional model usage) into a UsageSnapshot."""
        data = raw_data.get("data")
        if not isinstance(data, dict):
            data = raw_data

        now = self._now()
        limits = sorted(
            self._parse_limits(data),
            key=lambda limit: (reset_priority(limit.reset_at, now), -coverage_score(limit)),
        )

        primary = limits[0] if limits else None
        secondary = limits[1] if len(limits) > 1 else CycleMetrics()

        if primary is None:
            total = pick_number(data, "total", "totalQuota")
            if total is not None and total > 0:
                used = pick_number(data, "used", "usedQuota")
                remaining = pick_number(data, "remaining", "remainQuota")
                primary = CycleMetrics(
                    total=total,
                    used=used if used is not None or remaining is not None else 0.0,
                    remaining=remaining,
                )
            else:
                primary = CycleMetrics()

        if not primary.is_percentage_only and not primary.used:
            used = self._parse_model_usage(model_usage)
            if used is not None:
                primary = CycleMetrics(
                    total=primary.total,
                    used=used,
                    reset_at=primary.reset_at,
                    is_percentage_only=primary.is_percentage_only,
                    window=primary.window,
                )

        level = data.get("level")
        return UsageSnapshot(
            primary=primary,
            secondary=secondary,
            subscription_plan=level if isinstance(level, str) and level else None,
        )

    def _parse_model_usage(self, model_usage: dict | None) -> float | None:
        if not model_usage:
            return None
        data = model_usage.get("data")
        if not isinstance(data, dict):
            return None
        total_usage = data.get("totalUsage")
        if isinstance(total_usage, dict):
            return pick_number(total_usage, "totalTokensUsage", "total_tokens")
        return pick_number(data, "totalUsage", "total_tokens", "usage")

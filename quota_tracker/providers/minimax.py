import logging

from ..extractor import parse_epoch, parse_number
from ..models import CycleMetrics, UsageSnapshot
from .base import BaseProvider, Candidate

logger = logging.getLogger(__name__)


class MiniMaxProvider(BaseProvider):
    """MiniMax usage provider: Coding Plan first, then pay-as-you-go balance."""

    CODING_PLAN_URL = "https://www.minimaxi.com/v1/api/openplatform/coding_plan/remains"
    BILLING_URL = "https://api.minimax.chat/v1/billing"

    @property
    def name(self) -> str:
        return "minimax"

    def candidates(self) -> list[Candidate]:
        return [
            ("Coding Plan", self._fetch_coding_plan),
            ("Pay-As-You-Go", self._fetch_pay_as_you_go),
        ]

    async def _fetch_coding_plan(self) -> UsageSnapshot | None:
        raw_data = await self._request_json(self.CODING_PLAN_URL)
        return self.parse_coding_plan(raw_data)

    async def _fetch_pay_as_you_go(self) -> UsageSnapshot | None:
        raw_data = await self._request_json(self.BILLING_URL)
        return self.parse_billing(raw_data)

    def parse_coding_plan(self, raw_data: dict) -> UsageSnapshot | None:
        base_resp = raw_data.get("base_resp") or {}
        status_code = base_resp.get("status_code", 0)
        if status_code:
            logger.debug(f"minimax coding plan: status {status_code} {base_resp.get('status_msg')}")
            return None

        model_remains = raw_data.get("model_remains")
        if not isinstance(model_remains, list) or not model_remains:
            return None
        model = model_remains[0]
        if not isinstance(model, dict):
            return None

        # current_interval_usage_count is the count still available, not the count used
        return UsageSnapshot(
            primary=CycleMetrics(
                remaining=parse_number(model.get("current_interval_usage_count")),
                total=parse_number(model.get("current_interval_total_count")),
                reset_at=parse_epoch(model.get("end_time")),
            ),
        )

    def parse_billing(self, raw_data: dict) -> UsageSnapshot | None:
        data = raw_data.get("data")
        if not isinstance(data, dict):
            return None
        return UsageSnapshot(
            primary=CycleMetrics(remaining=parse_number(data.get("balance"))),
        )

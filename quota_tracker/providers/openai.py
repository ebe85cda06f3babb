import logging
from datetime import date, timedelta

from ..errors import DecodingError, ProtocolError, TransportError
from ..extractor import parse_number
from ..models import CycleMetrics, UsageSnapshot
from .base import BaseProvider, Candidate

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    """OpenAI API billing provider (hard limit and month-to-date usage)."""

    SUBSCRIPTION_URL = "https://api.openai.com/v1/dashboard/billing/subscription"
    USAGE_URL = "https://api.openai.com/v1/dashboard/billing/usage"

    @property
    def name(self) -> str:
        return "openai"

    def candidates(self) -> list[Candidate]:
        return [("billing subscription", self._fetch_subscription)]

    async def _fetch_subscription(self) -> UsageSnapshot:
        try:
            subscription = await self._request_json(self.SUBSCRIPTION_URL)
        except ProtocolError as e:
            if e.status_code == 401:
                raise ProtocolError(401, "Invalid API Key") from e
            raise
        used = await self._fetch_month_usage()
        return self.parse_usage(subscription, used)

    def _month_range(self, today: date) -> tuple[str, str]:
        start = today.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        end = next_month - timedelta(days=1)
        return start.isoformat(), end.isoformat()

    async def _fetch_month_usage(self) -> float | None:
        """Month-to-date spend in dollars; the API reports cents."""
        start_date, end_date = self._month_range(date.today())
        try:
            raw_data = await self._request_json(
                self.USAGE_URL,
                params={"start_date": start_date, "end_date": end_date},
            )
        except (ProtocolError, TransportError, DecodingError) as e:
            logger.debug(f"openai usage failed: {e}")
            return None
        cents = parse_number(raw_data.get("total_usage"))
        return cents / 100.0 if cents is not None else None

    def parse_usage(self, subscription: dict, used: float | None = None) -> UsageSnapshot:
        plan = subscription.get("plan")
        title = plan.get("title") if isinstance(plan, dict) else None
        return UsageSnapshot(
            primary=CycleMetrics(
                total=parse_number(subscription.get("hard_limit_usd")),
                used=used,
            ),
            subscription_plan=title if isinstance(title, str) and title else None,
        )

from ..extractor import pick_number
from ..models import CycleMetrics, UsageSnapshot
from .base import BaseProvider, Candidate


class TavilyProvider(BaseProvider):
    """Tavily search API credit usage provider."""

    API_URL = "https://api.tavily.com/usage"

    @property
    def name(self) -> str:
        return "tavily"

    def candidates(self) -> list[Candidate]:
        return [("usage", self._fetch)]

    async def _fetch(self) -> UsageSnapshot:
        raw_data = await self._request_json(self.API_URL)
        return self.parse_usage(raw_data)

    def parse_usage(self, raw_data: dict) -> UsageSnapshot:
        """Key-level limits win over account plan limits."""
        key = raw_data.get("key") or {}
        account = raw_data.get("account") or {}

        total = pick_number(key, "limit")
        if total is not None and total <= 0:
            total = None
        used = pick_number(key, "usage")

        if total is None:
            plan_limit = pick_number(account, "plan_limit")
            if plan_limit is not None and plan_limit > 0:
                total = plan_limit
        if used is None:
            used = pick_number(account, "plan_usage")

        plan = account.get("current_plan")
        return UsageSnapshot(
            primary=CycleMetrics(total=total, used=used),
            subscription_plan=plan if isinstance(plan, str) and plan else None,
        )

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from .extractor import derive_counters


class ProviderKind(str, Enum):
    """Providers with a usage adapter."""
    MINIMAX = "minimax"
    GLM = "glm"
    TAVILY = "tavily"
    OPENAI = "openai"
    CHATGPT = "chatgpt"
    KIMI = "kimi"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    ProviderKind.MINIMAX: "MiniMax",
    ProviderKind.GLM: "GLM (BigModel)",
    ProviderKind.TAVILY: "Tavily",
    ProviderKind.OPENAI: "OpenAI API",
    ProviderKind.CHATGPT: "ChatGPT (Subscription)",
    ProviderKind.KIMI: "KIMI (Moonshot)",
}


class CycleSlot(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Account(BaseModel):
    """A configured account: one credential for one provider."""
    id: str
    name: str = ""
    provider: ProviderKind
    api_key: str = ""
    enabled: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.provider.display_name

    @property
    def is_fetchable(self) -> bool:
        return self.enabled and bool(self.api_key.strip())


class CycleMetrics(BaseModel):
    """Counters for one quota window as reported by a provider.

    When exactly one of remaining/used/total is missing it is derived from the
    other two, clamped to be non-negative.
    """
    remaining: float | None = None
    used: float | None = None
    total: float | None = None
    reset_at: datetime | None = None
    is_percentage_only: bool = False
    # e.g. "5 hour", "1 month"
    window: str | None = None

    @field_validator("reset_at")
    @classmethod
    def _normalize_reset(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _derive_missing_counter(self) -> "CycleMetrics":
        self.remaining, self.used, self.total = derive_counters(
            self.remaining, self.used, self.total
        )
        return self

    @property
    def has_data(self) -> bool:
        return any(
            value is not None
            for value in (self.remaining, self.used, self.total, self.reset_at)
        )


class UsageSnapshot(BaseModel):
    """Normalized result of one adapter call."""
    primary: CycleMetrics = Field(default_factory=CycleMetrics)
    secondary: CycleMetrics = Field(default_factory=CycleMetrics)
    subscription_plan: str | None = None
    error: str | None = None

    @property
    def has_data(self) -> bool:
        return (
            self.primary.has_data
            or self.secondary.has_data
            or bool(self.subscription_plan)
        )


class CycleLearningState(BaseModel):
    """Learned reset periodicity for one (account, cycle slot)."""
    observed_resets: list[datetime] = []
    # seconds
    learned_interval: float | None = None
    confidence: float = 0.0
    last_observed_at: datetime | None = None

    @field_validator("observed_resets")
    @classmethod
    def _normalize_resets(cls, values: list[datetime]) -> list[datetime]:
        return [v if v.tzinfo else v.replace(tzinfo=timezone.utc) for v in values]

    @field_validator("last_observed_at")
    @classmethod
    def _normalize_last_observed(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class CycleQuota(BaseModel):
    """A cycle after reset-time resolution."""
    remaining: float | None = None
    used: float | None = None
    total: float | None = None
    reset_at: datetime | None = None
    is_percentage_only: bool = False
    # e.g. "5 hour", "1 month"
    window: str | None = None
    is_estimated: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def usage_percentage(self) -> float:
        if self.used is None or self.total is None or self.total <= 0:
            return 0.0
        return min(max(self.used / self.total * 100, 0.0), 100.0)

    @property
    def has_data(self) -> bool:
        return any(
            value is not None
            for value in (self.remaining, self.used, self.total, self.reset_at)
        )

    @classmethod
    def from_metrics(
        cls,
        metrics: CycleMetrics,
        reset_at: datetime | None = None,
        is_estimated: bool = False,
    ) -> "CycleQuota":
        return cls(
            remaining=metrics.remaining,
            used=metrics.used,
            total=metrics.total,
            reset_at=reset_at if reset_at is not None else metrics.reset_at,
            is_percentage_only=metrics.is_percentage_only,
            window=metrics.window,
            is_estimated=is_estimated,
        )


class ResolvedSnapshot(BaseModel):
    """UsageSnapshot whose reset times were filled in by the learning engine."""
    primary: CycleQuota = Field(default_factory=CycleQuota)
    secondary: CycleQuota = Field(default_factory=CycleQuota)
    subscription_plan: str | None = None
    error: str | None = None


class QuotaAggregate(BaseModel):
    """Per-account record handed to storage and UI."""
    account_id: str
    account_name: str
    provider: ProviderKind
    primary: CycleQuota = Field(default_factory=CycleQuota)
    secondary: CycleQuota = Field(default_factory=CycleQuota)
    subscription_plan: str | None = None
    error_message: str | None = None
    last_updated: datetime

    @property
    def has_error(self) -> bool:
        return self.error_message is not None

    def next_reset_at(self, now: datetime | None = None) -> datetime | None:
        """Earliest upcoming reset across both cycles, else the earliest known."""
        now = now or datetime.now(timezone.utc)
        resets = [
            cycle.reset_at
            for cycle in (self.primary, self.secondary)
            if cycle.reset_at is not None
        ]
        if not resets:
            return None
        upcoming = [reset for reset in resets if reset > now]
        return min(upcoming or resets)


def build_aggregate(
    account: Account, resolved: ResolvedSnapshot, now: datetime
) -> QuotaAggregate:
    return QuotaAggregate(
        account_id=account.id,
        account_name=account.display_name,
        provider=account.provider,
        primary=resolved.primary,
        secondary=resolved.secondary,
        subscription_plan=resolved.subscription_plan,
        error_message=resolved.error,
        last_updated=now,
    )


def error_aggregate(account: Account, message: str, now: datetime) -> QuotaAggregate:
    """Aggregate for a failed fetch: error message only, no quota fields."""
    return QuotaAggregate(
        account_id=account.id,
        account_name=account.display_name,
        provider=account.provider,
        error_message=message,
        last_updated=now,
    )

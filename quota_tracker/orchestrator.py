"""Concurrent per-account usage fetching.

``UsageOrchestrator`` runs one provider call per account, keeps results in
account order, turns each failure into an error-only aggregate, and feeds
every completed fetch through the cycle-reset learning engine.

Both entry points are single-flight: a second ``fetch_all`` while one is
running returns ``None`` without touching the network, and the same holds
for ``fetch_one`` on an account already being fetched. The two guards are
independent of each other.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from .config import DEFAULT_TIMEOUT, ProviderConfig
from .errors import QuotaError
from .learning import learning_key, resolve
from .models import (
    Account,
    CycleLearningState,
    CycleSlot,
    QuotaAggregate,
    UsageSnapshot,
    build_aggregate,
    error_aggregate,
)
from .providers import BaseProvider, create_provider

ProviderFactory = Callable[[Account], BaseProvider]


class UsageOrchestrator:
    def __init__(
        self,
        accounts: Iterable[Account] = (),
        learning_state: dict[str, CycleLearningState] | None = None,
        provider_factory: ProviderFactory | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.accounts: list[Account] = list(accounts)
        # Mutated in place; the caller persists it after each fetch.
        self.learning_state: dict[str, CycleLearningState] = (
            learning_state if learning_state is not None else {}
        )
        self.latest: dict[str, QuotaAggregate] = {}
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self._provider_factory = provider_factory or self._default_provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._batch_in_flight = False
        self._accounts_in_flight: set[str] = set()

    @property
    def is_loading(self) -> bool:
        return self._batch_in_flight

    def is_refreshing(self, account_id: str) -> bool:
        return account_id in self._accounts_in_flight

    def _default_provider(self, account: Account) -> BaseProvider:
        return create_provider(
            account.provider, ProviderConfig(api_key=account.api_key, timeout=self.timeout)
        )

    async def fetch_all(
        self, accounts: Iterable[Account] | None = None
    ) -> list[QuotaAggregate | None] | None:
        """Fetch every enabled account with a credential.

        Returns one slot per input account, in input order; skipped accounts
        get ``None``. Returns ``None`` if a batch is already in flight.
        """
        if self._batch_in_flight:
            self.logger.debug("Batch fetch already in flight, ignoring")
            return None
        self._batch_in_flight = True
        try:
            if accounts is not None:
                self.accounts = list(accounts)
            batch = list(self.accounts)
            fetched: list[tuple[UsageSnapshot | None, str | None] | None] = [None] * len(batch)

            async def fetch_into_slot(index: int, account: Account) -> None:
                fetched[index] = await self._fetch(account)

            await asyncio.gather(*(
                fetch_into_slot(index, account)
                for index, account in enumerate(batch)
                if account.is_fetchable
            ))

            results: list[QuotaAggregate | None] = [None] * len(batch)
            for index, account in enumerate(batch):
                outcome = fetched[index]
                if outcome is None:
                    continue
                results[index] = self._resolve(account, *outcome)
            return results
        finally:
            self._batch_in_flight = False

    async def fetch_one(self, account_id: str) -> QuotaAggregate | None:
        """Refresh a single account; ``None`` if unknown, skipped or already in flight."""
        account = next((a for a in self.accounts if a.id == account_id), None)
        if account is None or not account.is_fetchable:
            return None
        if account_id in self._accounts_in_flight:
            self.logger.debug(f"Fetch for {account_id} already in flight, ignoring")
            return None

        self._accounts_in_flight.add(account_id)
        try:
            snapshot, error = await self._fetch(account)
            return self._resolve(account, snapshot, error)
        finally:
            self._accounts_in_flight.discard(account_id)

    async def _fetch(self, account: Account) -> tuple[UsageSnapshot | None, str | None]:
        """Run the adapter; failures come back as an error message."""
        self.logger.info(f"Fetching usage for {account.display_name} ({account.provider.value})")
        try:
            provider = self._provider_factory(account)
            return await provider.fetch_usage(), None
        except QuotaError as e:
            self.logger.warning(f"Error fetching {account.display_name} usage: {e}")
            return None, str(e)
        except Exception as e:
            self.logger.exception(f"Unexpected error fetching {account.display_name} usage")
            return None, str(e) or type(e).__name__

    def _resolve(
        self, account: Account, snapshot: UsageSnapshot | None, error: str | None
    ) -> QuotaAggregate:
        now = self._clock()
        if snapshot is None:
            aggregate = error_aggregate(account, error or "Unknown error", now)
        else:
            keys = {slot: learning_key(account.id, slot) for slot in CycleSlot}
            states = {
                slot: self.learning_state[key]
                for slot, key in keys.items()
                if key in self.learning_state
            }
            resolved, updated = resolve(snapshot, states, now)
            for slot, key in keys.items():
                self.learning_state[key] = updated[slot]
            aggregate = build_aggregate(account, resolved, now)

        self.latest[account.id] = aggregate
        return aggregate

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import httpx

from ..config import ProviderConfig
from ..errors import (
    CredentialMissing,
    DecodingError,
    NoUsableData,
    ProtocolError,
    QuotaError,
    TransportError,
)
from ..models import UsageSnapshot

logger = logging.getLogger(__name__)

# A named candidate: returns a snapshot, None for "nothing here", or raises.
Candidate = tuple[str, Callable[[], Awaitable[UsageSnapshot | None]]]


class BaseProvider(ABC):
    """Abstract base class for quota usage providers."""

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._transport = transport
        self._headers: dict[str, str] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        pass

    def authenticate(self) -> None:
        """Setup Bearer token authentication."""
        self._headers = {
            "Authorization": f"Bearer {self.credential}",
            "Content-Type": "application/json",
        }

    @property
    def credential(self) -> str:
        return self.config.api_key.strip()

    async def fetch_usage(self) -> UsageSnapshot:
        """Fetch and normalize usage for the configured credential."""
        if not self.credential:
            raise CredentialMissing()
        self.authenticate()
        return await self._first_usable(self.candidates())

    @abstractmethod
    def candidates(self) -> Sequence[Candidate]:
        """Endpoints/response interpretations to try, in priority order."""
        pass

    async def _first_usable(self, candidates: Sequence[Candidate]) -> UsageSnapshot:
        """Return the first candidate snapshot that has data.

        Failures fall through to the next candidate. If nothing usable turns
        up, the first authentication error seen is raised, else NoUsableData.
        """
        auth_error: QuotaError | None = None
        for label, candidate in candidates:
            try:
                try:
                    snapshot = await candidate()
                except (KeyError, TypeError, AttributeError, ValueError) as e:
                    # payload had an unexpected shape
                    raise DecodingError(f"{self.name} {label}: unexpected response ({e})") from e
            except QuotaError as e:
                if auth_error is None and e.is_auth_error:
                    auth_error = e
                logger.debug(f"{self.name} {label} failed: {e}")
                continue
            if snapshot is not None and snapshot.has_data:
                logger.debug(f"{self.name}: using {label}")
                return snapshot
            logger.debug(f"{self.name} {label}: no usable data")

        if auth_error is not None:
            raise auth_error
        raise NoUsableData(self.name)

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.config.timeout,
            transport=self._transport,
        )

    async def _request_json(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        timeout: float | None = None,
    ) -> dict:
        """Perform a request and return the JSON object body.

        Raises TransportError, ProtocolError (non-2xx, with the provider's
        message when one is present) or DecodingError.
        """
        try:
            async with self._client(timeout) as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers if headers is not None else self._headers,
                    params=params,
                    json=json_body,
                )
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e

        logger.debug(f"{self.name} {method} {url}: HTTP {response.status_code}")

        if not response.is_success:
            raise ProtocolError(response.status_code, _error_message(response))

        try:
            data = response.json()
        except ValueError as e:
            raise DecodingError(f"{self.name}: response is not JSON") from e
        if not isinstance(data, dict):
            raise DecodingError(f"{self.name}: expected a JSON object")
        return data

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)


def _error_message(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    message = data.get("message")
    return message if isinstance(message, str) else None

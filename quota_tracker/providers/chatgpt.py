"""ChatGPT web subscription provider.

There is no public quota API for ChatGPT subscriptions, so this adapter reads
the web app's internal endpoints. Their shapes drift, which is why quota
windows are located with the schema-agnostic extractor rather than fixed
paths.
"""

import asyncio
import base64
import binascii
import json
import logging
import uuid
from datetime import datetime
from typing import Any

from ..errors import NoUsableData, ProtocolError, QuotaError
from ..extractor import (
    ParsedQuota,
    coverage_score,
    dates_close,
    find_best_container,
    find_first_bool,
    find_first_date,
    find_first_string,
    find_first_timestamp_date,
    parse_epoch,
    parse_quota,
    reset_priority,
)
from ..models import CycleMetrics, UsageSnapshot
from .base import BaseProvider, Candidate

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "__Secure-next-auth.session-token"
AUTH_CLAIMS_KEY = "https://api.openai.com/auth"


def looks_like_jwt(value: str) -> bool:
    return len(value.split(".")) == 3 and len(value) > 40


def decode_jwt_payload(token: str) -> dict | None:
    """Decode the (unverified) claims segment of a JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError):
        return None
    return claims if isinstance(claims, dict) else None


class ChatGPTProvider(BaseProvider):
    """ChatGPT Plus/Pro subscription usage provider."""

    SESSION_URLS = [
        "https://chatgpt.com/api/auth/session",
        "https://chat.openai.com/api/auth/session",
    ]
    PLAN_URLS = [
        "https://chatgpt.com/backend-api/accounts/check/v4-2023-04-27",
        "https://chatgpt.com/backend-api/accounts/check",
        "https://chat.openai.com/backend-api/accounts/check/v4-2023-04-27",
    ]
    REQUIREMENTS_URLS = [
        "https://chatgpt.com/backend-api/sentinel/chat-requirements",
        "https://chat.openai.com/backend-api/sentinel/chat-requirements",
    ]
    REQUIREMENTS_BODY = {"conversation_mode_kind": "primary_assistant"}

    @property
    def name(self) -> str:
        return "chatgpt"

    def candidates(self) -> list[Candidate]:
        return [("web subscription", self._fetch_subscription)]

    async def _fetch_subscription(self) -> UsageSnapshot:
        access_token = await self._resolve_access_token()
        claims = decode_jwt_payload(access_token)
        plan_json, limits_json = await asyncio.gather(
            self._fetch_plan_info(access_token),
            self._fetch_chat_requirements(access_token),
        )
        snapshot = self.parse_usage(limits_json, plan_json, claims)
        if snapshot is None:
            raise NoUsableData(
                self.name,
                "Could not parse ChatGPT subscription or quota info "
                "(the access token may be valid but the web endpoints changed)",
            )
        return snapshot

    async def _resolve_access_token(self) -> str:
        """Use the credential as a JWT, or exchange it as a session cookie."""
        if looks_like_jwt(self.credential):
            return self.credential

        if "=" in self.credential:
            cookie = self.credential
        else:
            cookie = f"{SESSION_COOKIE_NAME}={self.credential}"
        headers = {"Cookie": cookie, "Accept": "application/json"}

        for url in self.SESSION_URLS:
            try:
                session = await self._request_json(url, headers=headers)
            except QuotaError as e:
                logger.debug(f"chatgpt auth session failed: {e}")
                continue
            access_token = session.get("accessToken")
            if isinstance(access_token, str) and access_token:
                logger.debug("chatgpt: resolved access token via session cookie")
                return access_token

        raise ProtocolError(401, "Unable to exchange the session cookie for a ChatGPT access token")

    async def _request_optional(
        self,
        url: str,
        access_token: str,
        method: str = "GET",
        json_body: Any = None,
    ) -> dict | None:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "oai-device-id": str(uuid.uuid4()),
        }
        try:
            return await self._request_json(url, method=method, headers=headers, json_body=json_body)
        except QuotaError as e:
            logger.debug(f"chatgpt {method} {url} failed: {e}")
            return None

    async def _fetch_plan_info(self, access_token: str) -> dict | None:
        for url in self.PLAN_URLS:
            data = await self._request_optional(url, access_token)
            if data is not None:
                return data
        return None

    async def _fetch_chat_requirements(self, access_token: str) -> dict | None:
        for url in self.REQUIREMENTS_URLS:
            data = await self._request_optional(
                url, access_token, method="POST", json_body=self.REQUIREMENTS_BODY
            )
            if data is not None:
                return data
            data = await self._request_optional(url, access_token)
            if data is not None:
                return data
        return None

    def _quota_windows(self, limits_json: dict, now: datetime) -> list[ParsedQuota]:
        """Message-cap and token windows, soonest reset first."""
        windows: list[ParsedQuota] = []
        seen: list[dict] = []
        for keywords in (["message", "cap"], ["token"]):
            container = find_best_container(limits_json, keywords)
            if container is None or any(container is other for other in seen):
                continue
            seen.append(container)
            parsed = parse_quota(container)
            if parsed.has_data:
                windows.append(parsed)

        if not windows:
            parsed = parse_quota(limits_json)
            if parsed.has_data:
                windows.append(parsed)

        return sorted(
            windows,
            key=lambda window: (reset_priority(window.reset_at, now), -coverage_score(window)),
        )

    def _parse_plan_info(self, plan_json: dict) -> tuple[bool | None, datetime | None, str | None]:
        is_active = find_first_bool(plan_json, [
            "is_paid_subscription_active",
            "has_active_subscription",
            "subscription_active",
            "is_active",
        ])
        plan_type = find_first_string(plan_json, [
            "chatgpt_plan_type",
            "plan_type",
            "subscription_plan",
            "tier",
        ])
        renewal_date = find_first_date(
            plan_json, ["next_billing_date", "renewal_date", "renews_at", "expires_at"]
        ) or find_first_timestamp_date(
            plan_json, ["next_billing_date_ts", "renews_at_ts", "expires_at_ts"]
        )
        return is_active, renewal_date, plan_type

    def _plan_type_from_claims(self, claims: dict | None) -> str | None:
        if not claims:
            return None
        auth = claims.get(AUTH_CLAIMS_KEY)
        if isinstance(auth, dict):
            plan_type = auth.get("chatgpt_plan_type")
            if isinstance(plan_type, str) and plan_type:
                return plan_type
        return find_first_string(claims, ["chatgpt_plan_type", "plan_type"])

    def parse_usage(
        self,
        limits_json: dict | None,
        plan_json: dict | None,
        claims: dict | None = None,
    ) -> UsageSnapshot | None:
        """Combine limits, plan info and JWT claims; None when nothing is usable."""
        now = self._now()
        primary = ParsedQuota()
        secondary = ParsedQuota()
        plan: str | None = None
        has_data = False

        if limits_json:
            windows = self._quota_windows(limits_json, now)
            if windows:
                primary = windows[0]
                has_data = True
            if len(windows) > 1:
                secondary = windows[1]

        if plan_json:
            is_active, renewal_date, plan_type = self._parse_plan_info(plan_json)
            plan = plan_type
            if not has_data and is_active is not None:
                # keep subscription state without fabricating quota numbers
                if plan is None:
                    plan = "active" if is_active else "free"
                if secondary.reset_at is None:
                    secondary.reset_at = renewal_date
                has_data = True
            elif not has_data and plan_type is not None:
                secondary.reset_at = renewal_date
                has_data = True
            elif secondary.reset_at is None or dates_close(secondary.reset_at, primary.reset_at):
                secondary.reset_at = renewal_date or secondary.reset_at

        if not has_data:
            jwt_plan = self._plan_type_from_claims(claims)
            if jwt_plan is not None:
                plan = jwt_plan.lower()
                if secondary.reset_at is None and claims is not None:
                    secondary.reset_at = parse_epoch(claims.get("exp"))
                has_data = True
                logger.debug(f"chatgpt: using JWT plan_type={plan}")

        if not has_data:
            return None

        return UsageSnapshot(
            primary=_to_metrics(primary),
            secondary=_to_metrics(secondary),
            subscription_plan=plan,
        )


def _to_metrics(parsed: ParsedQuota) -> CycleMetrics:
    return CycleMetrics(
        remaining=parsed.remaining,
        used=parsed.used,
        total=parsed.total,
        reset_at=parsed.reset_at,
    )

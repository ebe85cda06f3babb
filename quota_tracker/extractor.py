"""Schema-agnostic quota extraction.

Some providers change their response shapes without notice. The helpers here
search an arbitrary JSON-like tree (dicts, lists, scalars) for quota-shaped
fields instead of relying on fixed paths. Nothing in this module performs I/O.
"""

import math
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from numbers import Number
from typing import Any

REMAINING_KEYS = [
    "remaining_tokens", "tokens_remaining", "remaining_token", "remaining",
    "remaining_messages", "messages_remaining",
]
USED_KEYS = [
    "used_tokens", "tokens_used", "used", "consumed", "used_messages", "messages_used",
]
TOTAL_KEYS = [
    "max_tokens", "token_limit", "tokens_limit", "limit", "cap", "message_cap",
    "max_messages", "messages_limit", "total",
]
RESET_DATE_KEYS = ["reset_at", "resets_at", "next_reset_at"]
RESET_TIMESTAMP_KEYS = ["reset_time", "reset_ts", "reset_at_ts"]

# Epoch values above this are milliseconds.
MILLISECONDS_THRESHOLD = 10_000_000_000

FIXED_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRUE_STRINGS = {"true", "1", "yes", "active"}
_FALSE_STRINGS = {"false", "0", "no", "inactive"}


@dataclass
class ParsedQuota:
    """Quota fields found in a subtree."""
    remaining: float | None = None
    used: float | None = None
    total: float | None = None
    reset_at: datetime | None = None

    @property
    def has_data(self) -> bool:
        return any(
            value is not None
            for value in (self.remaining, self.used, self.total, self.reset_at)
        )


def parse_number(value: Any) -> float | None:
    """Read a number from a native number, numeric string or numeric wrapper."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Number):
        try:
            number = float(value)
        except (TypeError, ValueError, OverflowError):
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_epoch(value: Any) -> datetime | None:
    """Epoch seconds or milliseconds, disambiguated by magnitude."""
    number = parse_number(value)
    if number is None or number <= 0:
        return None
    if number > MILLISECONDS_THRESHOLD:
        number /= 1000
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_date_string(value: str) -> datetime | None:
    """ISO-8601 or ``YYYY-MM-DD HH:MM:SS`` (taken as UTC)."""
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.strptime(text, FIXED_DATE_FORMAT)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a reset time from a date string or an epoch number."""
    if isinstance(value, str):
        parsed = parse_date_string(value)
        if parsed is not None:
            return parsed
    return parse_epoch(value)


def pick_number(mapping: Any, *keys: str) -> float | None:
    """First of ``keys`` on ``mapping`` itself (no recursion) holding a number."""
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        number = parse_number(mapping.get(key))
        if number is not None:
            return number
    return None


def pick_timestamp(mapping: Any, *keys: str) -> datetime | None:
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        parsed = parse_timestamp(mapping.get(key))
        if parsed is not None:
            return parsed
    return None


def derive_counters(
    remaining: float | None, used: float | None, total: float | None
) -> tuple[float | None, float | None, float | None]:
    """Fill in the one missing counter of (remaining, used, total), clamped at 0."""
    if total is not None:
        if remaining is None and used is not None:
            remaining = max(0.0, total - used)
        elif used is None and remaining is not None:
            used = max(0.0, total - remaining)
    elif remaining is not None and used is not None:
        total = max(0.0, remaining + used)
    return remaining, used, total


def walk_json(value: Any) -> Iterator[dict]:
    """Yield every dict in the tree, parents before children."""
    if isinstance(value, dict):
        yield value
        for child in value.values():
            yield from walk_json(child)
    elif isinstance(value, list):
        for child in value:
            yield from walk_json(child)


def _find_first(root: Any, keys: Iterable[str], convert: Callable[[Any], Any]) -> Any:
    ordered_keys = [key.lower() for key in keys]
    for node in walk_json(root):
        lowered = {key.lower(): value for key, value in node.items() if isinstance(key, str)}
        for key in ordered_keys:
            if key not in lowered:
                continue
            converted = convert(lowered[key])
            if converted is not None:
                return converted
    return None


def find_first_number(root: Any, keys: Iterable[str]) -> float | None:
    return _find_first(root, keys, parse_number)


def find_first_string(root: Any, keys: Iterable[str]) -> str | None:
    return _find_first(root, keys, lambda v: v if isinstance(v, str) and v else None)


def _parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, Number):
        return bool(value)
    if isinstance(value, str):
        lower = value.lower()
        if lower in _TRUE_STRINGS:
            return True
        if lower in _FALSE_STRINGS:
            return False
    return None


def find_first_bool(root: Any, keys: Iterable[str]) -> bool | None:
    return _find_first(root, keys, _parse_bool)


def find_first_date(root: Any, keys: Iterable[str]) -> datetime | None:
    return _find_first(
        root, keys, lambda v: parse_date_string(v) if isinstance(v, str) else None
    )


def find_first_timestamp_date(root: Any, keys: Iterable[str]) -> datetime | None:
    return _find_first(root, keys, parse_epoch)


def _has_quota_signal(lower_keys: list[str]) -> bool:
    return any(
        "remaining" in key or "limit" in key or "cap" in key or "reset" in key or key == "used"
        for key in lower_keys
    )


def find_best_container(root: Any, preferred_keywords: Iterable[str]) -> dict | None:
    """Find the dict most likely to hold the quota the keywords describe.

    Each dict carrying at least one quota-signal key scores one point plus one
    per key containing any preferred keyword. The first highest scorer wins.
    """
    keywords = [keyword.lower() for keyword in preferred_keywords]
    best: dict | None = None
    best_score = -1
    for node in walk_json(root):
        lower_keys = [key.lower() for key in node if isinstance(key, str)]
        if not _has_quota_signal(lower_keys):
            continue
        score = 1 + sum(
            1 for key in lower_keys if any(keyword in key for keyword in keywords)
        )
        if score > best_score:
            best, best_score = node, score
    return best


def parse_quota(subtree: Any) -> ParsedQuota:
    remaining = find_first_number(subtree, REMAINING_KEYS)
    used = find_first_number(subtree, USED_KEYS)
    total = find_first_number(subtree, TOTAL_KEYS)
    reset_at = find_first_date(subtree, RESET_DATE_KEYS) or find_first_timestamp_date(
        subtree, RESET_TIMESTAMP_KEYS
    )

    remaining, used, total = derive_counters(remaining, used, total)

    return ParsedQuota(remaining=remaining, used=used, total=total, reset_at=reset_at)


def reset_priority(reset_at: datetime | None, now: datetime) -> float:
    """Sort key preferring the soonest upcoming reset; past resets rank after."""
    if reset_at is None:
        return math.inf
    delta = (reset_at - now).total_seconds()
    if delta >= 0:
        return delta
    return abs(delta) + 86_400


def coverage_score(quota: Any) -> int:
    """How many of remaining/used/total/reset_at are populated."""
    return sum(
        1
        for value in (quota.remaining, quota.used, quota.total, quota.reset_at)
        if value is not None
    )


def dates_close(lhs: datetime | None, rhs: datetime | None, tolerance: float = 60) -> bool:
    if lhs is None or rhs is None:
        return False
    return abs((lhs - rhs).total_seconds()) < tolerance

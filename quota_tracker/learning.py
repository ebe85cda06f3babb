"""Cycle-reset learning.

Providers do not always report when a quota window resets. Every reset time
that *is* reported is recorded per (account, cycle slot); once the gaps
between recorded resets settle on a plausible period, missing reset times
are predicted by stepping that period forward from the latest observation.

All functions are pure: they take a ``CycleLearningState`` and return a new
one. The caller owns loading and persisting the states.
"""

import logging
import math
from collections.abc import Mapping
from datetime import datetime, timedelta

from .models import (
    CycleLearningState,
    CycleMetrics,
    CycleQuota,
    CycleSlot,
    ResolvedSnapshot,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

DUPLICATE_TOLERANCE = 60
MAX_OBSERVED_RESETS = 8
MIN_RESET_DELTA = 5 * 60
MIN_INTERVAL = 30 * 60
MAX_INTERVAL = 45 * 86_400

INITIAL_CONFIDENCE = 0.60
MIN_CONFIDENCE = 0.55
CONFIDENCE_STEP_UP = 0.10
CONFIDENCE_STEP_DOWN = 0.20
CONFIDENCE_FLOOR = 0.25
REGIME_CHANGE_CONFIDENCE = 0.40
MAX_DRIFT = 0.20
BLEND_WEIGHT_OLD = 0.6

STALE_AFTER = timedelta(days=21)
MAX_PREDICTION_STEPS = 128


def learning_key(account_id: str, slot: CycleSlot) -> str:
    return f"{account_id}-{slot.value}"


def _is_plausible_interval(interval: float | None) -> bool:
    return (
        interval is not None
        and math.isfinite(interval)
        and MIN_INTERVAL <= interval <= MAX_INTERVAL
    )


def _dedupe_resets(resets: list[datetime]) -> list[datetime]:
    kept: list[datetime] = []
    for reset in sorted(resets):
        if kept and (reset - kept[-1]).total_seconds() < DUPLICATE_TOLERANCE:
            continue
        kept.append(reset)
    return kept[-MAX_OBSERVED_RESETS:]


def sanitize_state(state: CycleLearningState | None) -> CycleLearningState:
    """Normalize persisted state; anything implausible is treated as absent."""
    if state is None:
        return CycleLearningState()

    interval = state.learned_interval
    if interval is not None and not _is_plausible_interval(interval):
        logger.debug(f"Discarding implausible learned interval {interval!r}")
        interval = None

    confidence = state.confidence
    if not math.isfinite(confidence):
        confidence = 0.0
    confidence = min(max(confidence, 0.0), 1.0)

    return CycleLearningState(
        observed_resets=_dedupe_resets(list(state.observed_resets)),
        learned_interval=interval,
        confidence=confidence,
        last_observed_at=state.last_observed_at,
    )


def _median_reset_interval(resets: list[datetime]) -> float | None:
    deltas = sorted({
        (later - earlier).total_seconds()
        for earlier, later in zip(resets, resets[1:])
        if (later - earlier).total_seconds() > MIN_RESET_DELTA
    })
    if not deltas:
        return None
    return deltas[len(deltas) // 2]


def record_observation(
    state: CycleLearningState | None, reset_at: datetime, now: datetime
) -> CycleLearningState:
    """Record a provider-reported reset and update the learned interval."""
    state = sanitize_state(state)

    resets = list(state.observed_resets)
    if not any(
        abs((existing - reset_at).total_seconds()) < DUPLICATE_TOLERANCE
        for existing in resets
    ):
        resets.append(reset_at)
        resets.sort()
        resets = resets[-MAX_OBSERVED_RESETS:]

    interval = state.learned_interval
    confidence = state.confidence

    median = _median_reset_interval(resets)
    if median is not None and _is_plausible_interval(median):
        if interval is None:
            interval = median
            confidence = INITIAL_CONFIDENCE
        else:
            drift = abs(median - interval) / interval
            if drift <= MAX_DRIFT:
                interval = interval * BLEND_WEIGHT_OLD + median * (1 - BLEND_WEIGHT_OLD)
                confidence = min(1.0, max(confidence, MIN_CONFIDENCE) + CONFIDENCE_STEP_UP)
            else:
                confidence = max(CONFIDENCE_FLOOR, confidence - CONFIDENCE_STEP_DOWN)
                if confidence < REGIME_CHANGE_CONFIDENCE:
                    logger.debug(
                        f"Reset interval changed from {interval:.0f}s to {median:.0f}s"
                    )
                    interval = median
                    confidence = MIN_CONFIDENCE

    return CycleLearningState(
        observed_resets=resets,
        learned_interval=interval,
        confidence=confidence,
        last_observed_at=now,
    )


def predict_reset(state: CycleLearningState | None, now: datetime) -> datetime | None:
    """Next reset strictly after ``now``, or None when the state can't support one."""
    state = sanitize_state(state)
    interval = state.learned_interval
    if interval is None or interval <= MIN_RESET_DELTA:
        return None
    if state.confidence < MIN_CONFIDENCE:
        return None
    if state.last_observed_at is None or now - state.last_observed_at > STALE_AFTER:
        return None
    if not state.observed_resets:
        return None

    step = timedelta(seconds=interval)
    prediction = state.observed_resets[-1]
    for _ in range(MAX_PREDICTION_STEPS):
        if prediction > now:
            break
        prediction += step
    if prediction <= now:
        return None
    return prediction


def resolve_cycle(
    metrics: CycleMetrics, state: CycleLearningState | None, now: datetime
) -> tuple[CycleQuota, CycleLearningState]:
    if metrics.reset_at is not None:
        updated = record_observation(state, metrics.reset_at, now)
        return CycleQuota.from_metrics(metrics), updated

    state = sanitize_state(state)
    predicted = predict_reset(state, now)
    if predicted is None:
        return CycleQuota.from_metrics(metrics), state
    return CycleQuota.from_metrics(metrics, reset_at=predicted, is_estimated=True), state


def resolve(
    snapshot: UsageSnapshot,
    states: Mapping[CycleSlot, CycleLearningState],
    now: datetime,
) -> tuple[ResolvedSnapshot, dict[CycleSlot, CycleLearningState]]:
    """Fill missing reset times for both cycle slots of a snapshot."""
    primary, primary_state = resolve_cycle(
        snapshot.primary, states.get(CycleSlot.PRIMARY), now
    )
    secondary, secondary_state = resolve_cycle(
        snapshot.secondary, states.get(CycleSlot.SECONDARY), now
    )
    resolved = ResolvedSnapshot(
        primary=primary,
        secondary=secondary,
        subscription_plan=snapshot.subscription_plan,
        error=snapshot.error,
    )
    return resolved, {
        CycleSlot.PRIMARY: primary_state,
        CycleSlot.SECONDARY: secondary_state,
    }

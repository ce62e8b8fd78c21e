"""Confidence scoring and suggestion gating for detected patterns.

Pure functions with no I/O, shared by the pattern engine and its tests.

confidence = min(100, round(base_rate * sample_multiplier * recency_factor))

- base_rate: share of events where the user took the action (0-100)
- sample_multiplier: up to +10% for larger samples (log-scaled from 10 events)
- recency_factor: down to 0.85 when the trailing-week rate diverges from the
  overall rate; only applied once the week has at least 3 events

Usage:
    from mailpilot.classifier.confidence import calculate_confidence, should_suggest_pattern

    confidence = calculate_confidence(action_count=95, total_events=100)
    if should_suggest_pattern(confidence, "delete", first_seen):
        ...
"""

import math
from datetime import UTC, datetime, timedelta

from mailpilot.config_schema import DEFAULT_SUGGESTION_THRESHOLDS

MIN_SAMPLE_FOR_BONUS = 10
SAMPLE_BONUS_PER_DECADE = 0.05
MAX_SAMPLE_MULTIPLIER = 1.1

MIN_RECENT_EVENTS = 3
RECENCY_PENALTY_WEIGHT = 0.5
MIN_RECENCY_FACTOR = 0.85

DEFAULT_MIN_OBSERVATION_DAYS = 14

_EVENT_TO_ACTION = {
    "deleted": "delete",
    "moved": "move",
    "read": "markRead",
    "flagged": "flag",
    "categorized": "categorize",
}


def _round_half_up(value: float) -> int:
    # round() would send 52.5 to 52
    return math.floor(value + 0.5)


def sample_multiplier(total_events: int) -> float:
    """Bonus for larger samples, capped at MAX_SAMPLE_MULTIPLIER."""
    if total_events < MIN_SAMPLE_FOR_BONUS:
        return 1.0
    log_factor = math.log10(total_events / MIN_SAMPLE_FOR_BONUS)
    return min(1.0 + log_factor * SAMPLE_BONUS_PER_DECADE, MAX_SAMPLE_MULTIPLIER)


def recency_factor(
    action_count: int,
    total_events: int,
    recent_action_count: int,
    recent_total_events: int,
) -> float:
    """Penalty for recent behavior drifting from the overall rate."""
    if recent_total_events < MIN_RECENT_EVENTS or total_events <= 0:
        return 1.0
    recent_rate = recent_action_count / recent_total_events
    overall_rate = action_count / total_events
    divergence = abs(overall_rate - recent_rate)
    return max(MIN_RECENCY_FACTOR, 1.0 - divergence * RECENCY_PENALTY_WEIGHT)


def calculate_confidence(
    action_count: int,
    total_events: int,
    recent_action_count: int = 0,
    recent_total_events: int = 0,
) -> int:
    """Calculate a 0-100 confidence score for a behavior.

    Args:
        action_count: Times the user took the action
        total_events: Events the action count is measured against
        recent_action_count: Action events inside the recency window
        recent_total_events: All events inside the recency window

    Returns:
        Integer confidence between 0 and 100
    """
    if total_events <= 0:
        return 0

    base_rate = action_count / total_events * 100
    score = (
        base_rate
        * sample_multiplier(total_events)
        * recency_factor(action_count, total_events, recent_action_count, recent_total_events)
    )
    return max(0, min(100, _round_half_up(score)))


def should_suggest_pattern(
    confidence: int,
    action_type: str,
    first_seen: datetime,
    now: datetime | None = None,
    thresholds: dict[str, int] | None = None,
    min_observation_days: int = DEFAULT_MIN_OBSERVATION_DAYS,
) -> bool:
    """Decide whether a pattern is ready to be shown to the user.

    A pattern qualifies once it has been observed for min_observation_days
    and its confidence meets the threshold for its action type. Action types
    without a threshold are never suggested.
    """
    now = now or datetime.now(UTC)
    if first_seen.tzinfo is None:
        first_seen = first_seen.replace(tzinfo=UTC)

    if now - first_seen < timedelta(days=min_observation_days):
        return False

    threshold = (thresholds or DEFAULT_SUGGESTION_THRESHOLDS).get(action_type)
    if threshold is None:
        return False
    return confidence >= threshold


def map_event_type_to_action_type(event_type: str) -> str:
    """Translate an observed event type ('deleted') to the action that automates it ('delete')."""
    return _EVENT_TO_ACTION.get(event_type, event_type)

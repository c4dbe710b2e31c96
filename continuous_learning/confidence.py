"""Confidence scoring for learned instincts.

confidence = 0.4 * frequency + 0.3 * success + 0.2 * recency + 0.1 * consistency

- frequency: observation count relative to a normalizer, capped at 1.0
- success: share of successful occurrences among those carrying an outcome
- recency: exponential decay of the time since the pattern was last observed
- consistency: distinct contexts relative to a normalizer, capped at 1.0
"""

from collections.abc import Iterable
from datetime import datetime

from continuous_learning.config import (
    DEFAULT_CONTEXT_NORMALIZER,
    DEFAULT_FREQUENCY_NORMALIZER,
    DEFAULT_RECENCY_HALF_LIFE_DAYS,
)
from continuous_learning.models import ScoreBreakdown

# Component weights (sum to 1.0)
FREQUENCY_WEIGHT: float = 0.4
SUCCESS_WEIGHT: float = 0.3
RECENCY_WEIGHT: float = 0.2
CONSISTENCY_WEIGHT: float = 0.1

# Decimal places kept in stored scores
SCORE_PRECISION: int = 4

SECONDS_PER_DAY: float = 86400.0


def frequency_score(observation_count: int, normalizer: int = DEFAULT_FREQUENCY_NORMALIZER) -> float:
    """Score how often a pattern was seen.

    Raises:
        ValueError: If observation_count is negative or normalizer not positive.
    """
    if observation_count < 0:
        raise ValueError("Observation count must be non-negative")
    if normalizer <= 0:
        raise ValueError("Normalizer must be positive")
    return min(1.0, observation_count / normalizer)


def success_rate(outcomes: Iterable[bool | None]) -> float:
    """Share of successful outcomes.

    Outcomes of None (no success signal) are left out of the denominator.
    A group where no occurrence carries a signal scores 1.0.
    """
    known = [outcome for outcome in outcomes if outcome is not None]
    if not known:
        return 1.0
    return sum(1 for outcome in known if outcome) / len(known)


def recency_score(
    last_observed: datetime,
    as_of: datetime,
    half_life_days: float = DEFAULT_RECENCY_HALF_LIFE_DAYS,
) -> float:
    """Exponential decay of the age of the last observation.

    An observation newer than as_of counts as age zero.
    """
    if half_life_days <= 0:
        raise ValueError("Half-life must be positive")
    age_days = max(0.0, (as_of - last_observed).total_seconds() / SECONDS_PER_DAY)
    return 0.5 ** (age_days / half_life_days)


def consistency_score(context_count: int, normalizer: int = DEFAULT_CONTEXT_NORMALIZER) -> float:
    """Score how many distinct contexts a pattern was seen in."""
    if normalizer <= 0:
        raise ValueError("Normalizer must be positive")
    return min(1.0, max(0, context_count) / normalizer)


def calculate_confidence(
    observation_count: int,
    success: float,
    last_observed: datetime,
    as_of: datetime,
    context_count: int,
    normalizer: int = DEFAULT_FREQUENCY_NORMALIZER,
    context_normalizer: int = DEFAULT_CONTEXT_NORMALIZER,
    half_life_days: float = DEFAULT_RECENCY_HALF_LIFE_DAYS,
) -> tuple[float, ScoreBreakdown]:
    """Combine the four components into a confidence value.

    Args:
        observation_count: Number of observations in the group.
        success: Success rate in [0, 1].
        last_observed: Newest observation timestamp in the group.
        as_of: Reference time recency is measured against.
        context_count: Distinct (session, cwd) contexts in the group.
        normalizer: Count at which the frequency component saturates.
        context_normalizer: Contexts at which the consistency component saturates.
        half_life_days: Half-life of the recency component.

    Returns:
        Tuple of (confidence rounded to SCORE_PRECISION, component scores).
    """
    scores = ScoreBreakdown(
        frequency=frequency_score(observation_count, normalizer),
        success=max(0.0, min(1.0, success)),
        recency=recency_score(last_observed, as_of, half_life_days),
        consistency=consistency_score(context_count, context_normalizer),
    )
    confidence = (
        FREQUENCY_WEIGHT * scores.frequency
        + SUCCESS_WEIGHT * scores.success
        + RECENCY_WEIGHT * scores.recency
        + CONSISTENCY_WEIGHT * scores.consistency
    )
    rounded = ScoreBreakdown(
        frequency=round(scores.frequency, SCORE_PRECISION),
        success=round(scores.success, SCORE_PRECISION),
        recency=round(scores.recency, SCORE_PRECISION),
        consistency=round(scores.consistency, SCORE_PRECISION),
    )
    return round(confidence, SCORE_PRECISION), rounded

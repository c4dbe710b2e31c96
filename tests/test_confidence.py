"""Tests for continuous_learning.confidence module.

Tests cover:
- Frequency score saturation at the normalizer
- Success rate with and without success signals
- Recency half-life decay
- Consistency across contexts
- The weighted confidence formula and its saturation bounds
"""

from datetime import datetime, timedelta, timezone

import pytest

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


class TestFrequencyScore:
    """Tests for frequency_score function."""

    def test_scales_linearly_below_normalizer(self):
        """Counts below the normalizer should scale linearly."""
        from continuous_learning.confidence import frequency_score

        assert frequency_score(25, 50) == 0.5

    def test_saturates_at_normalizer(self):
        """Counts at or above the normalizer should score 1.0."""
        from continuous_learning.confidence import frequency_score

        assert frequency_score(50, 50) == 1.0
        assert frequency_score(500, 50) == 1.0

    def test_negative_count_raises(self):
        """Negative counts should raise ValueError."""
        from continuous_learning.confidence import frequency_score

        with pytest.raises(ValueError, match="non-negative"):
            frequency_score(-1)

    def test_non_positive_normalizer_raises(self):
        """A zero normalizer should raise ValueError."""
        from continuous_learning.confidence import frequency_score

        with pytest.raises(ValueError, match="positive"):
            frequency_score(1, 0)


class TestSuccessRate:
    """Tests for success_rate function."""

    def test_share_of_successes(self):
        """Rate should be successes over outcomes."""
        from continuous_learning.confidence import success_rate

        assert success_rate([True, True, False, True]) == 0.75

    def test_missing_signals_excluded(self):
        """Outcomes of None should not count against the rate."""
        from continuous_learning.confidence import success_rate

        assert success_rate([True, None, None, False]) == 0.5

    def test_no_signal_defaults_to_one(self):
        """A group with no success signal should score 1.0."""
        from continuous_learning.confidence import success_rate

        assert success_rate([None, None]) == 1.0
        assert success_rate([]) == 1.0


class TestRecencyScore:
    """Tests for recency_score function."""

    def test_now_scores_one(self):
        """An observation at the reference time should score 1.0."""
        from continuous_learning.confidence import recency_score

        assert recency_score(NOW, NOW) == 1.0

    def test_half_life(self):
        """After one half-life the score should halve."""
        from continuous_learning.confidence import recency_score

        assert recency_score(NOW - timedelta(days=30), NOW, 30.0) == pytest.approx(0.5)
        assert recency_score(NOW - timedelta(days=60), NOW, 30.0) == pytest.approx(0.25)

    def test_future_observation_counts_as_now(self):
        """Age should be clamped at zero."""
        from continuous_learning.confidence import recency_score

        assert recency_score(NOW + timedelta(days=1), NOW) == 1.0


class TestConsistencyScore:
    """Tests for consistency_score function."""

    def test_single_context_is_partial(self):
        """One context should score 1/normalizer."""
        from continuous_learning.confidence import consistency_score

        assert consistency_score(1, 5) == 0.2

    def test_caps_at_one(self):
        """Many contexts should cap at 1.0."""
        from continuous_learning.confidence import consistency_score

        assert consistency_score(12, 5) == 1.0


class TestCalculateConfidence:
    """Tests for calculate_confidence function."""

    def test_saturated_single_context_is_between_0_9_and_1(self):
        """A saturated pattern seen in one context should score in (0.9, 1.0)."""
        from continuous_learning.confidence import calculate_confidence

        confidence, scores = calculate_confidence(
            observation_count=50,
            success=1.0,
            last_observed=NOW,
            as_of=NOW,
            context_count=1,
        )

        assert 0.9 < confidence < 1.0
        assert confidence == 0.92
        assert scores.frequency == 1.0
        assert scores.consistency == 0.2

    def test_many_contexts_reach_one(self):
        """Every component saturated should give 1.0."""
        from continuous_learning.confidence import calculate_confidence

        confidence, _ = calculate_confidence(100, 1.0, NOW, NOW, context_count=5)
        assert confidence == 1.0

    def test_weighted_sum(self):
        """Confidence should be the documented weighted sum."""
        from continuous_learning.confidence import calculate_confidence

        confidence, scores = calculate_confidence(
            observation_count=25,
            success=0.5,
            last_observed=NOW - timedelta(days=30),
            as_of=NOW,
            context_count=2,
        )

        expected = 0.4 * 0.5 + 0.3 * 0.5 + 0.2 * 0.5 + 0.1 * 0.4
        assert confidence == pytest.approx(expected, abs=1e-4)
        assert scores.recency == pytest.approx(0.5, abs=1e-4)

    def test_rounded_to_four_places(self):
        """Stored confidence should be rounded to four decimals."""
        from continuous_learning.confidence import calculate_confidence

        confidence, _ = calculate_confidence(7, 2 / 3, NOW - timedelta(days=3), NOW, 1)
        assert confidence == round(confidence, 4)

    def test_deterministic(self):
        """The same inputs should always give the same confidence."""
        from continuous_learning.confidence import calculate_confidence

        args = (33, 0.9, NOW - timedelta(hours=5), NOW, 3)
        assert calculate_confidence(*args) == calculate_confidence(*args)

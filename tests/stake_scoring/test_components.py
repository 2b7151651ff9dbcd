"""
Tests for the per-validator scoring components.

============================================================
PURPOSE
============================================================
Unit tests for MetricNormalizer, AnomalyDetector,
CompositeScorer and OverstakeAdjuster.

TEST PRINCIPLES:
- Rules evaluated in order, first match wins
- Undefined history never penalizes
- Integer scores always rounded down
- No component reads another validator's record

============================================================
"""

import pytest
from dataclasses import replace
from decimal import Decimal

from stake_scoring.anomaly import (
    AnomalyDetector,
    OVERSTAKED_REASON,
    ZERO_SCORE_OVERSTAKED_REASON,
)
from stake_scoring.composite import CompositeScorer, commission_bonus_multiplier
from stake_scoring.config import AnomalyConfig, CompositeConfig
from stake_scoring.normalizer import MetricNormalizer
from stake_scoring.overstake import OverstakeAdjuster
from stake_scoring.types import (
    DegenerateAggregateError,
    HistoryAverages,
    NormalizedMetrics,
    PopulationSnapshot,
    RemoveLevel,
    ValidatorTelemetry,
)


# ============================================================
# FIXTURES
# ============================================================

def make_telemetry(vote_address: str = "Vote1111", **overrides) -> ValidatorTelemetry:
    """Create a healthy validator record."""
    fields = dict(
        vote_address=vote_address,
        identity_address=f"Id-{vote_address}",
        credits_observed=1000,
        commission=5,
        max_commission=5,
        version="1.18.2",
        apy=Decimal("7"),
        active_stake=Decimal("100000"),
        marinade_staked=Decimal("0"),
    )
    fields.update(overrides)
    return ValidatorTelemetry(**fields)


def make_metrics(vote_address: str = "Vote1111", **overrides) -> NormalizedMetrics:
    """Create healthy normalized metrics."""
    fields = dict(
        vote_address=vote_address,
        credit_fraction=Decimal("1"),
        apy_fraction=Decimal("1"),
        average_position=Decimal("50"),
    )
    fields.update(overrides)
    return NormalizedMetrics(**fields)


@pytest.fixture
def population():
    """Population snapshot with round averages."""
    return PopulationSnapshot(
        epoch=500,
        validator_count=100,
        mean_credits=Decimal("1000"),
        mean_apy=Decimal("7"),
        total_pool_stake=Decimal("100000"),
        min_release_version="1.18.0",
    )


# ============================================================
# METRIC NORMALIZER TESTS
# ============================================================

class TestMetricNormalizer:
    """Tests for MetricNormalizer."""

    def test_healthy_validator(self, population):
        """Test average validator gets full fractions and position 50."""
        metrics = MetricNormalizer().normalize(make_telemetry(), population)

        assert metrics.credit_fraction == Decimal("1")
        assert metrics.apy_fraction == Decimal("1")
        assert metrics.average_position == Decimal("50")
        assert not metrics.emergency
        assert not metrics.degraded

    def test_superminority_is_emergency(self, population):
        """Test superminority members are flagged."""
        metrics = MetricNormalizer().normalize(make_telemetry(under_nakamoto=True), population)

        assert metrics.emergency
        assert "superminority" in metrics.emergency_reason

    def test_high_commission_is_emergency(self, population):
        """Test commission above the healthy maximum."""
        metrics = MetricNormalizer().normalize(make_telemetry(commission=25), population)

        assert metrics.emergency
        assert "Commission (25%)" in metrics.emergency_reason

    def test_delinquent_is_emergency(self, population):
        """Test delinquent validators are flagged."""
        metrics = MetricNormalizer().normalize(make_telemetry(delinquent=True), population)

        assert metrics.emergency
        assert metrics.emergency_reason == "DELINQUENT"

    def test_zero_credits_is_emergency(self, population):
        """Test a validator not producing credits."""
        metrics = MetricNormalizer().normalize(make_telemetry(credits_observed=0), population)

        assert metrics.emergency
        assert metrics.credit_fraction == Decimal("0")

    def test_first_matching_rule_sets_reason(self, population):
        """Test superminority wins over delinquency."""
        telemetry = make_telemetry(under_nakamoto=True, delinquent=True, credits_observed=0)

        metrics = MetricNormalizer().normalize(telemetry, population)

        assert "superminority" in metrics.emergency_reason

    def test_old_release_is_emergency(self, population):
        """Test a release below the configured minimum."""
        metrics = MetricNormalizer().normalize(make_telemetry(version="1.17.9"), population)

        assert metrics.emergency
        assert "1.17.9" in metrics.emergency_reason

    def test_credits_below_emergency_ratio(self, population):
        """Test credits under 80% of the mean."""
        metrics = MetricNormalizer().normalize(make_telemetry(credits_observed=700), population)

        assert metrics.emergency
        assert metrics.credit_fraction == Decimal("0")
        assert "70.00% of the average" in metrics.emergency_reason

    def test_credits_below_degraded_ratio(self, population):
        """Test credits between 80% and 90% of the mean."""
        metrics = MetricNormalizer().normalize(make_telemetry(credits_observed=850), population)

        assert not metrics.emergency
        assert metrics.degraded
        assert metrics.credit_fraction == Decimal("0.5")
        assert metrics.average_position == Decimal("42.5")
        assert "Low production" in metrics.degraded_reason

    def test_apy_fraction(self, population):
        """Test APY above the degraded ratio scales the fraction."""
        metrics = MetricNormalizer().normalize(make_telemetry(apy=Decimal("6.5")), population)

        assert metrics.apy_fraction == Decimal("0.928571")
        assert not metrics.degraded

    def test_apy_below_emergency_ratio(self, population):
        """Test APY under 80% of the mean."""
        metrics = MetricNormalizer().normalize(make_telemetry(apy=Decimal("5")), population)

        assert metrics.emergency
        assert metrics.apy_fraction == Decimal("0")

    def test_missing_apy_is_not_penalized(self, population):
        """Test no APY observation keeps the full fraction."""
        metrics = MetricNormalizer().normalize(make_telemetry(apy=None), population)

        assert metrics.apy_fraction == Decimal("1")
        assert not metrics.emergency

    def test_tripped_gates_keep_ratio_rules(self, population):
        """Test ratio rules apply whatever the population health."""
        tripped = replace(population, population_gates_tripped=True)

        metrics = MetricNormalizer().normalize(make_telemetry(credits_observed=500), tripped)

        assert metrics.emergency
        assert metrics.credit_fraction == Decimal("0")

    def test_release_suspension_skips_release_rule(self, population):
        """Test only the release rule is skipped while old releases are widespread."""
        suspended = replace(population, release_rule_suspended=True)
        telemetry = make_telemetry(version="1.0.0", apy=Decimal("1"))

        metrics = MetricNormalizer().normalize(telemetry, suspended)

        assert metrics.emergency
        assert "APY" in metrics.emergency_reason
        assert "version" not in metrics.emergency_reason

    def test_release_suspension_keeps_absolute_rules(self, population):
        """Test delinquency still applies while release penalties are skipped."""
        suspended = replace(population, release_rule_suspended=True)

        metrics = MetricNormalizer().normalize(make_telemetry(delinquent=True), suspended)

        assert metrics.emergency

    def test_low_history_position_is_degraded(self, population):
        """Test defined history below the average position threshold."""
        history = HistoryAverages(
            vote_address="Vote1111",
            epochs_observed=4,
            average_position=Decimal("30"),
        )

        metrics = MetricNormalizer().normalize(make_telemetry(), population, history)

        assert metrics.degraded
        assert "Low average position" in metrics.degraded_reason

    def test_undefined_history_is_not_penalized(self, population):
        """Test a new validator is never degraded for missing history."""
        metrics = MetricNormalizer().normalize(
            make_telemetry(),
            population,
            HistoryAverages.undefined("Vote1111"),
        )

        assert not metrics.degraded

    def test_zero_mean_credits_raises(self, population):
        """Test degenerate population mean."""
        degenerate = replace(population, mean_credits=Decimal("0"))

        with pytest.raises(DegenerateAggregateError):
            MetricNormalizer().normalize(make_telemetry(), degenerate)


# ============================================================
# ANOMALY DETECTOR TESTS
# ============================================================

class TestAnomalyDetector:
    """Tests for AnomalyDetector decision table."""

    def test_healthy(self):
        """Test healthy validator gets no remove level."""
        decision = AnomalyDetector().detect(
            make_telemetry(), make_metrics(), 100, 1000, Decimal("100000")
        )

        assert decision.remove_level == RemoveLevel.NONE
        assert decision.reason == "healthy"

    def test_blacklist_wins_over_everything(self):
        """Test blacklisted validator is emergency unstaked first."""
        detector = AnomalyDetector(AnomalyConfig(blacklist={"Vote1111": "vote lagging"}))
        metrics = make_metrics(degraded=True, degraded_reason="Low production")

        decision = detector.detect(make_telemetry(), metrics, 100, 1000, Decimal("100000"))

        assert decision.is_emergency
        assert decision.reason == "blacklisted: vote lagging"

    def test_performance_emergency(self):
        """Test normalizer emergency is propagated with its reason."""
        metrics = make_metrics(emergency=True, emergency_reason="DELINQUENT")

        decision = AnomalyDetector().detect(
            make_telemetry(), metrics, 0, 1000, Decimal("100000")
        )

        assert decision.is_emergency
        assert decision.reason == "DELINQUENT"

    def test_zero_score_overstaked(self):
        """Test zero score holding more than 0.45% of the pool."""
        telemetry = make_telemetry(marinade_staked=Decimal("500"))

        decision = AnomalyDetector().detect(
            telemetry, make_metrics(), 0, 1000, Decimal("100000")
        )

        assert decision.is_emergency
        assert decision.reason == ZERO_SCORE_OVERSTAKED_REASON

    def test_zero_score_small_holding_is_kept(self):
        """Test zero score under the pool share threshold."""
        telemetry = make_telemetry(marinade_staked=Decimal("400"))

        decision = AnomalyDetector().detect(
            telemetry, make_metrics(), 0, 1000, Decimal("100000")
        )

        assert decision.remove_level == RemoveLevel.NONE

    def test_overstaked_multiple(self):
        """Test holding more than 2.5x the implied stake."""
        telemetry = make_telemetry(
            active_stake=Decimal("1000000"),
            marinade_staked=Decimal("30000"),
        )

        decision = AnomalyDetector().detect(
            telemetry, make_metrics(), 100, 1000, Decimal("100000")
        )

        assert decision.is_emergency
        assert decision.reason == OVERSTAKED_REASON

    def test_concentration_exempt_skips_overstake(self):
        """Test pool stake above 20% of total stake is exempt."""
        telemetry = make_telemetry(
            active_stake=Decimal("100000"),
            marinade_staked=Decimal("30000"),
        )

        decision = AnomalyDetector().detect(
            telemetry, make_metrics(), 100, 1000, Decimal("100000")
        )

        assert decision.remove_level == RemoveLevel.NONE
        assert decision.overstake_exempt

    def test_degraded_is_partial(self):
        """Test normalizer degradation yields partial unstake."""
        metrics = make_metrics(degraded=True, degraded_reason="Low production")

        decision = AnomalyDetector().detect(
            make_telemetry(), metrics, 50, 1000, Decimal("100000")
        )

        assert decision.is_partial
        assert decision.reason == "Low production"

    def test_implied_stake_without_scores(self):
        """Test implied stake is zero when nobody scores."""
        assert AnomalyDetector().implied_stake(10, 0, Decimal("100000")) == Decimal("0")


# ============================================================
# COMPOSITE SCORER TESTS
# ============================================================

class TestCompositeScorer:
    """Tests for CompositeScorer."""

    def test_commission_bonus_table(self):
        """Test the low commission multiplier."""
        assert commission_bonus_multiplier(0) == 5
        assert commission_bonus_multiplier(6) == 5
        assert commission_bonus_multiplier(7) == 4
        assert commission_bonus_multiplier(8) == 3
        assert commission_bonus_multiplier(9) == 2
        assert commission_bonus_multiplier(10) == 1

    def test_score_rounds_down(self, population):
        """Test base times fractions is floored."""
        metrics = make_metrics(
            credit_fraction=Decimal("0.9"),
            apy_fraction=Decimal("0.95"),
        )

        score = CompositeScorer().score(
            make_telemetry(), 1000, metrics, RemoveLevel.NONE, population
        )

        assert score == 855

    def test_partial_unstake_halves(self, population):
        """Test partial unstake halves and floors."""
        metrics = make_metrics(
            credit_fraction=Decimal("0.9"),
            apy_fraction=Decimal("0.95"),
        )

        score = CompositeScorer().score(
            make_telemetry(), 1000, metrics, RemoveLevel.PARTIAL_UNSTAKE, population
        )

        assert score == 427

    def test_emergency_scores_zero(self, population):
        """Test emergency unstake always scores zero."""
        score = CompositeScorer().score(
            make_telemetry(), 1000, make_metrics(), RemoveLevel.EMERGENCY_UNSTAKE, population
        )

        assert score == 0

    def test_missing_base_score(self, population):
        """Test validator absent from the base feed scores zero."""
        score = CompositeScorer().score(
            make_telemetry(), 0, make_metrics(), RemoveLevel.NONE, population
        )

        assert score == 0

    def test_commission_above_score_maximum(self, population):
        """Test commission above the scoring maximum."""
        scorer = CompositeScorer()
        telemetry = make_telemetry(commission=9)

        assert "commission" in scorer.ineligibility_reason(telemetry, population)
        assert scorer.score(telemetry, 1000, make_metrics(), RemoveLevel.NONE, population) == 0

    def test_stake_below_minimum(self, population):
        """Test active stake below the scoring minimum."""
        telemetry = make_telemetry(active_stake=Decimal("50"))

        score = CompositeScorer().score(
            telemetry, 1000, make_metrics(), RemoveLevel.NONE, population
        )

        assert score == 0

    def test_below_top_n_line(self, population):
        """Test validator below the top-N line."""
        below = replace(population, below_line=frozenset({"Vote1111"}))

        score = CompositeScorer().score(
            make_telemetry(), 1000, make_metrics(), RemoveLevel.NONE, below
        )

        assert score == 0

    def test_low_history_position_ineligible(self, population):
        """Test defined history below the minimum average position."""
        history = HistoryAverages(
            vote_address="Vote1111",
            epochs_observed=2,
            average_position=Decimal("30"),
        )

        score = CompositeScorer().score(
            make_telemetry(), 1000, make_metrics(), RemoveLevel.NONE, population, history
        )

        assert score == 0

    def test_undefined_history_eligible(self, population):
        """Test a validator without history can score."""
        score = CompositeScorer().score(
            make_telemetry(),
            1000,
            make_metrics(),
            RemoveLevel.NONE,
            population,
            HistoryAverages.undefined("Vote1111"),
        )

        assert score == 1000

    def test_concentration_discount(self):
        """Test points discounted per unit of stake concentration."""
        scorer = CompositeScorer(CompositeConfig(concentration_point_discount=100))
        telemetry = make_telemetry(stake_concentration=Decimal("0.25"))

        assert scorer.effective_base(telemetry, 1000) == 975

    def test_commission_bonus_enabled(self):
        """Test opt-in commission bonus multiplies the base."""
        scorer = CompositeScorer(CompositeConfig(commission_bonus_enabled=True))

        assert scorer.effective_base(make_telemetry(commission=7), 1000) == 4000

    def test_commission_bonus_disabled_by_default(self):
        """Test the base is unchanged without the bonus."""
        assert CompositeScorer().effective_base(make_telemetry(commission=0), 1000) == 1000

    def test_preliminary_score_follows_flags(self, population):
        """Test preliminary score uses the normalizer flags."""
        scorer = CompositeScorer()
        degraded = make_metrics(degraded=True)
        emergency = make_metrics(emergency=True)

        assert scorer.preliminary_score(make_telemetry(), 1000, degraded, population) == 500
        assert scorer.preliminary_score(make_telemetry(), 1000, emergency, population) == 0


# ============================================================
# OVERSTAKE ADJUSTER TESTS
# ============================================================

class TestOverstakeAdjuster:
    """Tests for OverstakeAdjuster."""

    def test_zero_score(self):
        """Test zero score holding stake is overstaked."""
        adjustment = OverstakeAdjuster().adjust(0, Decimal("100"), 1000, Decimal("100000"))

        assert adjustment.adjusted_score == 0
        assert adjustment.overstaked

    def test_severely_understaked(self):
        """Test should-have above twice the held stake."""
        adjustment = OverstakeAdjuster().adjust(100, Decimal("1000"), 1000, Decimal("100000"))

        assert adjustment.should_have == Decimal("10000")
        assert adjustment.severely_understaked
        assert adjustment.adjusted_score == 80
        assert adjustment.max_pct is None

    def test_new_validator_is_severely_understaked(self):
        """Test a validator holding nothing yet."""
        adjustment = OverstakeAdjuster().adjust(100, Decimal("0"), 1000, Decimal("100000"))

        assert adjustment.severely_understaked
        assert adjustment.adjusted_score == 80

    def test_mildly_understaked_growth_ceiling(self):
        """Test growth bounded to 0.1% of the pool per epoch."""
        adjustment = OverstakeAdjuster().adjust(100, Decimal("6000"), 1000, Decimal("100000"))

        assert adjustment.adjusted_score == 100
        assert adjustment.max_pct == Decimal("0.061")

    def test_overstaked(self):
        """Test holding more than should-have leaves the score."""
        adjustment = OverstakeAdjuster().adjust(100, Decimal("20000"), 1000, Decimal("100000"))

        assert adjustment.adjusted_score == 100
        assert adjustment.overstaked
        assert adjustment.max_pct is None

    def test_exempt_is_not_adjusted(self):
        """Test concentration exempt validators keep their score."""
        adjustment = OverstakeAdjuster().adjust(
            100, Decimal("0"), 1000, Decimal("100000"), exempt=True
        )

        assert adjustment.adjusted_score == 100
        assert adjustment.exempt
        assert not adjustment.severely_understaked

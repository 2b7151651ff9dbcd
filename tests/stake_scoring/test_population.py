"""
Tests for Population Aggregation.

============================================================
PURPOSE
============================================================
Verify population aggregates and health gates.

TEST PRINCIPLES:
- Degenerate aggregates are fatal
- Data-center concentration is fatal
- Poor voter and block producer gates are notes only
- Too many old releases suspends only the release rule

============================================================
"""

import pytest
from dataclasses import replace
from decimal import Decimal
from typing import List

from stake_scoring.config import PopulationConfig
from stake_scoring.population import GATES_NOTE, PopulationAggregator
from stake_scoring.types import (
    DegenerateAggregateError,
    PopulationHealthError,
    ValidatorTelemetry,
)


# ============================================================
# FIXTURES
# ============================================================

def make_population(count: int = 10, **overrides) -> List[ValidatorTelemetry]:
    """Create a homogeneous healthy population."""
    validators = []
    for i in range(count):
        fields = dict(
            vote_address=f"Vote{i:04d}",
            identity_address=f"Id{i:04d}",
            credits_observed=1000,
            commission=5,
            version="1.18.2",
            active_stake=Decimal("10000"),
        )
        fields.update(overrides)
        validators.append(ValidatorTelemetry(**fields))
    return validators


def with_changes(validators, index: int, **changes) -> List[ValidatorTelemetry]:
    updated = list(validators)
    updated[index] = replace(updated[index], **changes)
    return updated


@pytest.fixture
def aggregator():
    return PopulationAggregator()


# ============================================================
# AGGREGATE TESTS
# ============================================================

class TestPopulationAggregates:
    """Tests for the population means and pool stake."""

    def test_mean_credits(self, aggregator):
        """Test mean credits over every validator."""
        validators = with_changes(make_population(4), 0, credits_observed=2000)

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.mean_credits == Decimal("1250")
        assert snapshot.validator_count == 4
        assert not snapshot.population_gates_tripped

    def test_pool_stake_defaults_to_held_plus_headroom(self, aggregator):
        """Test pool stake is the sum of held stake plus headroom."""
        validators = make_population(4, marinade_staked=Decimal("500"))

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.total_pool_stake == Decimal("102000")

    def test_explicit_pool_stake(self, aggregator):
        """Test a reported pool total overrides the sum."""
        snapshot = aggregator.compute(500, make_population(4), {}, pool_stake=Decimal("5000000"))

        assert snapshot.total_pool_stake == Decimal("5100000")

    def test_mean_apy_ignores_low_samples(self, aggregator):
        """Test APY at or below 4% is left out of the average."""
        validators = make_population(3)
        validators = with_changes(validators, 0, apy=Decimal("6"))
        validators = with_changes(validators, 1, apy=Decimal("8"))
        validators = with_changes(validators, 2, apy=Decimal("3"))

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.mean_apy == Decimal("7")

    def test_no_apy_reported(self, aggregator):
        """Test mean APY stays undefined without samples."""
        snapshot = aggregator.compute(500, make_population(3), {})

        assert snapshot.mean_apy is None

    def test_no_valid_apy_sample_raises(self, aggregator):
        """Test reported APY with no usable sample is degenerate."""
        validators = make_population(3, apy=Decimal("2"))

        with pytest.raises(DegenerateAggregateError):
            aggregator.compute(500, validators, {})

    def test_empty_population_raises(self, aggregator):
        """Test no validators is degenerate."""
        with pytest.raises(DegenerateAggregateError):
            aggregator.compute(500, [], {})

    def test_zero_credits_raises(self, aggregator):
        """Test a population without credits is degenerate."""
        with pytest.raises(DegenerateAggregateError) as exc_info:
            aggregator.compute(500, make_population(5, credits_observed=0), {})

        assert exc_info.value.epoch == 500


# ============================================================
# HEALTH GATE TESTS
# ============================================================

class TestPopulationGates:
    """Tests for fatal and informational gates."""

    def test_largest_data_center_is_fatal(self, aggregator):
        """Test too much stake in one data center aborts the epoch."""
        validators = make_population(10, data_center_asn=16509, data_center_location="US-Ashburn")

        with pytest.raises(PopulationHealthError):
            aggregator.compute(500, validators, {})

    def test_untagged_validators_not_grouped(self, aggregator):
        """Test validators without a data center tag are never pooled."""
        snapshot = aggregator.compute(500, make_population(10), {})

        assert snapshot.largest_data_center_stake_pct == Decimal("0")

    def test_largest_data_center_pct(self, aggregator):
        """Test concentration of the largest tagged data center."""
        validators = make_population(10)
        for i in range(3):
            validators = with_changes(
                validators, i, data_center_asn=24940, data_center_location="DE-Falkenstein"
            )

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.largest_data_center_stake_pct == Decimal("30")

    def test_poor_voters_trip_gate(self, aggregator):
        """Test too many poor voters trips the gate without touching penalties."""
        validators = make_population(10)
        for i in range(3):
            validators = with_changes(validators, i, credits_observed=100)

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.population_gates_tripped
        assert GATES_NOTE in snapshot.notes
        assert not snapshot.release_rule_suspended

    def test_old_releases_suspend_release_rule(self):
        """Test too many old releases suspends the release rule."""
        aggregator = PopulationAggregator(PopulationConfig(min_release_version="1.18.0"))
        validators = make_population(10)
        for i in range(2):
            validators = with_changes(validators, i, version="1.17.31")

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.population_gates_tripped
        assert snapshot.release_rule_suspended
        assert snapshot.min_release_version == "1.18.0"

    def test_few_old_releases_keep_penalties(self):
        """Test old releases under the limit do not suspend."""
        aggregator = PopulationAggregator(PopulationConfig(min_release_version="1.18.0"))
        validators = with_changes(make_population(10), 0, version="1.17.31")

        snapshot = aggregator.compute(500, validators, {})

        assert not snapshot.population_gates_tripped
        assert not snapshot.release_rule_suspended

    def test_poor_block_producers_trip_gate(self, aggregator):
        """Test too many skip-rate outliers trips the gate."""
        validators = make_population(10, skip_rate=Decimal("0"))
        for i in range(3):
            validators = with_changes(validators, i, skip_rate=Decimal("90"))

        snapshot = aggregator.compute(500, validators, {})

        assert snapshot.population_gates_tripped


# ============================================================
# TOP-N LINE TESTS
# ============================================================

class TestTopNLine:
    """Tests for the top-N base score line."""

    def test_unstaked_validators_below_line(self):
        """Test lowest base scores fall below the line."""
        aggregator = PopulationAggregator(PopulationConfig(stake_top_n_validators=5))
        validators = make_population(8)
        base_scores = {v.vote_address: 100 - i for i, v in enumerate(validators)}

        snapshot = aggregator.compute(500, validators, base_scores)

        assert snapshot.below_line == frozenset({"Vote0005", "Vote0006", "Vote0007"})

    def test_staked_validators_keep_their_place(self):
        """Test validators already holding pool stake are never cut."""
        aggregator = PopulationAggregator(PopulationConfig(stake_top_n_validators=5))
        validators = with_changes(make_population(8), 7, marinade_staked=Decimal("1000"))
        base_scores = {v.vote_address: 100 - i for i, v in enumerate(validators)}

        snapshot = aggregator.compute(500, validators, base_scores)

        assert "Vote0007" not in snapshot.below_line
        assert len(snapshot.below_line) == 2

    def test_no_line_for_small_population(self, aggregator):
        """Test nothing is cut under the top-N count."""
        snapshot = aggregator.compute(500, make_population(10), {})

        assert snapshot.below_line == frozenset()

"""
Tests for the Stake Scoring Engine.

============================================================
PURPOSE
============================================================
End-to-end scoring passes over small validator populations.

TEST PRINCIPLES:
- Blacklist beats every other rule
- Emergency unstake always has pct == 0
- sum(pct) <= 1 and no validator above the hard cap
- Same inputs give the same records
- More credits never lower a score

============================================================
"""

import random
import pytest
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List

from stake_scoring import (
    AnomalyConfig,
    CapConvergenceError,
    CappingConfig,
    DegenerateAggregateError,
    HistoryAverages,
    PopulationHealthError,
    RemoveLevel,
    StakeScoringConfig,
    StakeScoringEngine,
    StakeScoringError,
    ValidatorTelemetry,
    format_epoch_summary,
    removal_summary,
    score_epoch,
)


EPOCH = 500


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def validators() -> List[ValidatorTelemetry]:
    """Twelve identical healthy validators."""
    return [
        ValidatorTelemetry(
            vote_address=f"Vote{i:04d}",
            identity_address=f"Id{i:04d}",
            name=f"validator-{i}",
            credits_observed=1000,
            commission=5,
            max_commission=5,
            version="1.18.2",
            active_stake=Decimal("10000"),
        )
        for i in range(12)
    ]


@pytest.fixture
def base_scores(validators) -> Dict[str, int]:
    return {v.vote_address: 100 for v in validators}


@pytest.fixture
def engine():
    return StakeScoringEngine(StakeScoringConfig(max_workers=4))


def with_changes(validators, vote_address: str, **changes) -> List[ValidatorTelemetry]:
    return [
        replace(v, **changes) if v.vote_address == vote_address else v
        for v in validators
    ]


# ============================================================
# SCORING PASS TESTS
# ============================================================

class TestScoringPass:
    """Tests for StakeScoringEngine.score_epoch."""

    def test_healthy_population(self, engine, validators, base_scores):
        """Test every healthy validator scores its base."""
        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert len(result.records) == 12
        assert all(r.score == 100 for r in result.records)
        assert all(r.remove_level == RemoveLevel.NONE for r in result.records)
        assert result.excluded == []

    def test_ranks_are_dense_and_ordered(self, engine, validators, base_scores):
        """Test ranks run 1..n with vote address as tie-break."""
        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert [r.rank for r in result.records] == list(range(1, 13))
        assert [r.vote_address for r in result.records] == sorted(v.vote_address for v in validators)

    def test_allocation_bounds(self, engine, validators, base_scores):
        """Test the pool is never over-allocated and the cap holds."""
        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert result.total_pct <= Decimal("1")
        assert all(r.pct <= Decimal("0.015") for r in result.records)

    def test_new_validators_are_severely_understaked(self, engine, validators, base_scores):
        """Test validators holding nothing get the reduced adjusted score."""
        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert all(r.adjusted_score == 80 for r in result.records)

    def test_blacklist_precedence(self, validators, base_scores):
        """Test a blacklisted healthy validator is emergency unstaked."""
        config = StakeScoringConfig(anomaly=AnomalyConfig(blacklist={"Vote0000": "manual review"}))
        base_scores["Vote0000"] = 300

        result = StakeScoringEngine(config).score_epoch(EPOCH, validators, base_scores)
        record = result.get_record("Vote0000")

        assert record.credit_fraction == Decimal("1")
        assert record.remove_level == RemoveLevel.EMERGENCY_UNSTAKE
        assert record.remove_level_reason.startswith("blacklisted")
        assert record.score == 0
        assert record.pct == Decimal("0")

    def test_low_credits_emergency(self, engine, validators, base_scores):
        """Test credits at 70% of the mean trigger emergency unstake."""
        validators = with_changes(validators, "Vote0001", credits_observed=700)
        validators = with_changes(validators, "Vote0011", credits_observed=1300)
        base_scores["Vote0001"] = 200

        result = engine.score_epoch(EPOCH, validators, base_scores)
        record = result.get_record("Vote0001")

        assert result.population.mean_credits == Decimal("1000")
        assert record.remove_level == RemoveLevel.EMERGENCY_UNSTAKE
        assert record.score == 0
        assert record.pct == Decimal("0")

    def test_mild_degradation_partial_unstake(self, engine, validators, base_scores):
        """Test credits at 85% of the mean halve the score."""
        validators = with_changes(validators, "Vote0002", credits_observed=850)
        validators = with_changes(validators, "Vote0011", credits_observed=1150)
        base_scores["Vote0002"] = 200

        record = engine.score_epoch(EPOCH, validators, base_scores).get_record("Vote0002")

        assert record.remove_level == RemoveLevel.PARTIAL_UNSTAKE
        assert record.credit_fraction == Decimal("0.5")
        assert record.apy_fraction == Decimal("1")
        assert record.score == 50

    def test_new_validator_not_penalized(self, engine, validators, base_scores):
        """Test missing history is not read as a poor track record."""
        history = {
            "Vote0000": HistoryAverages(
                vote_address="Vote0000",
                epochs_observed=5,
                average_position=Decimal("30"),
            ),
        }

        result = engine.score_epoch(EPOCH, validators, base_scores, history)

        assert result.get_record("Vote0000").remove_level == RemoveLevel.PARTIAL_UNSTAKE
        assert result.get_record("Vote0000").score == 0
        assert result.get_record("Vote0001").remove_level == RemoveLevel.NONE
        assert result.get_record("Vote0001").score == 100

    def test_history_position_between_thresholds(self, engine, validators, base_scores):
        """Test a position between 35 and 40 zeroes the score without an unstake flag."""
        history = {
            "Vote0000": HistoryAverages(
                vote_address="Vote0000",
                epochs_observed=5,
                average_position=Decimal("37"),
            ),
        }

        record = engine.score_epoch(EPOCH, validators, base_scores, history).get_record("Vote0000")

        assert record.remove_level == RemoveLevel.NONE
        assert record.score == 0
        assert record.pct == Decimal("0")

    def test_emergency_never_allocated(self, engine, validators, base_scores):
        """Test every emergency unstake has a zero allocation."""
        validators = with_changes(validators, "Vote0003", delinquent=True)
        validators = with_changes(validators, "Vote0004", commission=30)

        result = engine.score_epoch(EPOCH, validators, base_scores)

        emergencies = [r for r in result.records if r.remove_level == RemoveLevel.EMERGENCY_UNSTAKE]
        assert len(emergencies) == 2
        assert all(r.pct == Decimal("0") for r in emergencies)
        assert result.emergency_count == 2

    def test_missing_base_score(self, engine, validators, base_scores):
        """Test a validator absent from the base feed scores zero."""
        del base_scores["Vote0005"]

        record = engine.score_epoch(EPOCH, validators, base_scores).get_record("Vote0005")

        assert record.base_score == 0
        assert record.score == 0
        assert record.pct == Decimal("0")

    def test_idempotent(self, engine, validators, base_scores):
        """Test the same inputs give the same records."""
        first = engine.score_epoch(EPOCH, validators, base_scores)
        second = engine.score_epoch(EPOCH, validators, base_scores)

        assert [r.to_dict() for r in first.records] == [r.to_dict() for r in second.records]

    def test_single_validator_dominance_capped(self, engine, validators, base_scores):
        """Test one dominant base score still respects the hard cap."""
        base_scores["Vote0000"] = 1_000_000

        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert result.get_record("Vote0000").rank == 1
        assert result.get_record("Vote0000").pct == Decimal("0.015")
        assert result.total_pct <= Decimal("1")

    def test_should_have_follows_pct(self, engine, validators, base_scores):
        """Test should-have is the allocated share of the pool."""
        result = engine.score_epoch(EPOCH, validators, base_scores, pool_stake=Decimal("900000"))
        record = result.records[0]

        assert result.population.total_pool_stake == Decimal("1000000")
        assert record.should_have == Decimal("15000")


# ============================================================
# EXCLUSION AND FAILURE TESTS
# ============================================================

class TestScoringFailures:
    """Tests for malformed records and fatal aggregates."""

    def test_malformed_record_excluded(self, engine, validators, base_scores):
        """Test an invalid record is excluded and reported."""
        validators = validators + [
            ValidatorTelemetry(vote_address="VoteBad", identity_address="IdBad", commission=150),
        ]

        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert result.get_record("VoteBad") is None
        assert [e.vote_address for e in result.excluded] == ["VoteBad"]
        assert len(result.records) == 12

    def test_duplicate_vote_address_excluded(self, engine, validators, base_scores):
        """Test the second record for a vote address is excluded."""
        validators = validators + [validators[0]]

        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert len(result.records) == 12
        assert "duplicate" in result.excluded[0].reason

    def test_zero_credit_population(self, engine, validators, base_scores):
        """Test a population without credits aborts the pass."""
        validators = [replace(v, credits_observed=0) for v in validators]

        with pytest.raises(DegenerateAggregateError):
            engine.score_epoch(EPOCH, validators, base_scores)

    def test_no_base_scores(self, engine, validators):
        """Test a zero preliminary total aborts the pass."""
        with pytest.raises(DegenerateAggregateError):
            engine.score_epoch(EPOCH, validators, {})

    def test_data_center_concentration(self, engine, validators, base_scores):
        """Test the fatal data center gate aborts the pass."""
        validators = [replace(v, data_center_asn=16509, data_center_location="US") for v in validators]

        with pytest.raises(PopulationHealthError) as exc_info:
            engine.score_epoch(EPOCH, validators, base_scores)

        assert isinstance(exc_info.value, StakeScoringError)
        assert exc_info.value.epoch == EPOCH

    def test_cap_convergence_failure(self, validators, base_scores):
        """Test exceeding the capping bound aborts the pass."""
        config = StakeScoringConfig(
            capping=CappingConfig(pct_cap=Decimal("50"), max_iterations=1),
            max_workers=2,
        )
        base_scores["Vote0000"] = 1_000_000

        with pytest.raises(CapConvergenceError) as exc_info:
            StakeScoringEngine(config).score_epoch(EPOCH, validators, base_scores)

        assert exc_info.value.epoch == EPOCH


# ============================================================
# CREDIT MONOTONICITY TESTS
# ============================================================

def credit_sweep(seed: int) -> List[int]:
    """Credits from 0.5x to 1.1x of 1000 around both ratio thresholds."""
    rng = random.Random(seed)
    fixed = [500, 700, 790, 799, 800, 801, 850, 899, 900, 901, 950, 1000, 1100]
    return sorted(set(fixed + [rng.randint(500, 1100) for _ in range(20)]))


class TestCreditMonotonicity:
    """More credits never lower a validator's own score."""

    @pytest.mark.parametrize("seed", range(3))
    def test_sweep_healthy_population(self, engine, validators, base_scores, seed):
        """Test scores never fall along a credit sweep."""
        base_scores["Vote0003"] = 200
        scores = [
            engine.score_epoch(
                EPOCH, with_changes(validators, "Vote0003", credits_observed=credits), base_scores
            ).get_record("Vote0003").score
            for credits in credit_sweep(seed)
        ]

        assert scores == sorted(scores)
        assert scores[0] == 0
        assert scores[-1] == 200

    @pytest.mark.parametrize("seed", range(3))
    def test_sweep_with_poor_voter_gate(self, engine, validators, base_scores, seed):
        """Test the poor voter gate never turns more credits into a lower score."""
        for vote_address in ("Vote0009", "Vote0010", "Vote0011"):
            validators = with_changes(validators, vote_address, credits_observed=100)
        base_scores["Vote0003"] = 200

        results = [
            engine.score_epoch(
                EPOCH, with_changes(validators, "Vote0003", credits_observed=credits), base_scores
            )
            for credits in credit_sweep(seed)
        ]
        scores = [r.get_record("Vote0003").score for r in results]

        assert all(r.population.population_gates_tripped for r in results)
        assert scores == sorted(scores)

    def test_gate_crossing(self, engine):
        """Test crossing the poor voter gate keeps the credit rules in force."""
        validators = [
            ValidatorTelemetry(
                vote_address=f"Vote{i:04d}",
                identity_address=f"Id{i:04d}",
                credits_observed=1000,
                commission=5,
                version="1.18.2",
                active_stake=Decimal("10000"),
            )
            for i in range(4)
        ]
        base_scores = {v.vote_address: 200 for v in validators}

        low = engine.score_epoch(
            EPOCH, with_changes(validators, "Vote0003", credits_observed=400), base_scores
        )
        high = engine.score_epoch(
            EPOCH, with_changes(validators, "Vote0003", credits_observed=800), base_scores
        )

        assert low.population.population_gates_tripped
        assert not high.population.population_gates_tripped
        assert low.get_record("Vote0003").remove_level == RemoveLevel.EMERGENCY_UNSTAKE
        assert low.get_record("Vote0003").score == 0
        assert high.get_record("Vote0003").remove_level == RemoveLevel.PARTIAL_UNSTAKE
        assert high.get_record("Vote0003").score == 50


# ============================================================
# RANDOMIZED PROPERTY TESTS
# ============================================================

def random_population(seed: int):
    """Seeded population with mixed health, commission and stake."""
    rng = random.Random(seed)
    validators = []
    base_scores = {}
    for i in range(40):
        vote_address = f"Vote{i:04d}"
        validators.append(ValidatorTelemetry(
            vote_address=vote_address,
            identity_address=f"Id{i:04d}",
            credits_observed=1000 if i == 0 else rng.randint(700, 1300),
            commission=5 if i == 0 else rng.choice([0, 5, 7, 8, 10, 25]),
            delinquent=i != 0 and rng.random() < 0.1,
            version="1.18.2",
            active_stake=Decimal(rng.randint(100, 500000)),
            marinade_staked=Decimal(rng.choice([0, 0, rng.randint(1, 5000)])),
        ))
        base_scores[vote_address] = 1000 if i == 0 else rng.randint(0, 1000)
    return validators, base_scores


class TestAllocationProperties:
    """Properties that hold for any population."""

    @pytest.mark.parametrize("seed", range(10))
    def test_allocation_invariants(self, engine, seed):
        """Test pool bounds, caps and emergency allocations."""
        validators, base_scores = random_population(seed)

        result = engine.score_epoch(EPOCH, validators, base_scores)

        assert result.total_pct <= Decimal("1")
        assert all(Decimal("0") <= r.pct <= Decimal("0.015") for r in result.records)
        assert all(
            r.pct == Decimal("0")
            for r in result.records
            if r.remove_level == RemoveLevel.EMERGENCY_UNSTAKE
        )
        assert sorted(r.rank for r in result.records) == list(range(1, len(validators) + 1))
        assert all(r.score >= 0 for r in result.records)

    @pytest.mark.parametrize("seed", range(5))
    def test_deterministic_across_worker_counts(self, seed):
        """Test the fan-out never changes the result."""
        validators, base_scores = random_population(seed)

        serial = StakeScoringEngine(StakeScoringConfig(max_workers=1)).score_epoch(
            EPOCH, validators, base_scores
        )
        parallel = StakeScoringEngine(StakeScoringConfig(max_workers=8)).score_epoch(
            EPOCH, validators, base_scores
        )

        assert [r.to_dict() for r in serial.records] == [r.to_dict() for r in parallel.records]


# ============================================================
# CONVENIENCE FUNCTION TESTS
# ============================================================

class TestConvenienceFunctions:
    """Tests for module-level helpers."""

    def test_score_epoch(self, validators, base_scores):
        """Test the one-call scoring helper."""
        result = score_epoch(EPOCH, validators, base_scores)

        assert result.epoch == EPOCH
        assert len(result.records) == 12

    def test_format_epoch_summary(self, engine, validators, base_scores):
        """Test the operator summary."""
        validators = with_changes(validators, "Vote0003", delinquent=True)
        result = engine.score_epoch(EPOCH, validators, base_scores)

        summary = format_epoch_summary(result, top=3)

        assert f"EPOCH {EPOCH}" in summary
        assert "Emergency unstake:  1" in summary
        assert summary.count("score=") == 3

    def test_removal_summary(self, engine, validators, base_scores):
        """Test grouping by remove level label."""
        validators = with_changes(validators, "Vote0003", delinquent=True)
        result = engine.score_epoch(EPOCH, validators, base_scores)

        summary = removal_summary(result)

        assert summary["EmergencyUnstake"] == ["Vote0003"]
        assert summary["PartialUnstake"] == []
        assert len(summary["None"]) == 11

"""
Tests for History Aggregation and the Score Repository.

============================================================
PURPOSE
============================================================
Verify rolling history averages and epoch persistence
against a throwaway SQLite database.

TEST PRINCIPLES:
- New validators have undefined, never zero, averages
- An epoch never reads its own rows as history
- upsert_epoch replaces an epoch as a whole
- Invalid record sets are rejected before any write

============================================================
"""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock

from database.engine import (
    DatabasePersistenceError,
    PersistenceValidationError,
    configure_database,
    get_table_row_counts,
    initialize_database,
    reset_database,
    transaction_scope,
)
from stake_scoring.config import HistoryConfig
from stake_scoring.history import HistoryAggregator
from stake_scoring.repository import ValidatorScoreRepository
from stake_scoring.types import RemoveLevel, ValidatorEpochRecord


# ============================================================
# FIXTURES
# ============================================================

def make_record(epoch: int, vote_address: str = "Vote0001", **overrides) -> ValidatorEpochRecord:
    """Create a persisted-shape record."""
    fields = dict(
        epoch=epoch,
        vote_address=vote_address,
        identity_address=f"Id-{vote_address}",
        credits_observed=1000,
        average_position=Decimal("50"),
        commission=5,
        stake_concentration=Decimal("0.01"),
        score=100,
        adjusted_score=80,
        pct=Decimal("0.015"),
        rank=1,
    )
    fields.update(overrides)
    return ValidatorEpochRecord(**fields)


@pytest.fixture
def database(tmp_path):
    """Configure a fresh SQLite database for one test."""
    configure_database(f"sqlite:///{tmp_path / 'scores.db'}")
    initialize_database()
    yield
    reset_database()


# ============================================================
# HISTORY AGGREGATOR TESTS
# ============================================================

class TestHistoryAggregator:
    """Tests for HistoryAggregator."""

    def test_undefined_without_records(self):
        """Test a new validator has undefined averages."""
        averages = HistoryAggregator().aggregate("Vote0001", [])

        assert not averages.is_defined
        assert averages.score is None
        assert averages.average_position is None

    def test_averages(self):
        """Test means over the prior epochs."""
        records = [
            make_record(499, score=100, average_position=Decimal("40")),
            make_record(498, score=50, average_position=Decimal("60")),
        ]

        averages = HistoryAggregator().aggregate("Vote0001", records, current_epoch=500)

        assert averages.epochs_observed == 2
        assert averages.score == Decimal("75")
        assert averages.average_position == Decimal("50")
        assert averages.commission == Decimal("5")

    def test_current_epoch_ignored(self):
        """Test a re-run never reads its own rows."""
        records = [make_record(500, score=0), make_record(499, score=100)]

        averages = HistoryAggregator().aggregate("Vote0001", records, current_epoch=500)

        assert averages.epochs_observed == 1
        assert averages.score == Decimal("100")

    def test_window(self):
        """Test only the last N epochs are averaged."""
        records = [make_record(500 - i, score=i) for i in range(1, 6)]

        averages = HistoryAggregator(HistoryConfig(history_epochs=2)).aggregate("Vote0001", records)

        assert averages.epochs_observed == 2
        assert averages.score == Decimal("1.5")

    def test_load_from_store(self):
        """Test loading history for every validator of the epoch."""
        store = MagicMock()
        store.get_history.side_effect = lambda vote, n: (
            [make_record(499, vote_address=vote)] if vote == "Vote0001" else []
        )

        history = HistoryAggregator().load(["Vote0001", "Vote0002"], store, current_epoch=500)

        assert history["Vote0001"].is_defined
        assert not history["Vote0002"].is_defined
        store.get_history.assert_any_call("Vote0001", 11)


# ============================================================
# REPOSITORY TESTS
# ============================================================

class TestValidatorScoreRepository:
    """Tests for ValidatorScoreRepository against SQLite."""

    def test_upsert_and_read_epoch(self, database):
        """Test records written are read back ordered by rank."""
        records = [
            make_record(500, "Vote0002", rank=2, remove_level=RemoveLevel.PARTIAL_UNSTAKE),
            make_record(500, "Vote0001", rank=1),
        ]

        with transaction_scope() as session:
            written = ValidatorScoreRepository(session).upsert_epoch(500, records)

        with transaction_scope() as session:
            stored = ValidatorScoreRepository(session).get_epoch(500)

        assert written == 2
        assert [r.vote_address for r in stored] == ["Vote0001", "Vote0002"]
        assert stored[1].remove_level == RemoveLevel.PARTIAL_UNSTAKE
        assert stored[0].pct == Decimal("0.015")

    def test_directed_stake_fields_stored(self, database):
        """Test gauge votes and collateral stake survive a write."""
        record = make_record(
            500,
            votes=42,
            vote_score=17,
            collateral_stake=Decimal("1234.5"),
            remove_level_reason="self stake override",
        )

        with transaction_scope() as session:
            ValidatorScoreRepository(session).upsert_epoch(500, [record])

        with transaction_scope() as session:
            stored = ValidatorScoreRepository(session).get_epoch(500)[0]

        assert stored.votes == 42
        assert stored.vote_score == 17
        assert stored.collateral_stake == Decimal("1234.5")
        assert stored.remove_level_reason == "self stake override"

    def test_upsert_replaces_epoch(self, database):
        """Test re-running an epoch replaces its rows."""
        with transaction_scope() as session:
            ValidatorScoreRepository(session).upsert_epoch(
                500, [make_record(500, "Vote0001"), make_record(500, "Vote0002", rank=2)]
            )

        with transaction_scope() as session:
            ValidatorScoreRepository(session).upsert_epoch(500, [make_record(500, "Vote0003", score=7)])

        with transaction_scope() as session:
            stored = ValidatorScoreRepository(session).get_epoch(500)

        assert [r.vote_address for r in stored] == ["Vote0003"]
        assert stored[0].score == 7

    def test_other_epochs_untouched(self, database):
        """Test upsert only replaces its own epoch."""
        with transaction_scope() as session:
            repository = ValidatorScoreRepository(session)
            repository.upsert_epoch(499, [make_record(499)])
            repository.upsert_epoch(500, [make_record(500)])

        assert get_table_row_counts()["validator_epoch_scores"] == 2

    def test_wrong_epoch_rejected(self, database):
        """Test a record from another epoch rejects the whole set."""
        with pytest.raises(PersistenceValidationError):
            with transaction_scope() as session:
                ValidatorScoreRepository(session).upsert_epoch(
                    500, [make_record(500, "Vote0001"), make_record(499, "Vote0002")]
                )

        assert get_table_row_counts()["validator_epoch_scores"] == 0

    def test_duplicate_vote_address_rejected(self, database):
        """Test a repeated vote address rejects the whole set."""
        with pytest.raises(DatabasePersistenceError):
            with transaction_scope() as session:
                ValidatorScoreRepository(session).upsert_epoch(
                    500, [make_record(500), make_record(500)]
                )

    def test_history_most_recent_first(self, database):
        """Test history ordering and limit."""
        with transaction_scope() as session:
            repository = ValidatorScoreRepository(session)
            for epoch in (497, 498, 499):
                repository.upsert_epoch(epoch, [make_record(epoch)])

        with transaction_scope() as session:
            repository = ValidatorScoreRepository(session)
            history = repository.get_history("Vote0001", 2)
            empty = repository.get_history("Vote0001", 0)

        assert [r.epoch for r in history] == [499, 498]
        assert empty == []

    def test_latest_epoch(self, database):
        """Test the most recent persisted epoch."""
        with transaction_scope() as session:
            assert ValidatorScoreRepository(session).latest_epoch() is None

        with transaction_scope() as session:
            ValidatorScoreRepository(session).upsert_epoch(512, [make_record(512)])

        with transaction_scope() as session:
            assert ValidatorScoreRepository(session).latest_epoch() == 512

    def test_history_feeds_aggregator(self, database):
        """Test the repository satisfies the history store contract."""
        with transaction_scope() as session:
            repository = ValidatorScoreRepository(session)
            repository.upsert_epoch(498, [make_record(498, score=60)])
            repository.upsert_epoch(499, [make_record(499, score=80)])

        with transaction_scope() as session:
            history = HistoryAggregator().load(
                ["Vote0001"], ValidatorScoreRepository(session), current_epoch=500
            )

        assert history["Vote0001"].epochs_observed == 2
        assert history["Vote0001"].score == Decimal("70")

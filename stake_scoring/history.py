"""
Stake Scoring Engine - History Aggregator.

============================================================
PURPOSE
============================================================
Maintains rolling per-validator averages across the last N
epochs for: score, average_position, credits, commission and
stake concentration.

Read at the start of each epoch's scoring pass. Written once
at the end, through the store's upsert_epoch().

============================================================
NEW VALIDATORS
============================================================
A validator absent from prior epochs gets averages that are
explicitly undefined (None, epochs_observed == 0). They are
never defaulted to zero, so ratio and position rules cannot
penalize a validator for having no past.

============================================================
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from .arithmetic import floor_places, to_decimal
from .config import HistoryConfig
from .types import HistoryAverages, ValidatorEpochRecord


logger = logging.getLogger(__name__)


class HistoryAggregator:
    """
    Computes HistoryAverages from persisted epoch records.

    The store is anything exposing
    get_history(vote_address, last_n_epochs) returning records
    most recent first, e.g. ValidatorScoreRepository.
    """

    def __init__(self, config: Optional[HistoryConfig] = None) -> None:
        self._config = config or HistoryConfig()

    @property
    def window(self) -> int:
        return self._config.history_epochs

    def aggregate(
        self,
        vote_address: str,
        records: Sequence[ValidatorEpochRecord],
        current_epoch: Optional[int] = None,
    ) -> HistoryAverages:
        """
        Average the most recent records for one validator.

        Args:
            vote_address: Validator vote address
            records: Prior records, most recent first
            current_epoch: Epoch being scored; its own rows are
                ignored so a re-run never reads itself

        Returns:
            HistoryAverages (undefined when no usable records)
        """
        usable: List[ValidatorEpochRecord] = [
            r for r in records
            if r.vote_address == vote_address
            and (current_epoch is None or r.epoch < current_epoch)
        ][: self.window]

        if not usable:
            return HistoryAverages.undefined(vote_address)

        count = Decimal(len(usable))

        def mean(values: Iterable[Decimal]) -> Decimal:
            return floor_places(sum(values, Decimal("0")) / count)

        return HistoryAverages(
            vote_address=vote_address,
            epochs_observed=len(usable),
            score=mean(to_decimal(r.score) for r in usable),
            average_position=mean(to_decimal(r.average_position) for r in usable),
            credits=mean(to_decimal(r.credits_observed) for r in usable),
            commission=mean(to_decimal(r.commission) for r in usable),
            stake_concentration=mean(to_decimal(r.stake_concentration) for r in usable),
        )

    def load(
        self,
        vote_addresses: Iterable[str],
        store,
        current_epoch: Optional[int] = None,
    ) -> Dict[str, HistoryAverages]:
        """
        Read history for every validator of the epoch.

        Args:
            vote_addresses: Validators being scored
            store: History store with get_history()
            current_epoch: Epoch being scored

        Returns:
            Dict of vote_address -> HistoryAverages
        """
        history: Dict[str, HistoryAverages] = {}
        new_validators = 0

        for vote_address in vote_addresses:
            # One extra row in case the current epoch is already stored
            records = store.get_history(vote_address, self.window + 1)
            averages = self.aggregate(vote_address, records, current_epoch)
            if not averages.is_defined:
                new_validators += 1
            history[vote_address] = averages

        logger.info(
            f"History loaded for {len(history)} validators "
            f"(window={self.window}, without history={new_validators})"
        )
        return history

"""
Stake Scoring Engine - Repository.

============================================================
PURPOSE
============================================================
Repository pattern implementation for validator epoch
records. This is the persistent store contract of the engine:

- get_history(vote_address, last_n_epochs): most recent first
- upsert_epoch(epoch, records): replace an epoch's rows

============================================================
TRANSACTIONS
============================================================
The repository works inside the session it is given and
never commits. Wrap calls in database.engine.transaction_scope()
so the epoch's record set is committed all-or-nothing:

    with transaction_scope() as session:
        ValidatorScoreRepository(session).upsert_epoch(epoch, records)

============================================================
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy import delete, desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.engine import DatabasePersistenceError, PersistenceValidationError

from .models import ValidatorEpochScore
from .types import ValidatorEpochRecord


logger = logging.getLogger(__name__)


class ValidatorScoreRepository:
    """
    Repository for validator epoch record persistence.

    ============================================================
    METHODS
    ============================================================
    - get_history: Prior records of one validator
    - upsert_epoch: Replace all rows of one epoch
    - get_epoch: All rows of one epoch, by rank
    - latest_epoch: Most recent persisted epoch

    ============================================================
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self._session = session

    # --------------------------------------------------------
    # READ OPERATIONS
    # --------------------------------------------------------

    def get_history(
        self,
        vote_address: str,
        last_n_epochs: int,
    ) -> List[ValidatorEpochRecord]:
        """
        Get the most recent records of one validator.

        Args:
            vote_address: Validator vote address
            last_n_epochs: Maximum number of records

        Returns:
            Records ordered most recent epoch first
        """
        if last_n_epochs <= 0:
            return []

        stmt = (
            select(ValidatorEpochScore)
            .where(ValidatorEpochScore.vote_address == vote_address)
            .order_by(desc(ValidatorEpochScore.epoch))
            .limit(last_n_epochs)
        )
        try:
            rows = self._session.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"History query failed for {vote_address}: {e}")
            raise DatabasePersistenceError(f"History query failed: {e}") from e
        return [row.to_record() for row in rows]

    def get_epoch(self, epoch: int) -> List[ValidatorEpochRecord]:
        """Get all records of one epoch ordered by rank."""
        stmt = (
            select(ValidatorEpochScore)
            .where(ValidatorEpochScore.epoch == epoch)
            .order_by(ValidatorEpochScore.rank, ValidatorEpochScore.vote_address)
        )
        try:
            rows = self._session.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Epoch query failed for {epoch}: {e}")
            raise DatabasePersistenceError(f"Epoch query failed: {e}") from e
        return [row.to_record() for row in rows]

    def latest_epoch(self) -> Optional[int]:
        """Get the most recent persisted epoch, or None."""
        try:
            return self._session.execute(select(func.max(ValidatorEpochScore.epoch))).scalar()
        except SQLAlchemyError as e:
            logger.error(f"Latest epoch query failed: {e}")
            raise DatabasePersistenceError(f"Latest epoch query failed: {e}") from e

    # --------------------------------------------------------
    # WRITE OPERATIONS
    # --------------------------------------------------------

    def upsert_epoch(
        self,
        epoch: int,
        records: Sequence[ValidatorEpochRecord],
    ) -> int:
        """
        Replace every row of an epoch with the given records.

        Args:
            epoch: Epoch to replace
            records: Complete record set of the epoch

        Returns:
            Number of rows written

        Raises:
            PersistenceValidationError: Records do not belong to
                the epoch or repeat a vote address
            DatabasePersistenceError: On database failure
        """
        self._validate(epoch, records)

        try:
            deleted = self._session.execute(
                delete(ValidatorEpochScore).where(ValidatorEpochScore.epoch == epoch)
            ).rowcount
            self._session.add_all([ValidatorEpochScore.from_record(r) for r in records])
            self._session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Upsert of epoch {epoch} failed, rolling back: {e}")
            self._session.rollback()
            raise DatabasePersistenceError(f"Upsert of epoch {epoch} failed: {e}") from e

        logger.info(
            f"Epoch {epoch} persisted: {len(records)} rows written, {deleted or 0} replaced"
        )
        return len(records)

    @staticmethod
    def _validate(epoch: int, records: Sequence[ValidatorEpochRecord]) -> None:
        seen = set()
        for record in records:
            if record.epoch != epoch:
                raise PersistenceValidationError(
                    f"Record {record.vote_address} belongs to epoch {record.epoch}, not {epoch}"
                )
            if record.vote_address in seen:
                raise PersistenceValidationError(
                    f"Duplicate vote_address {record.vote_address} in epoch {epoch}"
                )
            seen.add(record.vote_address)

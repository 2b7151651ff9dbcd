"""
Scoring Feed Source - External base score adapter.

Base scores are produced upstream by an independent scoring
model. This adapter only fetches and validates them.

Expected document:

    {"epoch": 512,
     "scores": [{"vote_address": "...", "score": 1200}, ...]}

A plain {"<vote>": score} mapping is accepted as well.
Validators absent from the document get base score 0.

Two optional documents direct stake outside the score:

    {"votes": [{"vote_address": "...", "votes": 42}, ...]}

    {"collateral": [{"vote_address": "...",
                     "deposited": "1200.5", "collateral": "1100"}]}

Both are skipped when their URL is not configured.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import aiohttp

from data_sources.base import BaseFeedSource
from data_sources.exceptions import NormalizationError
from data_sources.models import SourceHealth, SourceMetadata, SourceStatus
from stake_scoring.types import CollateralShare


logger = logging.getLogger(__name__)


class ScoringFeedSource(BaseFeedSource):
    """External scoring feed, one document per epoch."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        session: Optional[aiohttp.ClientSession] = None,
        votes_url: Optional[str] = None,
        collateral_url: Optional[str] = None,
    ) -> None:
        super().__init__(timeout, max_retries, session)
        self._url = url
        self._votes_url = votes_url
        self._collateral_url = collateral_url

    @property
    def name(self) -> str:
        """Unique identifier."""
        return "scoring_feed"

    def metadata(self) -> SourceMetadata:
        """Return provider metadata."""
        return SourceMetadata(
            name=self.name,
            display_name="External Scoring Feed",
            version="1.0.0",
            base_url=self._url,
            tags=["base-score"],
        )

    async def fetch_base_scores(self, epoch: int) -> dict[str, int]:
        """
        Fetch base scores for an epoch.

        Args:
            epoch: Epoch to fetch

        Returns:
            Mapping of vote address to non-negative integer score

        Raises:
            NormalizationError: Negative or non-integer score, or
                a document for a different epoch
            DataSourceUnavailableError: Feed unreachable
        """
        raw = await self._call(
            lambda: self._make_request("GET", self._url, params={"epoch": epoch}),
            f"base scores for epoch {epoch}",
        )
        scores = self.normalize(raw, epoch)
        logger.info(f"[{self.name}] Loaded {len(scores)} base scores for epoch {epoch}")
        return scores

    def normalize(self, raw: Any, epoch: int) -> dict[str, int]:
        """Normalize a scoring document."""
        pairs = self._document_pairs(raw, epoch, "scores", "score")
        return {
            vote_address: self._integer(vote_address, value, "base score", "score")
            for vote_address, value in pairs
        }

    # --------------------------------------------------------
    # DIRECTED STAKE DOCUMENTS
    # --------------------------------------------------------

    async def fetch_votes(self, epoch: int) -> dict[str, int]:
        """
        Fetch gauge votes for an epoch.

        Returns:
            Mapping of vote address to non-negative vote count
            (empty if not configured)
        """
        if not self._votes_url:
            return {}

        raw = await self._call(
            lambda: self._make_request("GET", self._votes_url, params={"epoch": epoch}),
            f"gauge votes for epoch {epoch}",
        )
        votes = self.normalize_votes(raw, epoch)
        logger.info(f"[{self.name}] Loaded votes for {len(votes)} validators, {sum(votes.values())} total")
        return votes

    def normalize_votes(self, raw: Any, epoch: int) -> dict[str, int]:
        """Normalize a gauge votes document."""
        votes: dict[str, int] = {}
        for vote_address, value in self._document_pairs(raw, epoch, "votes", "votes"):
            votes[vote_address] = votes.get(vote_address, 0) + self._integer(
                vote_address, value, "vote count", "votes"
            )
        return votes

    async def fetch_collateral(self, epoch: int) -> list[CollateralShare]:
        """Fetch collateral-backed deposits (empty if not configured)."""
        if not self._collateral_url:
            return []

        raw = await self._call(
            lambda: self._make_request("GET", self._collateral_url, params={"epoch": epoch}),
            f"collateral for epoch {epoch}",
        )
        shares = self.normalize_collateral(raw)
        logger.info(f"[{self.name}] Loaded {len(shares)} collateral entries")
        return shares

    def normalize_collateral(self, raw: Any) -> list[CollateralShare]:
        """Normalize a collateral document."""
        items = raw.get("collateral") if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise NormalizationError(
                "collateral document must contain a list",
                source_name=self.name,
                raw_data=raw,
                field_name="collateral",
            )

        shares = []
        for item in items:
            if not isinstance(item, dict) or not item.get("vote_address"):
                raise NormalizationError(
                    "collateral entry without vote_address",
                    source_name=self.name,
                    raw_data=item,
                    field_name="vote_address",
                )
            shares.append(CollateralShare(
                vote_address=item["vote_address"],
                deposited=self._amount(item, "deposited"),
                collateral=self._amount(item, "collateral"),
            ))
        return shares

    # --------------------------------------------------------
    # FIELD PARSING
    # --------------------------------------------------------

    def _document_pairs(
        self,
        raw: Any,
        epoch: int,
        list_key: str,
        value_key: str,
    ) -> list[tuple[str, Any]]:
        if not isinstance(raw, dict):
            raise NormalizationError(
                f"{list_key} document must be an object",
                source_name=self.name,
                raw_data=raw,
            )

        if list_key not in raw:
            return list(raw.items())

        document_epoch = raw.get("epoch")
        if document_epoch is not None and document_epoch != epoch:
            raise NormalizationError(
                f"{list_key} document is for epoch {document_epoch}, expected {epoch}",
                source_name=self.name,
                field_name="epoch",
            )
        return self._pairs(raw[list_key], list_key, value_key)

    def _pairs(self, items: Any, list_key: str, value_key: str) -> list[tuple[str, Any]]:
        if isinstance(items, dict):
            return list(items.items())
        if not isinstance(items, list):
            raise NormalizationError(
                f"{list_key} must be a list or an object",
                source_name=self.name,
                raw_data=items,
                field_name=list_key,
            )
        pairs = []
        for item in items:
            if not isinstance(item, dict) or not item.get("vote_address"):
                raise NormalizationError(
                    f"{value_key} entry without vote_address",
                    source_name=self.name,
                    raw_data=item,
                    field_name="vote_address",
                )
            pairs.append((item["vote_address"], item.get(value_key)))
        return pairs

    def _integer(self, vote_address: str, value: Any, label: str, field_name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            else:
                raise NormalizationError(
                    f"{label} for {vote_address} is not an integer",
                    source_name=self.name,
                    raw_data=value,
                    field_name=field_name,
                )
        if value < 0:
            raise NormalizationError(
                f"{label} for {vote_address} is negative ({value})",
                source_name=self.name,
                raw_data=value,
                field_name=field_name,
            )
        return value

    def _amount(self, item: dict[str, Any], field_name: str) -> Decimal:
        value = item.get(field_name)
        try:
            if value is None or isinstance(value, bool):
                raise ValueError(f"{field_name} missing")
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise NormalizationError(
                f"{field_name} for {item.get('vote_address')} is not numeric",
                source_name=self.name,
                raw_data=value,
                field_name=field_name,
                original_error=e,
            ) from e
        if amount < 0:
            raise NormalizationError(
                f"{field_name} for {item.get('vote_address')} is negative ({amount})",
                source_name=self.name,
                raw_data=value,
                field_name=field_name,
            )
        return amount

    async def health_check(self) -> SourceHealth:
        """Check the feed endpoint is reachable."""
        start_time = time.time()
        try:
            await self._make_request("GET", self._url)
            self._health.status = SourceStatus.HEALTHY
            logger.debug(f"[{self.name}] Health check OK")
        except Exception as e:
            self._health.status = SourceStatus.UNAVAILABLE
            self._health.last_error = str(e)
            self._health.last_error_time = datetime.now(timezone.utc)
            logger.warning(f"[{self.name}] Health check FAILED: {e}")

        self._health.last_check = datetime.now(timezone.utc)
        self._health.latency_ms = (time.time() - start_time) * 1000
        return self._health

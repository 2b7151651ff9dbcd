"""
Stake View Source - Off-chain validator enrichment adapter.

Fetches two optional JSON documents:
- validators document: names, APY, skip rate, data center
- pool document: stake the delegation pool currently holds

Expected shapes:

    {"validators": [{"vote_address": "...", "apy": 6.9,
                     "skip_rate": 2.1, "data_center_asn": 24940,
                     "data_center_location": "DE-Falkenstein", ...}]}

    {"total": "1250000.5", "validators": {"<vote>": "3100.25"}}

Missing optional fields are tolerated. Values that are present
but not numeric raise NormalizationError.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import aiohttp

from data_sources.base import BaseFeedSource
from data_sources.exceptions import ConfigurationError, NormalizationError
from data_sources.models import (
    PoolStake,
    SourceHealth,
    SourceMetadata,
    SourceStatus,
    StakeViewEntry,
)


logger = logging.getLogger(__name__)


class StakeViewSource(BaseFeedSource):
    """
    Stake view JSON feed.

    Either URL may be omitted; the matching fetch then
    returns an empty result without touching the network.
    """

    def __init__(
        self,
        validators_url: Optional[str] = None,
        pool_url: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout, max_retries, session)
        self._validators_url = validators_url
        self._pool_url = pool_url

    @property
    def name(self) -> str:
        """Unique identifier."""
        return "stake_view"

    def metadata(self) -> SourceMetadata:
        """Return provider metadata."""
        return SourceMetadata(
            name=self.name,
            display_name="Stake View",
            version="1.0.0",
            base_url=self._validators_url or "",
            tags=["apy", "data-center", "pool-stake"],
        )

    # --------------------------------------------------------
    # VALIDATORS DOCUMENT
    # --------------------------------------------------------

    async def fetch_validators(self, epoch: Optional[int] = None) -> dict[str, StakeViewEntry]:
        """
        Fetch enrichment entries keyed by vote address.

        Args:
            epoch: Epoch to request, passed as a query parameter

        Returns:
            Mapping of vote address to entry (empty if not configured)
        """
        if not self._validators_url:
            return {}

        params = {"epoch": epoch} if epoch is not None else None
        raw = await self._call(
            lambda: self._make_request("GET", self._validators_url, params=params),
            "validators document",
        )
        entries = self.normalize_validators(raw)
        logger.info(f"[{self.name}] Loaded {len(entries)} validator entries")
        return entries

    def normalize_validators(self, raw: Any) -> dict[str, StakeViewEntry]:
        """Normalize the validators document."""
        items = raw.get("validators") if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise NormalizationError(
                "validators document must contain a list",
                source_name=self.name,
                raw_data=raw,
                field_name="validators",
            )

        entries: dict[str, StakeViewEntry] = {}
        for item in items:
            vote_address = item.get("vote_address") if isinstance(item, dict) else None
            if not vote_address:
                logger.warning(f"[{self.name}] Skipping entry without vote_address: {str(item)[:200]}")
                continue

            max_commission = self._optional_decimal(item, "max_commission")
            entries[vote_address] = StakeViewEntry(
                vote_address=vote_address,
                name=item.get("name") or "",
                keybase_id=item.get("keybase_id") or "",
                url=item.get("url") or "",
                apy=self._optional_decimal(item, "apy"),
                skip_rate=self._optional_decimal(item, "skip_rate"),
                max_commission=int(max_commission) if max_commission is not None else None,
                data_center_asn=int(self._optional_decimal(item, "data_center_asn") or 0),
                data_center_location=item.get("data_center_location") or "",
            )
        return entries

    # --------------------------------------------------------
    # POOL DOCUMENT
    # --------------------------------------------------------

    async def fetch_pool_stake(self) -> Optional[PoolStake]:
        """
        Fetch the stake held by the pool.

        Returns:
            PoolStake, or None if no pool URL is configured
        """
        if not self._pool_url:
            return None

        raw = await self._call(
            lambda: self._make_request("GET", self._pool_url),
            "pool document",
        )
        pool = self.normalize_pool(raw)
        logger.info(
            f"[{self.name}] Pool holds {pool.total} SOL over {len(pool.by_validator)} validators"
        )
        return pool

    def normalize_pool(self, raw: Any) -> PoolStake:
        """Normalize the pool document."""
        if not isinstance(raw, dict):
            raise NormalizationError(
                "pool document must be an object",
                source_name=self.name,
                raw_data=raw,
            )

        by_validator = {
            vote: self._decimal(value, f"validators.{vote}")
            for vote, value in (raw.get("validators") or {}).items()
        }
        if raw.get("total") is not None:
            total = self._decimal(raw["total"], "total")
        else:
            total = sum(by_validator.values(), Decimal("0"))

        if total < 0 or any(v < 0 for v in by_validator.values()):
            raise NormalizationError(
                "pool stake must be non-negative",
                source_name=self.name,
                raw_data=raw,
            )
        return PoolStake(total=total, by_validator=by_validator)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _optional_decimal(self, item: dict[str, Any], key: str) -> Optional[Decimal]:
        value = item.get(key)
        if value is None or value == "":
            return None
        return self._decimal(value, key)

    def _decimal(self, value: Any, field_name: str) -> Decimal:
        if isinstance(value, bool):
            raise NormalizationError(
                f"{field_name} is not numeric",
                source_name=self.name,
                raw_data=value,
                field_name=field_name,
            )
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise NormalizationError(
                f"{field_name} is not numeric",
                source_name=self.name,
                raw_data=value,
                field_name=field_name,
                original_error=e,
            ) from e

    async def health_check(self) -> SourceHealth:
        """Check the configured document is reachable."""
        url = self._validators_url or self._pool_url
        if not url:
            raise ConfigurationError(
                "neither validators_url nor pool_url is configured",
                source_name=self.name,
                config_key="validators_url",
            )

        start_time = time.time()
        try:
            await self._make_request("GET", url)
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

"""
Solana Chain Data Source - JSON-RPC adapter.

Implements per-epoch validator telemetry from a cluster RPC node.
No authentication required for public endpoints.

Methods used:
- getEpochInfo - current epoch
- getVoteAccounts - commission, stake, epoch credits, delinquency
- getClusterNodes - software version per identity
- getHealth - health check

Off-chain enrichment (APY, data center, pool stake) is merged
from an optional StakeViewSource.
"""

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union

import aiohttp

from data_sources.base import BaseFeedSource
from data_sources.exceptions import ConfigurationError, NormalizationError, RpcError
from data_sources.models import (
    LAMPORTS_PER_SOL,
    ChainSnapshot,
    Cluster,
    PoolStake,
    SourceHealth,
    SourceMetadata,
    SourceStatus,
    StakeViewEntry,
    VoteAccount,
)
from data_sources.providers.stake_view import StakeViewSource
from stake_scoring.types import ValidatorTelemetry


logger = logging.getLogger(__name__)

# Stake share a group of validators needs to halt the network
SUPERMINORITY_THRESHOLD = Decimal(1) / Decimal(3)


class SolanaChainDataSource(BaseFeedSource):
    """
    Solana JSON-RPC chain data source.

    Rate limits:
    - Public endpoints throttle per IP; prefer a private --url
    """

    def __init__(
        self,
        cluster: Union[Cluster, str] = Cluster.MAINNET,
        rpc_url: Optional[str] = None,
        stake_view: Optional[StakeViewSource] = None,
        timeout: float = 180.0,
        max_retries: int = 3,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(timeout, max_retries, session)
        self._cluster = Cluster(cluster)
        self._rpc_url = rpc_url or self._cluster.default_rpc_url
        self._stake_view = stake_view
        self._request_ids = itertools.count(1)

    @property
    def name(self) -> str:
        """Unique identifier."""
        return f"solana_rpc_{self._cluster.value}"

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    def metadata(self) -> SourceMetadata:
        """Return provider metadata."""
        return SourceMetadata(
            name=self.name,
            display_name=f"Solana RPC ({self._cluster.value})",
            version="1.0.0",
            base_url=self._rpc_url,
            documentation_url="https://solana.com/docs/rpc",
            requires_auth=False,
            tags=["solana", "rpc", self._cluster.value],
        )

    # --------------------------------------------------------
    # JSON-RPC
    # --------------------------------------------------------

    async def _rpc(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Call one JSON-RPC method and return its result."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params or [],
        }

        async def operation() -> Any:
            response = await self._make_request("POST", self._rpc_url, json_body=payload)
            if not isinstance(response, dict):
                raise NormalizationError(
                    f"{method} returned a non-object response",
                    source_name=self.name,
                    raw_data=response,
                )
            if response.get("error"):
                error = response["error"]
                raise RpcError(
                    message=f"{method} failed: {error.get('message', error)}",
                    source_name=self.name,
                    rpc_method=method,
                    rpc_code=error.get("code"),
                    request_url=self._rpc_url,
                )
            return response.get("result")

        return await self._call(operation, method)

    # --------------------------------------------------------
    # EPOCH SNAPSHOT
    # --------------------------------------------------------

    async def get_current_epoch(self) -> int:
        """Get the cluster's current epoch."""
        info = await self._rpc("getEpochInfo", [{"commitment": "finalized"}])
        try:
            return int(info["epoch"])
        except (KeyError, TypeError, ValueError) as e:
            raise NormalizationError(
                "getEpochInfo returned no epoch",
                source_name=self.name,
                raw_data=info,
                field_name="epoch",
                original_error=e,
            ) from e

    async def fetch_epoch(self, epoch: Optional[int] = None) -> ChainSnapshot:
        """
        Fetch validator telemetry for an epoch.

        Args:
            epoch: Epoch to fetch, None for the current epoch

        Returns:
            ChainSnapshot with one telemetry record per identity

        Raises:
            ConfigurationError: Epoch is in the future
            DataSourceError: Any feed failure
        """
        current = await self.get_current_epoch()
        target = current if epoch is None else epoch
        if target > current:
            raise ConfigurationError(
                f"Epoch {target} is in the future (current epoch {current})",
                source_name=self.name,
                config_key="epoch",
            )

        vote_status, nodes, view, pool = await asyncio.gather(
            self._rpc("getVoteAccounts", [{"commitment": "finalized", "keepUnstakedDelinquents": True}]),
            self._rpc("getClusterNodes"),
            self._fetch_view(target),
            self._fetch_pool(),
        )

        accounts, total_active_stake = self.normalize_vote_accounts(vote_status, target)
        versions = self.normalize_versions(nodes)
        validators = self.build_telemetry(accounts, versions, view, pool)

        logger.info(
            f"[{self.name}] Epoch {target}: {len(validators)} validators, "
            f"{total_active_stake} SOL active, "
            f"{len(view)} enriched, pool document {'present' if pool else 'absent'}"
        )

        return ChainSnapshot(
            epoch=target,
            validators=validators,
            pool_stake=pool.total if pool else None,
            total_active_stake=total_active_stake,
            source_name=self.name,
        )

    async def _fetch_view(self, epoch: int) -> dict[str, StakeViewEntry]:
        if self._stake_view is None:
            return {}
        return await self._stake_view.fetch_validators(epoch)

    async def _fetch_pool(self) -> Optional[PoolStake]:
        if self._stake_view is None:
            return None
        return await self._stake_view.fetch_pool_stake()

    # --------------------------------------------------------
    # NORMALIZATION
    # --------------------------------------------------------

    def normalize_vote_accounts(
        self,
        raw: Any,
        epoch: int,
    ) -> tuple[list[VoteAccount], Decimal]:
        """
        Normalize getVoteAccounts output.

        A validator running several staked vote accounts is
        represented by the one that voted most recently. Total
        active stake counts every account.
        """
        if not isinstance(raw, dict):
            raise NormalizationError(
                "getVoteAccounts returned a non-object result",
                source_name=self.name,
                raw_data=raw,
            )

        latest: dict[str, VoteAccount] = {}
        total_active_stake = Decimal("0")

        for delinquent, items in ((False, raw.get("current") or []), (True, raw.get("delinquent") or [])):
            for item in items:
                try:
                    account = self._vote_account(item, epoch, delinquent)
                except (KeyError, TypeError, ValueError) as e:
                    raise NormalizationError(
                        f"Malformed vote account: {e}",
                        source_name=self.name,
                        raw_data=item,
                        original_error=e,
                    ) from e

                total_active_stake += account.active_stake
                existing = latest.get(account.identity_address)
                if existing is None or existing.last_vote < account.last_vote:
                    latest[account.identity_address] = account

        return list(latest.values()), total_active_stake

    @staticmethod
    def _vote_account(item: dict[str, Any], epoch: int, delinquent: bool) -> VoteAccount:
        epoch_credits = 0
        for entry_epoch, credits, prev_credits in item.get("epochCredits") or []:
            if entry_epoch == epoch:
                epoch_credits = max(int(credits) - int(prev_credits), 0)
                break

        return VoteAccount(
            vote_address=item["votePubkey"],
            identity_address=item["nodePubkey"],
            commission=int(item["commission"]),
            active_stake=Decimal(int(item["activatedStake"])) / LAMPORTS_PER_SOL,
            epoch_credits=epoch_credits,
            last_vote=int(item.get("lastVote") or 0),
            delinquent=delinquent,
        )

    def normalize_versions(self, raw: Any) -> dict[str, str]:
        """Map identity to reported software version."""
        if not isinstance(raw, list):
            raise NormalizationError(
                "getClusterNodes returned a non-list result",
                source_name=self.name,
                raw_data=raw,
            )
        return {
            node["pubkey"]: node.get("version") or "0.0.0"
            for node in raw
            if isinstance(node, dict) and node.get("pubkey")
        }

    def build_telemetry(
        self,
        accounts: list[VoteAccount],
        versions: dict[str, str],
        view: dict[str, StakeViewEntry],
        pool: Optional[PoolStake],
    ) -> list[ValidatorTelemetry]:
        """Merge vote accounts with versions, enrichment and pool stake."""
        network_stake = sum((a.active_stake for a in accounts), Decimal("0"))
        superminority = self.superminority(accounts)
        data_center_stake = self._data_center_stake(accounts, view)
        held = pool.by_validator if pool else {}

        telemetry = []
        for account in sorted(accounts, key=lambda a: a.vote_address):
            entry = view.get(account.vote_address) or StakeViewEntry(vote_address=account.vote_address)
            dc_key = self._data_center_key(entry)

            concentration = Decimal("0")
            if dc_key is not None and network_stake > 0:
                concentration = data_center_stake[dc_key] / network_stake

            telemetry.append(ValidatorTelemetry(
                vote_address=account.vote_address,
                identity_address=account.identity_address,
                name=entry.name,
                keybase_id=entry.keybase_id,
                url=entry.url,
                credits_observed=account.epoch_credits,
                commission=account.commission,
                max_commission=(
                    entry.max_commission if entry.max_commission is not None else account.commission
                ),
                delinquent=account.delinquent,
                version=versions.get(account.identity_address, "0.0.0"),
                skip_rate=entry.skip_rate,
                apy=entry.apy,
                data_center_asn=entry.data_center_asn,
                data_center_location=entry.data_center_location,
                stake_concentration=concentration,
                under_nakamoto=account.vote_address in superminority,
                active_stake=account.active_stake,
                marinade_staked=held.get(account.vote_address, Decimal("0")),
            ))
        return telemetry

    @staticmethod
    def superminority(accounts: list[VoteAccount]) -> set[str]:
        """
        Vote addresses of the smallest group of top-staked
        validators holding more than a third of the stake.
        """
        total = sum((a.active_stake for a in accounts), Decimal("0"))
        if total <= 0:
            return set()

        members: set[str] = set()
        accumulated = Decimal("0")
        for account in sorted(accounts, key=lambda a: (-a.active_stake, a.vote_address)):
            if accumulated > total * SUPERMINORITY_THRESHOLD:
                break
            members.add(account.vote_address)
            accumulated += account.active_stake
        return members

    @staticmethod
    def _data_center_key(entry: StakeViewEntry) -> Optional[str]:
        if entry.data_center_asn == 0 and not entry.data_center_location:
            return None
        return f"{entry.data_center_asn}-{entry.data_center_location}"

    def _data_center_stake(
        self,
        accounts: list[VoteAccount],
        view: dict[str, StakeViewEntry],
    ) -> dict[str, Decimal]:
        stake: dict[str, Decimal] = defaultdict(Decimal)
        for account in accounts:
            entry = view.get(account.vote_address)
            key = self._data_center_key(entry) if entry else None
            if key is not None:
                stake[key] += account.active_stake
        return stake

    async def health_check(self) -> SourceHealth:
        """Check RPC node health, and the stake view feed if attached."""
        start_time = time.time()
        try:
            payload = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": "getHealth"}
            response = await self._make_request("POST", self._rpc_url, json_body=payload)
            if response.get("result") != "ok":
                raise RpcError(
                    message=f"Node unhealthy: {response.get('error')}",
                    source_name=self.name,
                    rpc_method="getHealth",
                )
            self._health.status = SourceStatus.HEALTHY
            logger.debug(f"[{self.name}] Health check OK")
        except Exception as e:
            self._health.status = SourceStatus.UNAVAILABLE
            self._health.last_error = str(e)
            self._health.last_error_time = datetime.now(timezone.utc)
            logger.warning(f"[{self.name}] Health check FAILED: {e}")

        self._health.last_check = datetime.now(timezone.utc)
        self._health.latency_ms = (time.time() - start_time) * 1000

        if self._stake_view is not None and self._health.status == SourceStatus.HEALTHY:
            view_health = await self._stake_view.health_check()
            if view_health.status == SourceStatus.UNAVAILABLE:
                self._health.status = SourceStatus.UNAVAILABLE
                self._health.last_error = f"stake view: {view_health.last_error}"
                self._health.last_error_time = view_health.last_error_time
        return self._health

    async def close(self) -> None:
        """Close resources, including the stake view feed."""
        if self._stake_view is not None:
            await self._stake_view.close()
        await super().close()

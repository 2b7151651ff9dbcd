"""
Data Sources Package - Per-epoch feed layer.

Provides the async feeds the stake scoring engine consumes:
chain telemetry, off-chain enrichment and external base scores.

Features:
- Isolated, replaceable data providers
- Normalized output format across all sources
- Retry with exponential backoff on 5xx, 429 and timeouts
- Health monitoring with incident logging
- Fail-fast: exhausted retries raise DataSourceUnavailableError

Quick Start:
    from data_sources import (
        Cluster,
        ScoringFeedSource,
        SolanaChainDataSource,
        StakeViewSource,
    )

    async def fetch():
        view = StakeViewSource(validators_url="https://...", pool_url="https://...")
        async with SolanaChainDataSource(Cluster.MAINNET, stake_view=view) as chain:
            snapshot = await chain.fetch_epoch()
        async with ScoringFeedSource("https://...") as feed:
            scores = await feed.fetch_base_scores(snapshot.epoch)

Adding New Providers:
    1. Subclass BaseFeedSource
    2. Implement name, metadata() and health_check()
    3. Route remote calls through self._call()
"""

from data_sources.base import BaseFeedSource
from data_sources.exceptions import (
    ConfigurationError,
    DataSourceError,
    DataSourceUnavailableError,
    FetchError,
    NormalizationError,
    RateLimitError,
    RpcError,
)
from data_sources.models import (
    LAMPORTS_PER_SOL,
    ChainSnapshot,
    Cluster,
    PoolStake,
    SourceHealth,
    SourceIncident,
    SourceMetadata,
    SourceStatus,
    StakeViewEntry,
    VoteAccount,
)
from data_sources.providers import (
    ScoringFeedSource,
    SolanaChainDataSource,
    StakeViewSource,
)


__all__ = [
    # Base
    "BaseFeedSource",
    # Exceptions
    "ConfigurationError",
    "DataSourceError",
    "DataSourceUnavailableError",
    "FetchError",
    "NormalizationError",
    "RateLimitError",
    "RpcError",
    # Models
    "LAMPORTS_PER_SOL",
    "ChainSnapshot",
    "Cluster",
    "PoolStake",
    "SourceHealth",
    "SourceIncident",
    "SourceMetadata",
    "SourceStatus",
    "StakeViewEntry",
    "VoteAccount",
    # Providers
    "ScoringFeedSource",
    "SolanaChainDataSource",
    "StakeViewSource",
]

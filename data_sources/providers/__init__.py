"""
Providers package - Feed source implementations.
"""

from data_sources.providers.scoring_feed import ScoringFeedSource
from data_sources.providers.solana_rpc import SolanaChainDataSource
from data_sources.providers.stake_view import StakeViewSource


__all__ = [
    "ScoringFeedSource",
    "SolanaChainDataSource",
    "StakeViewSource",
]

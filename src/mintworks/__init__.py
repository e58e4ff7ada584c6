"""Mintworks - batch job queue and package assembly for Solana NFT collections."""

__version__ = "0.1.0"

from mintworks.core.config import MintworksConfig, config

__all__ = [
    "MintworksConfig",
    "config",
]

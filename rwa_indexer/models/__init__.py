"""
Database models for the RWA event indexer.

One table per indexed event collection plus the per-contract checkpoints.
"""

from .base import Base, BaseModel, TimestampMixin, Uint256
from .checkpoint import IndexerCheckpoint
from .events import (
    COLLECTIONS, EventRecordMixin, LiquidityKind, LiquidityRecord, NFTMintRecord,
    PriceRecord, SwapDirection, SwapRecord, TokenType, TransferRecord
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Uint256",
    "IndexerCheckpoint",
    "COLLECTIONS",
    "EventRecordMixin",
    "SwapDirection",
    "LiquidityKind",
    "TokenType",
    "SwapRecord",
    "LiquidityRecord",
    "TransferRecord",
    "NFTMintRecord",
    "PriceRecord",
]

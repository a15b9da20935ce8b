"""
Event models - one table per indexed collection.

Every row is addressed by (transaction_hash, log_index), the position of the
log on chain, so re-delivered logs collapse onto the row already stored.
"""

from enum import Enum
from typing import Dict, Optional, Type

from sqlalchemy import (
    BigInteger, Boolean, Enum as SQLEnum, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from .base import BaseModel, TimestampMixin, Uint256


class SwapDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class LiquidityKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


class TokenType(str, Enum):
    FUNGIBLE = "fungible"
    NFT = "nft"


def _enum_column(enum_cls: Type[Enum]) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [member.value for member in members],
    )


class EventRecordMixin(TimestampMixin):
    """Columns shared by every event collection."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    event_name: Mapped[str] = mapped_column(
        String(64),
        comment="ABI event name"
    )

    contract_address: Mapped[str] = mapped_column(
        String(42),
        comment="Emitting contract, lowercase"
    )

    transaction_hash: Mapped[str] = mapped_column(
        String(66),
        comment="Transaction hash"
    )

    log_index: Mapped[int] = mapped_column(
        Integer,
        comment="Log position within the block"
    )

    block_number: Mapped[int] = mapped_column(
        BigInteger,
        comment="Block number"
    )

    block_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        nullable=True,
        comment="Block hash at indexing time"
    )

    block_timestamp: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Block timestamp (unix seconds)"
    )

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint(
                "transaction_hash", "log_index",
                name=f"uq_{cls.__tablename__}_tx_log"
            ),
            Index(f"idx_{cls.__tablename__}_block", "block_number", "log_index"),
        ) + tuple(cls._extra_indexes())

    @classmethod
    def _extra_indexes(cls):
        return ()

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(event={self.event_name}, "
            f"tx={self.transaction_hash[:10]}..., log_index={self.log_index})>"
        )


class SwapRecord(BaseModel, EventRecordMixin):
    """TokensPurchased / TokensSold on the DEX."""

    __tablename__ = "swaps"

    trader: Mapped[str] = mapped_column(String(42))
    direction: Mapped[SwapDirection] = mapped_column(_enum_column(SwapDirection))
    eth_amount: Mapped[int] = mapped_column(Uint256)
    token_amount: Mapped[int] = mapped_column(Uint256)
    timestamp: Mapped[int] = mapped_column(BigInteger, comment="Timestamp emitted by the contract")

    @classmethod
    def _extra_indexes(cls):
        return (Index("idx_swaps_trader", "trader"),)


class LiquidityRecord(BaseModel, EventRecordMixin):
    """LiquidityAdded / LiquidityRemoved on the DEX."""

    __tablename__ = "liquidity"

    provider: Mapped[str] = mapped_column(String(42))
    kind: Mapped[LiquidityKind] = mapped_column(_enum_column(LiquidityKind))
    token_amount: Mapped[int] = mapped_column(Uint256)
    eth_amount: Mapped[int] = mapped_column(Uint256)
    liquidity_tokens: Mapped[int] = mapped_column(Uint256)
    timestamp: Mapped[int] = mapped_column(BigInteger)

    @classmethod
    def _extra_indexes(cls):
        return (Index("idx_liquidity_provider", "provider"),)


class TransferRecord(BaseModel, EventRecordMixin):
    """Fungible and NFT transfers, including mints and burns."""

    __tablename__ = "transfers"

    token_type: Mapped[TokenType] = mapped_column(_enum_column(TokenType))
    from_address: Mapped[str] = mapped_column(String(42))
    to_address: Mapped[str] = mapped_column(String(42))
    value: Mapped[int] = mapped_column(Uint256)
    token_id: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    minted: Mapped[bool] = mapped_column(Boolean, default=False)
    burned: Mapped[bool] = mapped_column(Boolean, default=False)

    @classmethod
    def _extra_indexes(cls):
        return (
            Index("idx_transfers_from", "from_address"),
            Index("idx_transfers_to", "to_address"),
        )


class NFTMintRecord(BaseModel, EventRecordMixin):
    """AssetMinted on the NFT contract."""

    __tablename__ = "nft_mints"

    token_id: Mapped[int] = mapped_column(Uint256)
    owner: Mapped[str] = mapped_column(String(42))
    name: Mapped[str] = mapped_column(Text)
    valuation: Mapped[int] = mapped_column(Uint256)
    timestamp: Mapped[int] = mapped_column(BigInteger)

    @classmethod
    def _extra_indexes(cls):
        return (
            Index("idx_nft_mints_owner", "owner"),
            Index("idx_nft_mints_token", "token_id"),
        )


class PriceRecord(BaseModel, EventRecordMixin):
    """Oracle PriceUpdated and NFT AssetValuationUpdated."""

    __tablename__ = "prices"

    token_address: Mapped[str] = mapped_column(String(42))
    token_id: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    old_price: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    new_price: Mapped[int] = mapped_column(Uint256)
    timestamp: Mapped[int] = mapped_column(BigInteger)

    @classmethod
    def _extra_indexes(cls):
        return (Index("idx_prices_token", "token_address", "token_id"),)


COLLECTIONS: Dict[str, Type[EventRecordMixin]] = {
    "swaps": SwapRecord,
    "transfers": TransferRecord,
    "nft_mints": NFTMintRecord,
    "prices": PriceRecord,
    "liquidity": LiquidityRecord,
}

"""
IndexerCheckpoint model - per-contract watermark of fully processed blocks.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow


class IndexerCheckpoint(BaseModel):
    """Last block fully processed for one monitored contract."""

    __tablename__ = "indexer_checkpoints"

    contract_name: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="Monitored contract identifier"
    )

    last_processed_block: Mapped[int] = mapped_column(
        BigInteger,
        comment="Highest block whose logs are durably stored"
    )

    last_block_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        nullable=True,
        comment="Hash of last_processed_block when it was recorded"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        comment="When the checkpoint last moved"
    )

    def __repr__(self) -> str:
        return f"<IndexerCheckpoint(contract={self.contract_name}, block={self.last_processed_block})>"

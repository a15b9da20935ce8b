"""
Declarative base, shared mixins and column types.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Uint256(TypeDecorator):
    """
    Unsigned on-chain integer stored as its exact decimal string.

    Values up to 2**256 - 1 have 78 digits, more than BIGINT or a float can hold.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: Optional[int], dialect) -> Optional[str]:
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError(f"Uint256 cannot store negative value {value}")
        return str(value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    """Declarative base for all tables."""


class BaseModel(Base):
    """Abstract model with a dict export."""

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        return {column.key: getattr(self, column.key) for column in self.__mapper__.column_attrs}


class TimestampMixin:
    """Row bookkeeping timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        comment="When the row was written"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        comment="When the row was last changed"
    )

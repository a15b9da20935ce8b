"""
Event repository - idempotent persistence of decoded events and the read side used by queries.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

import structlog
from sqlalchemy import and_, exists, func, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rwa_indexer.core.exceptions import DatabaseError
from rwa_indexer.models.events import COLLECTIONS, EventRecordMixin, SwapRecord
from rwa_indexer.services.event_decoder import DomainEvent


logger = structlog.get_logger(__name__)

# Rows per INSERT statement, below SQLite's bound-parameter limit
INSERT_CHUNK_SIZE = 500

ADDRESS_COLUMNS = {
    "contract_address", "trader", "provider", "from_address",
    "to_address", "owner", "token_address",
}

CONFLICT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass
class UpsertAck:
    """Result of one batch write. Duplicates are events already stored."""
    inserted: int = 0
    duplicates: int = 0
    by_collection: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.inserted + self.duplicates


@dataclass
class Page:
    """One page of a collection, newest first."""
    items: List[Dict[str, Any]]
    total: int
    limit: int
    skip: int

    @property
    def has_more(self) -> bool:
        return self.skip + self.limit < self.total


class EventRepository:
    """
    Storage for decoded events.

    Every event is addressed by (transaction_hash, log_index). Writing an
    event that is already stored is a no-op, so a window can be replayed
    any number of times after a crash or retry.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="event_repository")

    async def upsert(self, events: Sequence[DomainEvent]) -> UpsertAck:
        """
        Store a batch of events in one transaction.

        Either every event of the batch is stored (or was already) or none
        is and DatabaseError is raised.
        """
        ack = UpsertAck()
        if not events:
            return ack

        grouped: Dict[Type[EventRecordMixin], List[Dict[str, Any]]] = {}
        seen = set()
        for event in sorted(events, key=lambda e: e.sort_key):
            if event.idempotency_key in seen:
                ack.duplicates += 1
                continue
            seen.add(event.idempotency_key)
            grouped.setdefault(COLLECTIONS[event.collection], []).append(self._to_row(event))

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for model, rows in grouped.items():
                        inserted = await self._insert_new(session, model, rows)
                        ack.inserted += inserted
                        ack.duplicates += len(rows) - inserted
                        ack.by_collection[model.__tablename__] = inserted
        except SQLAlchemyError as e:
            self.logger.error("Batch write failed", events=len(events), error=str(e))
            raise DatabaseError(f"Failed to store {len(events)} events: {e}")

        if ack.duplicates:
            self.logger.debug("Skipped already stored events", duplicates=ack.duplicates)
        return ack

    async def _insert_new(
        self,
        session: AsyncSession,
        model: Type[EventRecordMixin],
        rows: List[Dict[str, Any]]
    ) -> int:
        """Insert rows whose key is not stored yet; returns how many were inserted."""
        dialect_insert = CONFLICT_INSERTS.get(session.bind.dialect.name)
        if dialect_insert is None:
            return await self._insert_checked(session, model, rows)

        inserted = 0
        for start in range(0, len(rows), INSERT_CHUNK_SIZE):
            chunk = rows[start:start + INSERT_CHUNK_SIZE]
            stmt = (
                dialect_insert(model)
                .values(chunk)
                .on_conflict_do_nothing(index_elements=["transaction_hash", "log_index"])
                .returning(model.id)
            )
            result = await session.execute(stmt)
            inserted += len(result.all())
        return inserted

    async def _insert_checked(
        self,
        session: AsyncSession,
        model: Type[EventRecordMixin],
        rows: List[Dict[str, Any]]
    ) -> int:
        inserted = 0
        for row in rows:
            already_stored = await session.scalar(
                select(exists().where(and_(
                    model.transaction_hash == row["transaction_hash"],
                    model.log_index == row["log_index"],
                )))
            )
            if not already_stored:
                await session.execute(insert(model).values(row))
                inserted += 1
        return inserted

    @staticmethod
    def _to_row(event: DomainEvent) -> Dict[str, Any]:
        return {f.name: getattr(event, f.name) for f in fields(event)}

    async def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Number of stored events in a collection."""
        model = self._model(collection)
        stmt = select(func.count()).select_from(model)
        conditions = self._conditions(model, filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        try:
            async with self.session_factory() as session:
                return await session.scalar(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to count {collection}: {e}")

    async def list_recent(
        self,
        collection: str,
        limit: int = 50,
        skip: int = 0,
        filters: Optional[Dict[str, Any]] = None
    ) -> Page:
        """Newest events first, by (block_number, log_index)."""
        model = self._model(collection)
        conditions = self._conditions(model, filters)

        stmt = select(model).order_by(model.block_number.desc(), model.log_index.desc())
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.offset(skip).limit(limit)

        try:
            async with self.session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list {collection}: {e}")

        total = await self.count(collection, filters)
        return Page(
            items=[record.to_dict() for record in records],
            total=total,
            limit=limit,
            skip=skip,
        )

    async def list_ordered(self, collection: str) -> List[Tuple[int, int]]:
        """(block_number, log_index) of every stored event, oldest first."""
        model = self._model(collection)
        stmt = select(model.block_number, model.log_index).order_by(
            model.block_number, model.log_index
        )
        try:
            async with self.session_factory() as session:
                return [tuple(row) for row in (await session.execute(stmt)).all()]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list {collection}: {e}")

    async def stats(self) -> Dict[str, Any]:
        """Per-collection counts and total swap volume in wei."""
        counts = {name: await self.count(name) for name in COLLECTIONS}

        # Amounts are stored as decimal strings, so the sum happens here
        total_volume = 0
        try:
            async with self.session_factory() as session:
                amounts = await session.stream_scalars(select(SwapRecord.eth_amount))
                async for amount in amounts:
                    total_volume += amount
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to compute swap volume: {e}")

        return {
            "total_swaps": counts["swaps"],
            "total_transfers": counts["transfers"],
            "total_nft_mints": counts["nft_mints"],
            "total_price_updates": counts["prices"],
            "total_liquidity_events": counts["liquidity"],
            "total_volume_eth": str(total_volume),
        }

    @staticmethod
    def _model(collection: str) -> Type[EventRecordMixin]:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}")

    @staticmethod
    def _conditions(model: Type[EventRecordMixin], filters: Optional[Dict[str, Any]]) -> list:
        conditions = []
        for column_name, value in (filters or {}).items():
            column = getattr(model, column_name, None)
            if column is None or column_name not in model.__table__.columns:
                raise ValueError(f"Cannot filter {model.__tablename__} on {column_name}")
            if column_name in ADDRESS_COLUMNS and isinstance(value, str):
                value = value.lower()
            conditions.append(column == value)
        return conditions

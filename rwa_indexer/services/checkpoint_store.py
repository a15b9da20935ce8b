"""
Checkpoint store - durable per-contract high-water mark of processed blocks.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rwa_indexer.core.exceptions import CheckpointMonotonicityError, DatabaseError
from rwa_indexer.models.base import utcnow
from rwa_indexer.models.checkpoint import IndexerCheckpoint


logger = structlog.get_logger(__name__)


@dataclass
class Checkpoint:
    """Snapshot of a stored checkpoint."""
    contract_name: str
    last_processed_block: int
    last_block_hash: Optional[str]
    updated_at: Optional[datetime]


class CheckpointStore:
    """
    Per-contract checkpoints, one row each.

    `advance` is only called after the events of the window are committed,
    so a crash between the two re-processes the window instead of skipping it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_start: Callable[[str], int]
    ):
        """
        Args:
            session_factory: Session maker bound to the indexer database
            default_start: Returns the checkpoint of a contract that has none stored
        """
        self.session_factory = session_factory
        self.default_start = default_start
        self.logger = logger.bind(service="checkpoint_store")

    async def get(self, contract_name: str) -> int:
        """Last fully processed block of a contract."""
        checkpoint = await self.get_checkpoint(contract_name)
        return checkpoint.last_processed_block

    async def get_checkpoint(self, contract_name: str) -> Checkpoint:
        try:
            async with self.session_factory() as session:
                row = await session.get(IndexerCheckpoint, contract_name)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read checkpoint for {contract_name}: {e}")

        if row is None:
            return Checkpoint(
                contract_name=contract_name,
                last_processed_block=self.default_start(contract_name),
                last_block_hash=None,
                updated_at=None,
            )
        return Checkpoint(
            contract_name=row.contract_name,
            last_processed_block=row.last_processed_block,
            last_block_hash=row.last_block_hash,
            updated_at=row.updated_at,
        )

    async def list_checkpoints(self) -> List[Checkpoint]:
        """All stored checkpoints, by contract name."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(IndexerCheckpoint).order_by(IndexerCheckpoint.contract_name)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list checkpoints: {e}")

        return [
            Checkpoint(
                contract_name=row.contract_name,
                last_processed_block=row.last_processed_block,
                last_block_hash=row.last_block_hash,
                updated_at=row.updated_at,
            )
            for row in rows
        ]

    async def advance(
        self,
        contract_name: str,
        block: int,
        block_hash: Optional[str] = None,
        force: bool = False
    ) -> Checkpoint:
        """
        Move a contract's checkpoint to `block`.

        Advancing to the current value is a no-op apart from refreshing the
        block hash. Moving backwards requires `force`.

        Raises:
            CheckpointMonotonicityError: If `block` is below the stored value and not forced
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(IndexerCheckpoint, contract_name, with_for_update=True)

                    if row is None:
                        current = self.default_start(contract_name)
                        if block < current and not force:
                            raise CheckpointMonotonicityError(contract_name, current, block)
                        row = IndexerCheckpoint(
                            contract_name=contract_name,
                            last_processed_block=block,
                            last_block_hash=block_hash,
                            updated_at=utcnow(),
                        )
                        session.add(row)
                    else:
                        if block < row.last_processed_block and not force:
                            raise CheckpointMonotonicityError(
                                contract_name, row.last_processed_block, block
                            )
                        row.last_processed_block = block
                        row.last_block_hash = block_hash
                        row.updated_at = utcnow()

                checkpoint = Checkpoint(
                    contract_name=contract_name,
                    last_processed_block=row.last_processed_block,
                    last_block_hash=row.last_block_hash,
                    updated_at=row.updated_at,
                )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to advance checkpoint for {contract_name}: {e}")

        if force:
            self.logger.warning("Checkpoint forced", contract=contract_name, block=block)
        else:
            self.logger.debug("Checkpoint advanced", contract=contract_name, block=block)
        return checkpoint

    async def snapshot(self, contract_names: List[str]) -> Dict[str, int]:
        """Current checkpoint of each contract, stored or default."""
        return {name: await self.get(name) for name in contract_names}

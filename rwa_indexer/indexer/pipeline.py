"""
Per-contract processing pipeline: fetch logs, decode, persist, advance checkpoint.
Shared by the backfill engine and the live subscriber.
"""

from dataclasses import dataclass
from typing import Dict, List

import structlog

from rwa_indexer.core.config import ContractName
from rwa_indexer.core.exceptions import IndexerError, ReorgDetectedError
from rwa_indexer.models.base import utcnow
from rwa_indexer.services.chain_client import ChainClient, RawLog
from rwa_indexer.services.checkpoint_store import CheckpointStore
from rwa_indexer.services.event_decoder import EventDecoder
from rwa_indexer.services.event_repository import EventRepository

from .core.types import ProcessingStats


logger = structlog.get_logger(__name__)


@dataclass
class WindowResult:
    """Outcome of one processed block range."""
    from_block: int
    to_block: int
    logs: int = 0
    events: int = 0
    inserted: int = 0
    duplicates: int = 0
    unknown: int = 0
    decode_errors: int = 0


class ContractPipeline:
    """
    Indexing pipeline of one monitored contract.

    A window is handled as fetch -> decode -> persist -> advance, in that
    order. The checkpoint only moves after the events are committed, so a
    crash in between replays the window and the idempotent write absorbs it.
    """

    def __init__(
        self,
        contract: ContractName,
        address: str,
        chain_client: ChainClient,
        decoder: EventDecoder,
        repository: EventRepository,
        checkpoints: CheckpointStore,
        confirmations: int = 0
    ):
        self.contract = contract
        self.address = address.lower()
        self.chain_client = chain_client
        self.decoder = decoder
        self.repository = repository
        self.checkpoints = checkpoints
        self.confirmations = confirmations
        self.topics = decoder.topics_for(contract)
        self.stats = ProcessingStats(start_time=utcnow())
        self.logger = logger.bind(service="pipeline", contract=contract.value)

    @property
    def name(self) -> str:
        return self.contract.value

    async def checkpoint(self) -> int:
        return await self.checkpoints.get(self.name)

    async def safe_head(self) -> int:
        """Highest block considered final enough to index."""
        head = await self.chain_client.current_height()
        return head - self.confirmations

    async def verify_checkpoint(self) -> None:
        """
        Check that the checkpoint block is still canonical.

        Raises:
            ReorgDetectedError: If the stored hash differs from the chain's
        """
        stored = await self.checkpoints.get_checkpoint(self.name)
        if stored.last_block_hash is None or stored.last_processed_block < 0:
            return

        canonical = await self.chain_client.get_block_hash(stored.last_processed_block)
        if canonical != stored.last_block_hash:
            self.logger.critical(
                "Checkpoint block is no longer canonical",
                block=stored.last_processed_block,
                stored_hash=stored.last_block_hash,
                canonical_hash=canonical
            )
            raise ReorgDetectedError(
                self.name, stored.last_processed_block, stored.last_block_hash, canonical
            )

    async def process_range(self, from_block: int, to_block: int) -> WindowResult:
        """
        Index the inclusive range and advance the checkpoint to `to_block`.

        Raises:
            RangeTooLargeError: If the node refuses the range; nothing is written
            ReorgDetectedError: If the chain changed under the checkpoint or the window
        """
        if from_block > to_block:
            raise IndexerError(
                f"Empty range {from_block}-{to_block}",
                {"contract": self.name, "from_block": from_block, "to_block": to_block}
            )

        await self.verify_checkpoint()

        # Hash first: a reorg after this point leaves a stale hash that the next window detects
        end_hash = await self.chain_client.get_block_hash(to_block)
        logs = await self.chain_client.get_logs(self.address, self.topics, from_block, to_block)
        logs = [log for log in logs if not log.removed]
        self._check_window_hash(logs, to_block, end_hash)

        logs = await self._attach_timestamps(logs)
        batch = self.decoder.decode_batch(logs)
        ack = await self.repository.upsert(batch.events)
        await self.checkpoints.advance(self.name, to_block, end_hash)

        result = WindowResult(
            from_block=from_block,
            to_block=to_block,
            logs=len(logs),
            events=len(batch.events),
            inserted=ack.inserted,
            duplicates=ack.duplicates,
            unknown=batch.unknown,
            decode_errors=batch.errors,
        )
        self._record(result)

        if result.logs:
            self.logger.info(
                "Window indexed",
                from_block=from_block,
                to_block=to_block,
                logs=result.logs,
                inserted=result.inserted,
                duplicates=result.duplicates
            )
        return result

    def _check_window_hash(self, logs: List[RawLog], to_block: int, end_hash: str) -> None:
        for log in logs:
            if log.block_number == to_block and log.block_hash and log.block_hash != end_hash:
                raise ReorgDetectedError(self.name, to_block, end_hash, log.block_hash)

    async def _attach_timestamps(self, logs: List[RawLog]) -> List[RawLog]:
        """Fill block timestamps the node did not include, one lookup per block."""
        timestamps: Dict[int, int] = {}
        filled = []
        for log in logs:
            if log.block_timestamp is None:
                if log.block_number not in timestamps:
                    timestamps[log.block_number] = await self.chain_client.get_block_timestamp(
                        log.block_number
                    )
                log = log.with_timestamp(timestamps[log.block_number])
            filled.append(log)
        return filled

    def _record(self, result: WindowResult) -> None:
        self.stats.windows_processed += 1
        self.stats.logs_fetched += result.logs
        self.stats.events_stored += result.inserted
        self.stats.duplicates_skipped += result.duplicates
        self.stats.unknown_events += result.unknown
        self.stats.decode_errors += result.decode_errors
        self.stats.last_processed_block = result.to_block
        self.stats.last_progress_at = utcnow()

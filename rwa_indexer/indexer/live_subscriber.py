"""
Live subscriber - follows the chain head once a contract has caught up.
"""

import asyncio
from typing import Optional

import structlog

from rwa_indexer.core.exceptions import ChainRPCError, RangeTooLargeError
from rwa_indexer.models.base import utcnow

from .backfill import BackfillEngine
from .pipeline import ContractPipeline


logger = structlog.get_logger(__name__)


class LiveSubscriber:
    """
    Polls for new heads and indexes the blocks since the checkpoint.

    Small gaps go straight through the pipeline. Gaps wider than
    `gap_threshold` (a long suspension, a stalled node) and ranges the node
    refuses are handed to the backfill engine.
    """

    def __init__(
        self,
        pipeline: ContractPipeline,
        backfill: BackfillEngine,
        poll_interval: float,
        gap_threshold: int
    ):
        self.pipeline = pipeline
        self.backfill = backfill
        self.poll_interval = poll_interval
        self.gap_threshold = gap_threshold
        self.logger = logger.bind(service="live_subscriber", contract=pipeline.name)

        self.connected = False
        self.last_head: Optional[int] = None
        self.last_poll_at = None
        self.handoffs = 0
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()
        self.backfill.stop()

    def reset(self) -> None:
        self._stop.clear()
        self.backfill.reset()

    async def run(self) -> None:
        """Follow the head until stopped."""
        self.logger.info("Live indexing started", poll_interval=self.poll_interval)
        try:
            async for head in self.pipeline.chain_client.subscribe_new_heads(self.poll_interval):
                if self._stop.is_set():
                    break
                await self.on_new_head(head)
        except ChainRPCError:
            self.connected = False
            raise
        finally:
            self.logger.info("Live indexing stopped", last_head=self.last_head)

    async def on_new_head(self, head: int) -> int:
        """
        Index everything up to `head` (less confirmations).

        Returns:
            Number of blocks covered
        """
        self.connected = True
        self.last_head = head
        self.last_poll_at = utcnow()

        safe_head = head - self.pipeline.confirmations
        checkpoint = await self.pipeline.checkpoint()
        if safe_head <= checkpoint:
            return 0

        gap = safe_head - checkpoint
        if gap > self.gap_threshold:
            self.logger.warning(
                "Gap too large for live indexing, handing off to backfill",
                checkpoint=checkpoint,
                head=safe_head,
                gap=gap
            )
            await self._hand_off(safe_head)
            return gap

        try:
            await self.pipeline.process_range(checkpoint + 1, safe_head)
        except RangeTooLargeError:
            self.logger.warning("Live range refused, handing off to backfill", gap=gap)
            await self._hand_off(safe_head)
        return gap

    async def _hand_off(self, target: int) -> None:
        self.handoffs += 1
        await self.backfill.run(target=target)

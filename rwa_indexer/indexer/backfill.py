"""
Backfill engine - catches one contract up from its checkpoint to the chain head.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import structlog

from rwa_indexer.core.exceptions import IndexerError, RangeTooLargeError

from .pipeline import ContractPipeline


logger = structlog.get_logger(__name__)


@dataclass
class BackfillResult:
    """Summary of one backfill run."""
    contract: str
    start_block: int
    target_block: int
    windows: int = 0
    inserted: int = 0
    duplicates: int = 0
    shrinks: int = 0
    final_window_size: int = 0
    completed: bool = False
    ranges: List[Tuple[int, int]] = field(default_factory=list)


class BackfillEngine:
    """
    Walks [checkpoint + 1, target] in fixed-size windows.

    When the node rejects a window as too large, the width is halved and the
    same start block is retried. The reduced width is kept for the rest of
    the engine's life; it is never grown back.
    """

    def __init__(
        self,
        pipeline: ContractPipeline,
        window_size: int,
        min_window_size: int = 1
    ):
        if window_size < 1 or min_window_size < 1:
            raise ValueError("Window sizes must be at least 1 block")

        self.pipeline = pipeline
        self.window_size = window_size
        self.min_window_size = min(min_window_size, window_size)
        self.logger = logger.bind(service="backfill", contract=pipeline.name)
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Finish the current window, then return."""
        self._stop.set()

    def reset(self) -> None:
        """Allow a stopped engine to run again."""
        self._stop.clear()

    async def run(self, target: Optional[int] = None) -> BackfillResult:
        """
        Backfill up to `target`, or to the current safe head.

        Raises:
            IndexerError: If even the minimum window is refused
        """
        if target is None:
            target = await self.pipeline.safe_head()

        start = await self.pipeline.checkpoint() + 1
        result = BackfillResult(
            contract=self.pipeline.name,
            start_block=start,
            target_block=target,
            final_window_size=self.window_size,
        )

        if start > target:
            result.completed = True
            return result

        self.logger.info(
            "Starting backfill",
            from_block=start,
            to_block=target,
            window_size=self.window_size
        )

        cursor = start
        while cursor <= target:
            if self._stop.is_set():
                self.logger.info("Backfill stopped", next_block=cursor)
                break

            end = min(cursor + self.window_size - 1, target)
            try:
                window = await self.pipeline.process_range(cursor, end)
            except RangeTooLargeError as e:
                self._shrink(end - cursor + 1, e)
                result.shrinks += 1
                continue

            result.windows += 1
            result.inserted += window.inserted
            result.duplicates += window.duplicates
            result.ranges.append((cursor, end))
            cursor = end + 1
        else:
            result.completed = True

        result.final_window_size = self.window_size
        self.logger.info(
            "Backfill finished" if result.completed else "Backfill interrupted",
            windows=result.windows,
            inserted=result.inserted,
            duplicates=result.duplicates,
            window_size=self.window_size
        )
        return result

    def _shrink(self, attempted: int, error: RangeTooLargeError) -> None:
        if attempted <= self.min_window_size:
            raise IndexerError(
                f"Node refused a {attempted}-block window for {self.pipeline.name}",
                {
                    "contract": self.pipeline.name,
                    "from_block": error.from_block,
                    "to_block": error.to_block,
                    "reason": error.details.get("reason"),
                }
            )

        self.window_size = max(self.min_window_size, attempted // 2)
        self.logger.warning(
            "Range too large, shrinking window",
            from_block=error.from_block,
            to_block=error.to_block,
            window_size=self.window_size
        )

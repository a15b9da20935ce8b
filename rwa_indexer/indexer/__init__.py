"""
Event indexing for the monitored contracts.

Layout:
- rwa_indexer.indexer.pipeline - fetch, decode, persist, advance for one contract
- rwa_indexer.indexer.backfill - windowed catch-up from the checkpoint
- rwa_indexer.indexer.live_subscriber - head following after catch-up
- rwa_indexer.indexer.core - supervisor and shared types
"""

from .core import EventIndexer, IndexerStatus, ProcessingStats
from .backfill import BackfillEngine, BackfillResult
from .live_subscriber import LiveSubscriber
from .pipeline import ContractPipeline, WindowResult

__all__ = [
    "EventIndexer",
    "IndexerStatus",
    "ProcessingStats",
    "BackfillEngine",
    "BackfillResult",
    "LiveSubscriber",
    "ContractPipeline",
    "WindowResult",
]

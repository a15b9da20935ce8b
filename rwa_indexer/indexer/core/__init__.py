"""
Core indexer components.
"""

from .types import IndexerStatus, ProcessingStats
from .event_indexer import EventIndexer

__all__ = [
    "IndexerStatus",
    "ProcessingStats",
    "EventIndexer",
]

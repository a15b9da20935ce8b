"""
Core types for event indexing.
"""

from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class IndexerStatus(Enum):
    """Status of the event indexer or of one contract pipeline."""
    STOPPED = "stopped"
    STARTING = "starting"
    BACKFILLING = "backfilling"
    LIVE = "live"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class ProcessingStats:
    """Statistics for one contract pipeline."""
    windows_processed: int = 0
    logs_fetched: int = 0
    events_stored: int = 0
    duplicates_skipped: int = 0
    unknown_events: int = 0
    decode_errors: int = 0
    errors: int = 0
    restarts: int = 0
    last_processed_block: Optional[int] = None
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None

"""
Custom exception classes for the indexer.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class IndexerException(Exception):
    """Base exception class for the RWA event indexer."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(IndexerException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(IndexerException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ChainRPCError(IndexerException):
    """Raised when a chain RPC call fails after exhausting its retries."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CHAIN_RPC_ERROR", details)


class RangeTooLargeError(IndexerException):
    """Raised when the node refuses a getLogs block range. The caller shrinks the window."""

    def __init__(self, from_block: int, to_block: int, reason: str = ""):
        super().__init__(
            f"Block range {from_block}-{to_block} too large: {reason}",
            "RANGE_TOO_LARGE",
            {"from_block": from_block, "to_block": to_block, "reason": reason}
        )
        self.from_block = from_block
        self.to_block = to_block


class IndexerError(IndexerException):
    """Raised when there's an event indexer error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INDEXER_ERROR", details)


class DecodeError(IndexerException):
    """Raised when a raw log cannot be decoded."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "DECODE_ERROR"
    ):
        super().__init__(message, code, details)


class UnknownEventError(DecodeError):
    """Raised when a log's signature is not in the event table."""

    def __init__(self, address: str, topic0: Optional[str]):
        super().__init__(
            f"Unknown event {topic0} from {address}",
            {"address": address, "topic0": topic0},
            code="UNKNOWN_EVENT"
        )


class CheckpointMonotonicityError(IndexerException):
    """Raised when a checkpoint would move backwards without being forced."""

    def __init__(self, contract_name: str, current: int, requested: int):
        super().__init__(
            f"Checkpoint for {contract_name} cannot move from {current} back to {requested}",
            "CHECKPOINT_MONOTONICITY",
            {"contract_name": contract_name, "current": current, "requested": requested}
        )


class ReorgDetectedError(IndexerException):
    """Raised when the stored checkpoint block is no longer canonical."""

    def __init__(self, contract_name: str, block_number: int, stored_hash: str, canonical_hash: str):
        super().__init__(
            f"Chain reorganization detected for {contract_name} at block {block_number}",
            "REORG_DETECTED",
            {
                "contract_name": contract_name,
                "block_number": block_number,
                "stored_hash": stored_hash,
                "canonical_hash": canonical_hash,
            }
        )


# Failures that need an operator before the pipeline may run again
FATAL_PIPELINE_ERRORS = (CheckpointMonotonicityError, ReorgDetectedError, ConfigurationError)

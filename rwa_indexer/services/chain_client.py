"""
Chain RPC client service for interacting with an EVM node.
Provides block height, log queries and polling subscriptions over JSON-RPC.
"""

import asyncio
import random
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import structlog
from aiohttp import ClientTimeout
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from rwa_indexer.core.config import ChainConfig
from rwa_indexer.core.exceptions import ChainRPCError, RangeTooLargeError


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Provider messages that mean "ask for a smaller block range". Code -32005 alone
# is also sent for rate limiting, so it only counts together with one of these.
RANGE_TOO_LARGE_MARKERS = (
    "range is too large",
    "block range",
    "query returned more than",
    "exceeds max results",
    "response size exceeded",
)


@dataclass(frozen=True)
class RawLog:
    """Log entry as returned by eth_getLogs, with hex fields normalized to lowercase strings."""
    address: str
    topics: Sequence[str]
    data: str
    block_number: int
    block_hash: Optional[str]
    transaction_hash: str
    log_index: int
    block_timestamp: Optional[int] = None
    removed: bool = False

    @property
    def position(self):
        return (self.block_number, self.log_index)

    def with_timestamp(self, timestamp: Optional[int]) -> "RawLog":
        return replace(self, block_timestamp=timestamp)

    @classmethod
    def from_rpc(cls, entry: Mapping[str, Any]) -> "RawLog":
        """Build from a web3 log entry or a raw JSON-RPC log object."""
        block_hash = entry.get("blockHash")
        block_timestamp = entry.get("blockTimestamp")
        return cls(
            address=_to_hex(entry["address"]),
            topics=tuple(_to_hex(topic) for topic in entry.get("topics", [])),
            data=_to_hex(entry.get("data") or "0x"),
            block_number=_to_int(entry["blockNumber"]),
            block_hash=_to_hex(block_hash) if block_hash else None,
            transaction_hash=_to_hex(entry["transactionHash"]),
            log_index=_to_int(entry["logIndex"]),
            block_timestamp=_to_int(block_timestamp) if block_timestamp is not None else None,
            removed=bool(entry.get("removed", False)),
        )


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value).lower()
    value = str(value)
    if not value.startswith(("0x", "0X")):
        value = "0x" + value
    return value.lower()


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    return int(value)


def is_range_too_large(error: Exception) -> bool:
    """Whether a provider error asks for a narrower getLogs range."""
    text = str(error).lower()
    return any(marker in text for marker in RANGE_TOO_LARGE_MARKERS)


class ChainClient:
    """
    Async JSON-RPC client for the indexed chain.

    Every call runs under a timeout and is retried with exponential backoff
    and full jitter. Range-too-large replies are not retried; they are raised
    as RangeTooLargeError so the caller can shrink its window.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        web3: Optional[AsyncWeb3] = None
    ):
        self.rpc_config = ChainConfig.get_rpc_config()
        self.endpoint = endpoint or self.rpc_config["endpoint"]
        self.timeout = timeout if timeout is not None else self.rpc_config["timeout"]
        self.max_retries = max_retries if max_retries is not None else self.rpc_config["max_retries"]
        self.backoff_base = backoff_base if backoff_base is not None else self.rpc_config["backoff_base"]
        self.backoff_max = backoff_max if backoff_max is not None else self.rpc_config["backoff_max"]

        self.w3 = web3 or AsyncWeb3(
            AsyncHTTPProvider(self.endpoint, request_kwargs={"timeout": ClientTimeout(total=self.timeout)})
        )
        self.logger = logger.bind(service="chain_client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the provider session."""
        await self.w3.provider.disconnect()

    async def is_connected(self) -> bool:
        """Check if the RPC endpoint answers."""
        try:
            return await asyncio.wait_for(self.w3.is_connected(), timeout=self.timeout)
        except (asyncio.TimeoutError, OSError) as e:
            self.logger.error("Health check failed", error=str(e))
            return False

    async def current_height(self) -> int:
        """Get the latest block number."""
        return await self._call_with_retry("eth_blockNumber", lambda: self.w3.eth.block_number)

    async def get_logs(
        self,
        address: str,
        topics: List[str],
        from_block: int,
        to_block: int
    ) -> List[RawLog]:
        """
        Get logs of one contract for any of the given topic0 values, inclusive range.

        Returns:
            Logs ordered by (block_number, log_index)

        Raises:
            RangeTooLargeError: If the node refuses the range
            ChainRPCError: If retries are exhausted
        """
        if from_block > to_block:
            return []

        params = {
            "address": Web3.to_checksum_address(address),
            "topics": [list(topics)] if topics else [],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        entries = await self._call_with_retry(
            "eth_getLogs",
            lambda: self.w3.eth.get_logs(params),
            range_bounds=(from_block, to_block)
        )

        logs = [RawLog.from_rpc(entry) for entry in entries]
        logs.sort(key=lambda log: log.position)
        return logs

    async def get_block(self, block_number: int) -> Dict[str, Any]:
        """Get a block header by number."""
        block = await self._call_with_retry(
            "eth_getBlockByNumber",
            lambda: self.w3.eth.get_block(block_number)
        )
        if block is None:
            raise ChainRPCError(f"Block {block_number} not found", {"block_number": block_number})
        return block

    async def get_block_hash(self, block_number: int) -> str:
        block = await self.get_block(block_number)
        return _to_hex(block["hash"])

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.get_block(block_number)
        return int(block["timestamp"])

    async def subscribe_new_heads(self, poll_interval: float) -> AsyncIterator[int]:
        """
        Yield each new chain head as it is observed.

        Polling based, so several blocks may be skipped between two yields;
        consumers treat the value as "head is now at least this".
        """
        last_seen: Optional[int] = None
        while True:
            head = await self.current_height()
            if last_seen is None or head > last_seen:
                last_seen = head
                yield head
            await asyncio.sleep(poll_interval)

    async def subscribe_logs(
        self,
        address: str,
        topics: List[str],
        from_block: int,
        poll_interval: float
    ) -> AsyncIterator[RawLog]:
        """Yield logs of one contract from `from_block` onwards, in emission order."""
        next_block = from_block
        async for head in self.subscribe_new_heads(poll_interval):
            if head < next_block:
                continue
            for log in await self.get_logs(address, topics, next_block, head):
                yield log
            next_block = head + 1

    async def _call_with_retry(
        self,
        method: str,
        call: Callable[[], Awaitable[T]],
        range_bounds: Optional[tuple] = None
    ) -> T:
        """
        Run an RPC call with a timeout and bounded retries.

        Args:
            method: RPC method name, for logs and errors
            call: Factory returning a fresh awaitable per attempt
            range_bounds: (from_block, to_block) for getLogs calls
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries):
            try:
                result = await asyncio.wait_for(call(), timeout=self.timeout)

                if attempt > 0:
                    self.logger.info("Request succeeded after retries", method=method, attempt=attempt + 1)
                return result

            except asyncio.TimeoutError as e:
                last_error = e
                self.logger.warning("RPC request timed out", method=method, attempt=attempt + 1)

            except Exception as e:
                if range_bounds is not None and is_range_too_large(e):
                    raise RangeTooLargeError(range_bounds[0], range_bounds[1], str(e))

                last_error = e
                self.logger.warning(
                    "RPC request failed",
                    method=method,
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self._backoff_delay(attempt))

        self.logger.error(
            "All RPC attempts failed",
            method=method,
            max_retries=self.max_retries,
            last_error=str(last_error)
        )
        raise ChainRPCError(
            f"{method} failed after {self.max_retries} attempts: {last_error}",
            {"method": method, "attempts": self.max_retries}
        )

    def _backoff_delay(self, attempt: int) -> float:
        ceiling = min(self.backoff_max, self.backoff_base * (2 ** attempt))
        return random.uniform(0, ceiling)

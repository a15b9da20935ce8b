"""
Shared fixtures: per-test SQLite database, a scripted chain, and log builders.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from eth_abi import encode
from web3 import Web3

from rwa_indexer.core.config import ContractName
from rwa_indexer.core.database import DatabaseManager, create_engine_and_session_maker
from rwa_indexer.core.exceptions import ChainRPCError, RangeTooLargeError
from rwa_indexer.indexer.pipeline import ContractPipeline
from rwa_indexer.services.chain_client import RawLog
from rwa_indexer.services.checkpoint_store import CheckpointStore
from rwa_indexer.services.event_decoder import EventDecoder
from rwa_indexer.services.event_repository import EventRepository


DEX_ADDRESS = "0x1000000000000000000000000000000000000001"
FUNGIBLE_ADDRESS = "0x2000000000000000000000000000000000000002"
NFT_ADDRESS = "0x3000000000000000000000000000000000000003"
ORACLE_ADDRESS = "0x4000000000000000000000000000000000000004"

CONTRACTS = {
    ContractName.DEX: DEX_ADDRESS,
    ContractName.FUNGIBLE_TOKEN: FUNGIBLE_ADDRESS,
    ContractName.NFT_TOKEN: NFT_ADDRESS,
    ContractName.ORACLE: ORACLE_ADDRESS,
}

ZERO = "0x0000000000000000000000000000000000000000"
BUYER = "0x0000000000000000000000000000000000000ABC"
ALICE = "0xA11CE00000000000000000000000000000000001"
BOB = "0xB0B0000000000000000000000000000000000002"

BASE_TIMESTAMP = 1700000000


def topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def uint_topic(value: int) -> str:
    return "0x%064x" % value


def block_hash(block_number: int) -> str:
    return "0x%064x" % (0xB10C << 200 | block_number)


def tx_hash(block_number: int, log_index: int) -> str:
    return "0x%064x" % (block_number * 10_000 + log_index)


def make_log(
    address: str,
    signature: str,
    indexed: Sequence[str],
    data_types: Sequence[str],
    data_values: Sequence,
    block_number: int,
    log_index: int,
    transaction_hash: Optional[str] = None,
    block_timestamp: Optional[int] = None,
) -> RawLog:
    return RawLog(
        address=address.lower(),
        topics=(topic(signature),) + tuple(indexed),
        data=Web3.to_hex(encode(list(data_types), list(data_values))) if data_types else "0x",
        block_number=block_number,
        block_hash=block_hash(block_number),
        transaction_hash=transaction_hash or tx_hash(block_number, log_index),
        log_index=log_index,
        block_timestamp=block_timestamp,
    )


def purchase_log(buyer, eth_in, tokens_out, timestamp, block_number, log_index, **kw) -> RawLog:
    return make_log(
        DEX_ADDRESS, "TokensPurchased(address,uint256,uint256,uint256)",
        [address_topic(buyer)], ["uint256", "uint256", "uint256"], [eth_in, tokens_out, timestamp],
        block_number, log_index, **kw
    )


def sale_log(seller, tokens_in, eth_out, timestamp, block_number, log_index, **kw) -> RawLog:
    return make_log(
        DEX_ADDRESS, "TokensSold(address,uint256,uint256,uint256)",
        [address_topic(seller)], ["uint256", "uint256", "uint256"], [tokens_in, eth_out, timestamp],
        block_number, log_index, **kw
    )


def liquidity_log(added, provider, token_amount, eth_amount, liquidity, timestamp,
                  block_number, log_index, **kw) -> RawLog:
    name = "LiquidityAdded" if added else "LiquidityRemoved"
    return make_log(
        DEX_ADDRESS, f"{name}(address,uint256,uint256,uint256,uint256)",
        [address_topic(provider)], ["uint256"] * 4, [token_amount, eth_amount, liquidity, timestamp],
        block_number, log_index, **kw
    )


def fungible_transfer_log(sender, recipient, value, block_number, log_index, **kw) -> RawLog:
    return make_log(
        FUNGIBLE_ADDRESS, "Transfer(address,address,uint256)",
        [address_topic(sender), address_topic(recipient)], ["uint256"], [value],
        block_number, log_index, **kw
    )


def tokens_minted_log(recipient, amount, timestamp, block_number, log_index, **kw) -> RawLog:
    return make_log(
        FUNGIBLE_ADDRESS, "TokensMinted(address,uint256,uint256)",
        [address_topic(recipient)], ["uint256", "uint256"], [amount, timestamp],
        block_number, log_index, **kw
    )


def tokens_burned_log(holder, amount, timestamp, block_number, log_index, **kw) -> RawLog:
    return make_log(
        FUNGIBLE_ADDRESS, "TokensBurned(address,uint256,uint256)",
        [address_topic(holder)], ["uint256", "uint256"], [amount, timestamp],
        block_number, log_index, **kw
    )


def nft_transfer_log(sender, recipient, token_id, block_number, log_index, **kw) -> RawLog:
    return make_log(
        NFT_ADDRESS, "Transfer(address,address,uint256)",
        [address_topic(sender), address_topic(recipient), uint_topic(token_id)], [], [],
        block_number, log_index, **kw
    )


def asset_minted_log(token_id, owner, name, valuation, timestamp, block_number, log_index, **kw) -> RawLog:
    return make_log(
        NFT_ADDRESS, "AssetMinted(uint256,address,string,uint256,uint256)",
        [uint_topic(token_id), address_topic(owner)],
        ["string", "uint256", "uint256"], [name, valuation, timestamp],
        block_number, log_index, **kw
    )


def valuation_updated_log(token_id, valuation, block_number, log_index, **kw) -> RawLog:
    return make_log(
        NFT_ADDRESS, "AssetValuationUpdated(uint256,uint256)",
        [uint_topic(token_id)], ["uint256"], [valuation],
        block_number, log_index, **kw
    )


def price_updated_log(token_address, token_id, old_price, new_price, timestamp,
                      block_number, log_index, **kw) -> RawLog:
    return make_log(
        ORACLE_ADDRESS, "PriceUpdated(address,uint256,uint256,uint256,uint256)",
        [address_topic(token_address), uint_topic(token_id)],
        ["uint256", "uint256", "uint256"], [old_price, new_price, timestamp],
        block_number, log_index, **kw
    )


def unknown_log(address, block_number, log_index, **kw) -> RawLog:
    return make_log(
        address, "Approval(address,address,uint256)",
        [address_topic(ALICE), address_topic(BOB)], ["uint256"], [1],
        block_number, log_index, **kw
    )


class FakeChainClient:
    """
    Scripted chain for tests.

    Serves every stored log of the requested address in the range, refuses
    windows wider than `max_range`, and records each answered getLogs range.
    """

    def __init__(self, head: int = 0, logs: Optional[List[RawLog]] = None, max_range: Optional[int] = None):
        self.head = head
        self.logs: List[RawLog] = list(logs or [])
        self.max_range = max_range
        self.queried: List[Tuple[int, int]] = []
        self.refused: List[Tuple[int, int]] = []
        self.hash_overrides: Dict[int, str] = {}
        self.failures_left = 0
        self.failing_addresses: Dict[str, Exception] = {}
        self.head_sequence: List[int] = []
        self.endless_heads = False
        self.timestamp_lookups: List[int] = []
        self.closed = False

    async def current_height(self) -> int:
        return self.head

    async def get_logs(self, address: str, topics: List[str], from_block: int, to_block: int) -> List[RawLog]:
        address = address.lower()
        if address in self.failing_addresses:
            raise self.failing_addresses[address]
        if self.failures_left:
            self.failures_left -= 1
            raise ChainRPCError("eth_getLogs failed after 5 attempts: connection reset")
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            self.refused.append((from_block, to_block))
            raise RangeTooLargeError(from_block, to_block, "query returned more than 10000 results")

        self.queried.append((from_block, to_block))
        matching = [
            log for log in self.logs
            if log.address == address and from_block <= log.block_number <= to_block
        ]
        return sorted(matching, key=lambda log: log.position)

    async def get_block_hash(self, block_number: int) -> str:
        return self.hash_overrides.get(block_number, block_hash(block_number))

    async def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_lookups.append(block_number)
        return BASE_TIMESTAMP + block_number

    async def subscribe_new_heads(self, poll_interval: float):
        while True:
            if self.head_sequence:
                self.head = self.head_sequence.pop(0)
            elif not self.endless_heads:
                return
            yield self.head
            await asyncio.sleep(poll_interval)

    async def is_connected(self) -> bool:
        return True

    async def close(self):
        self.closed = True


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll an async or sync predicate until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
async def session_maker(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine, maker = create_engine_and_session_maker(f"sqlite+aiosqlite:///{tmp_path}/indexer.db")
    await DatabaseManager.create_tables(engine)
    yield maker
    await engine.dispose()


@pytest.fixture
def repository(session_maker):
    return EventRepository(session_maker)


@pytest.fixture
def checkpoints(session_maker):
    return CheckpointStore(session_maker, lambda name: 0)


@pytest.fixture
def decoder():
    return EventDecoder(CONTRACTS)


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def make_pipeline(chain, decoder, repository, checkpoints):
    def _make(contract: ContractName = ContractName.DEX, confirmations: int = 0, client=None) -> ContractPipeline:
        return ContractPipeline(
            contract=contract,
            address=CONTRACTS[contract],
            chain_client=client or chain,
            decoder=decoder,
            repository=repository,
            checkpoints=checkpoints,
            confirmations=confirmations,
        )
    return _make

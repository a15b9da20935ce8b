"""
Test the chain client's retry policy, range classification and log normalization.
"""

import asyncio

import pytest

from rwa_indexer.core.exceptions import ChainRPCError, RangeTooLargeError
from rwa_indexer.services.chain_client import ChainClient, RawLog, is_range_too_large

from .conftest import DEX_ADDRESS


class ScriptedEth:
    """Stands in for AsyncWeb3.eth; each call pops the next scripted outcome."""

    def __init__(self, outcomes=None, height=123):
        self.outcomes = list(outcomes or [])
        self.height = height
        self.calls = 0
        self.last_params = None

    async def _next(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome

    @property
    def block_number(self):
        return self._height()

    async def _height(self):
        await self._next()
        return self.height

    async def get_logs(self, params):
        self.last_params = params
        return await self._next()

    async def get_block(self, block_number):
        result = await self._next()
        return result if result is not None else {
            "hash": bytes.fromhex("%064x" % block_number),
            "timestamp": 1700000000 + block_number,
        }


class ScriptedProvider:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class ScriptedWeb3:
    def __init__(self, eth):
        self.eth = eth
        self.provider = ScriptedProvider()

    async def is_connected(self):
        return True


def make_client(outcomes=None, max_retries=3, timeout=1.0):
    eth = ScriptedEth(outcomes)
    client = ChainClient(
        endpoint="http://localhost:8545",
        timeout=timeout,
        max_retries=max_retries,
        backoff_base=0.0,
        backoff_max=0.0,
        web3=ScriptedWeb3(eth),
    )
    return client, eth


def rpc_log(block_number, log_index, address=DEX_ADDRESS):
    return {
        "address": address.upper().replace("0X", "0x"),
        "topics": [bytes.fromhex("ab" * 32)],
        "data": bytes.fromhex("00" * 32),
        "blockNumber": block_number,
        "blockHash": bytes.fromhex("cd" * 32),
        "transactionHash": bytes.fromhex("%064x" % (block_number * 10 + log_index)),
        "logIndex": log_index,
        "removed": False,
    }


@pytest.mark.parametrize("message", [
    "query returned more than 10000 results",
    "Log response size exceeded. You can make eth_getLogs requests with up to a 2K block range",
    "{'code': -32005, 'message': 'query returned more than 10000 results'}",
    "block range is too large",
    "exceeds max results 20000",
])
def test_range_too_large_markers(message):
    assert is_range_too_large(Exception(message))


def test_ordinary_errors_are_not_range_errors():
    assert not is_range_too_large(ConnectionResetError("Connection reset by peer"))
    assert not is_range_too_large(Exception("429 Too Many Requests"))


@pytest.mark.parametrize("message", [
    "{'code': -32005, 'message': 'limit exceeded'}",
    "{'code': 429, 'message': 'daily request limit exceeded'}",
    "rate limit exceeded",
])
def test_rate_limit_replies_are_not_range_errors(message):
    assert not is_range_too_large(Exception(message))


@pytest.mark.asyncio
async def test_rate_limited_get_logs_is_retried():
    client, eth = make_client([ValueError({"code": -32005, "message": "rate limit exceeded"}), [rpc_log(10, 0)]])

    logs = await client.get_logs(DEX_ADDRESS, ["0x" + "ab" * 32], 1, 10)

    assert eth.calls == 2
    assert [log.position for log in logs] == [(10, 0)]


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    client, eth = make_client([ConnectionError("reset"), asyncio.TimeoutError(), None])

    assert await client.current_height() == 123
    assert eth.calls == 3


@pytest.mark.asyncio
async def test_retry_exhaustion_raises_chain_error():
    client, eth = make_client([OSError("down")] * 3, max_retries=3)

    with pytest.raises(ChainRPCError) as exc_info:
        await client.current_height()

    assert eth.calls == 3
    assert exc_info.value.details["method"] == "eth_blockNumber"


@pytest.mark.asyncio
async def test_slow_call_times_out_and_retries():
    async def slow():
        await asyncio.sleep(1)

    client, eth = make_client([slow, None], timeout=0.05)

    assert await client.current_height() == 123
    assert eth.calls == 2


@pytest.mark.asyncio
async def test_range_too_large_is_not_retried():
    client, eth = make_client([ValueError({"code": -32005, "message": "query returned more than 10000 results"})])

    with pytest.raises(RangeTooLargeError) as exc_info:
        await client.get_logs(DEX_ADDRESS, ["0x" + "ab" * 32], 100, 5000)

    assert eth.calls == 1
    assert (exc_info.value.from_block, exc_info.value.to_block) == (100, 5000)


@pytest.mark.asyncio
async def test_get_logs_normalizes_and_sorts():
    client, eth = make_client([[rpc_log(11, 0), rpc_log(10, 3), rpc_log(10, 1)]])

    logs = await client.get_logs(DEX_ADDRESS, ["0x" + "ab" * 32], 10, 11)

    assert [log.position for log in logs] == [(10, 1), (10, 3), (11, 0)]
    first = logs[0]
    assert first.address == DEX_ADDRESS
    assert first.topics == ("0x" + "ab" * 32,)
    assert first.block_hash == "0x" + "cd" * 32
    assert first.block_timestamp is None
    assert eth.last_params["fromBlock"] == 10
    assert eth.last_params["toBlock"] == 11
    assert eth.last_params["topics"] == [["0x" + "ab" * 32]]


@pytest.mark.asyncio
async def test_empty_range_skips_rpc():
    client, eth = make_client()

    assert await client.get_logs(DEX_ADDRESS, [], 10, 9) == []
    assert eth.calls == 0


def test_raw_log_from_json_rpc_hex_fields():
    log = RawLog.from_rpc({
        "address": "0xABCDEF0000000000000000000000000000000001",
        "topics": ["0xAA" + "00" * 31],
        "data": "0x",
        "blockNumber": "0x64",
        "blockHash": None,
        "transactionHash": "0x" + "12" * 32,
        "logIndex": "0x2",
        "blockTimestamp": "0x6553f100",
        "removed": True,
    })

    assert log.address == "0xabcdef0000000000000000000000000000000001"
    assert log.topics == ("0xaa" + "00" * 31,)
    assert log.block_number == 100
    assert log.log_index == 2
    assert log.block_hash is None
    assert log.block_timestamp == 1700000000
    assert log.removed


@pytest.mark.asyncio
async def test_block_hash_and_timestamp():
    client, _ = make_client()

    assert await client.get_block_hash(255) == "0x" + "%064x" % 255
    assert await client.get_block_timestamp(5) == 1700000005


@pytest.mark.asyncio
async def test_subscribe_new_heads_yields_increasing_heads():
    client, eth = make_client()
    heads = iter([5, 5, 7])

    async def next_height():
        return next(heads)

    eth._height = next_height

    seen = []
    async for head in client.subscribe_new_heads(poll_interval=0):
        seen.append(head)
        if len(seen) == 2:
            break

    assert seen == [5, 7]


@pytest.mark.asyncio
async def test_close_disconnects_provider():
    client, _ = make_client()
    async with client:
        pass
    assert client.w3.provider.disconnected


@pytest.mark.asyncio
async def test_subscribe_logs_yields_each_log_once_in_order():
    client, eth = make_client()
    heads = iter([4, 10, 10, 12])
    served = {
        (5, 10): [rpc_log(10, 1), rpc_log(6, 0)],
        (11, 12): [rpc_log(12, 0)],
    }
    ranges = []

    async def next_height():
        return next(heads)

    async def get_logs(params):
        ranges.append((params["fromBlock"], params["toBlock"]))
        return served[ranges[-1]]

    eth._height = next_height
    eth.get_logs = get_logs

    seen = []
    async for log in client.subscribe_logs(DEX_ADDRESS, ["0x" + "ab" * 32], from_block=5, poll_interval=0):
        seen.append(log.position)
        if len(seen) == 3:
            break

    assert seen == [(6, 0), (10, 1), (12, 0)]
    assert ranges == [(5, 10), (11, 12)]

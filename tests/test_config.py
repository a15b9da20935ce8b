"""
Test settings validation and database URL handling.
"""

import pytest
from pydantic import ValidationError

from rwa_indexer.core.config import ChainConfig, ContractName, DatabaseConfig, Settings


def test_addresses_normalized_to_lowercase():
    config = Settings(dex_address="0xABCDEF0000000000000000000000000000000001")
    assert config.contract_address(ContractName.DEX) == "0xabcdef0000000000000000000000000000000001"


def test_malformed_address_rejected():
    with pytest.raises(ValidationError):
        Settings(oracle_address="0x1234")


def test_unknown_start_block_contract_rejected():
    with pytest.raises(ValidationError):
        Settings(contract_start_blocks={"bridge": 10})


def test_start_block_seeds_checkpoint_below_deployment():
    config = Settings(genesis_block=100, contract_start_blocks={"nft_token": 250})
    assert config.start_block(ContractName.NFT_TOKEN) == 249
    assert config.start_block(ContractName.DEX) == 100


def test_zero_window_rejected():
    with pytest.raises(ValidationError):
        Settings(indexer_window_size=0)


@pytest.mark.parametrize("url,expected", [
    ("postgresql://u:p@db/indexer", "postgresql+asyncpg://u:p@db/indexer"),
    ("sqlite:///./data/indexer.db", "sqlite+aiosqlite:///./data/indexer.db"),
    ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
])
def test_database_url_uses_async_driver(url, expected):
    assert DatabaseConfig.get_database_url(url) == expected


def test_sqlite_engine_has_no_pool_settings():
    assert DatabaseConfig.get_engine_config("sqlite:///x.db") == {}
    assert "pool_size" in DatabaseConfig.get_engine_config("postgresql://u:p@db/indexer")


def test_every_contract_has_event_abis():
    assert set(ChainConfig.CONTRACT_ABIS) == set(ContractName)

"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ContractName(str, Enum):
    """The four monitored contracts."""
    DEX = "dex"
    FUNGIBLE_TOKEN = "fungible_token"
    NFT_TOKEN = "nft_token"
    ORACLE = "oracle"


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "RWA Event Indexer"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = Field(default="development")

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./data/indexer.db")
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Chain RPC
    rpc_url: str = Field(default="https://ethereum-sepolia-rpc.publicnode.com")
    rpc_timeout: float = 30.0  # seconds
    rpc_max_retries: int = 5
    rpc_backoff_base: float = 0.5  # seconds
    rpc_backoff_max: float = 30.0  # seconds

    # Monitored contracts (Sepolia deployment)
    dex_address: str = "0x28B2c6b3C1C9F09ca86e6B7cc8d0b9f0Bd7CE7F4"
    fungible_token_address: str = "0x6B2a38Ef30420B0AF041F014a092BEDB39F2Eb81"
    nft_token_address: str = "0xcC1fA977E3c47D3758117De61218208c1282362c"
    oracle_address: str = "0x602571F05745181fF237b81dAb8F67148e9475C7"

    # Checkpoint seeding
    genesis_block: int = 0
    contract_start_blocks: Dict[str, int] = {}  # deployment block per contract
    indexer_initial_lookback: Optional[int] = None

    # Indexer settings
    indexer_window_size: int = 2000  # blocks per backfill window
    indexer_min_window_size: int = 1
    indexer_poll_interval: float = 5.0  # seconds
    indexer_live_gap_threshold: int = 500  # blocks
    indexer_confirmations: int = 0
    indexer_restart_delay: float = 30.0  # seconds
    indexer_health_interval: float = 30.0  # seconds

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator(
        "dex_address",
        "fungible_token_address",
        "nft_token_address",
        "oracle_address",
    )
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not ADDRESS_RE.match(v):
            raise ValueError(f"Invalid contract address: {v}")
        return v.lower()

    @field_validator("contract_start_blocks")
    @classmethod
    def validate_start_blocks(cls, v: Dict[str, int]) -> Dict[str, int]:
        known = {name.value for name in ContractName}
        unknown = set(v) - known
        if unknown:
            raise ValueError(f"Unknown contracts in start blocks: {sorted(unknown)}")
        return v

    @field_validator("indexer_window_size", "indexer_min_window_size")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Window sizes must be at least 1 block")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def contract_address(self, contract: ContractName) -> str:
        """Address of a monitored contract."""
        return getattr(self, f"{contract.value}_address")

    def start_block(self, contract: ContractName) -> int:
        """Checkpoint used when nothing has been stored for a contract yet."""
        if contract.value in self.contract_start_blocks:
            # The deployment block itself still has to be indexed
            return self.contract_start_blocks[contract.value] - 1
        return self.genesis_block


# Global settings instance
settings = Settings()


class DatabaseConfig:
    """Database-specific configuration."""

    @staticmethod
    def get_database_url(url: Optional[str] = None) -> str:
        """Get database URL with the async driver."""
        url = url or settings.database_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url

    @staticmethod
    def get_engine_config(url: Optional[str] = None) -> dict:
        """Get SQLAlchemy engine configuration."""
        url = DatabaseConfig.get_database_url(url)
        if url.startswith("sqlite"):
            return {}
        return {
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }


class ChainConfig:
    """Chain-specific configuration and constants."""

    ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

    # Event ABIs of the monitored contracts, in human-readable form
    CONTRACT_ABIS: Dict[ContractName, List[str]] = {
        ContractName.DEX: [
            "event TokensPurchased(address indexed buyer, uint256 ethIn, uint256 tokensOut, uint256 timestamp)",
            "event TokensSold(address indexed seller, uint256 tokensIn, uint256 ethOut, uint256 timestamp)",
            "event LiquidityAdded(address indexed provider, uint256 tokenAmount, uint256 ethAmount, uint256 liquidityMinted, uint256 timestamp)",
            "event LiquidityRemoved(address indexed provider, uint256 tokenAmount, uint256 ethAmount, uint256 liquidityBurned, uint256 timestamp)",
        ],
        ContractName.FUNGIBLE_TOKEN: [
            "event Transfer(address indexed from, address indexed to, uint256 value)",
            "event TokensMinted(address indexed to, uint256 amount, uint256 timestamp)",
            "event TokensBurned(address indexed from, uint256 amount, uint256 timestamp)",
        ],
        ContractName.NFT_TOKEN: [
            "event Transfer(address indexed from, address indexed to, uint256 indexed tokenId)",
            "event AssetMinted(uint256 indexed tokenId, address indexed owner, string name, uint256 valuation, uint256 timestamp)",
            "event AssetValuationUpdated(uint256 indexed tokenId, uint256 newValuation)",
        ],
        ContractName.ORACLE: [
            "event PriceUpdated(address indexed tokenAddress, uint256 indexed tokenId, uint256 oldPrice, uint256 newPrice, uint256 timestamp)",
        ],
    }

    @staticmethod
    def get_rpc_config() -> dict:
        """Get chain RPC client configuration."""
        return {
            "endpoint": settings.rpc_url,
            "timeout": settings.rpc_timeout,
            "max_retries": settings.rpc_max_retries,
            "backoff_base": settings.rpc_backoff_base,
            "backoff_max": settings.rpc_backoff_max,
        }

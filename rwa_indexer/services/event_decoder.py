"""
Event decoder for the RWA platform contracts.
Maps raw EVM logs onto typed domain events using the static event ABIs.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from rwa_indexer.core.config import ChainConfig, ContractName
from rwa_indexer.core.exceptions import ConfigurationError, DecodeError, UnknownEventError
from rwa_indexer.models.events import LiquidityKind, SwapDirection, TokenType
from rwa_indexer.services.chain_client import RawLog


logger = structlog.get_logger(__name__)

MAX_TIMESTAMP = 2 ** 63 - 1

EVENT_FRAGMENT_RE = re.compile(r"^\s*event\s+(\w+)\s*\((.*)\)\s*$")


# Domain events

@dataclass
class DomainEvent:
    """Fields shared by every decoded event. (transaction_hash, log_index) is the identity."""
    collection: ClassVar[str] = ""

    event_name: str
    contract_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    block_hash: Optional[str]
    block_timestamp: Optional[int]

    @property
    def idempotency_key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass
class SwapEvent(DomainEvent):
    """TokensPurchased / TokensSold."""
    collection: ClassVar[str] = "swaps"

    trader: str
    direction: SwapDirection
    eth_amount: int
    token_amount: int
    timestamp: int


@dataclass
class LiquidityEvent(DomainEvent):
    """LiquidityAdded / LiquidityRemoved."""
    collection: ClassVar[str] = "liquidity"

    provider: str
    kind: LiquidityKind
    token_amount: int
    eth_amount: int
    liquidity_tokens: int
    timestamp: int


@dataclass
class TransferEvent(DomainEvent):
    """Token movement; minted/burned mark transfers from/to the zero address."""
    collection: ClassVar[str] = "transfers"

    token_type: TokenType
    from_address: str
    to_address: str
    value: int
    token_id: Optional[int] = None
    minted: bool = False
    burned: bool = False


@dataclass
class NFTMintEvent(DomainEvent):
    """AssetMinted."""
    collection: ClassVar[str] = "nft_mints"

    token_id: int
    owner: str
    name: str
    valuation: int
    timestamp: int


@dataclass
class PriceUpdateEvent(DomainEvent):
    """Oracle price change; token_id is set only for NFT-scoped prices."""
    collection: ClassVar[str] = "prices"

    token_address: str
    new_price: int
    timestamp: int
    token_id: Optional[int] = None
    old_price: Optional[int] = None


EVENT_TYPES = (SwapEvent, LiquidityEvent, TransferEvent, NFTMintEvent, PriceUpdateEvent)


# ABI table

@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool


@dataclass(frozen=True)
class EventSignature:
    """One ABI event of one contract."""
    contract: ContractName
    name: str
    params: Tuple[EventParam, ...]

    @property
    def text_signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic0(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.text_signature))

    @property
    def indexed_params(self) -> Tuple[EventParam, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def data_params(self) -> Tuple[EventParam, ...]:
        return tuple(p for p in self.params if not p.indexed)


def parse_event_fragment(contract: ContractName, fragment: str) -> EventSignature:
    """Parse a human-readable ABI fragment such as ``event Transfer(address indexed from, ...)``."""
    match = EVENT_FRAGMENT_RE.match(fragment)
    if not match:
        raise ConfigurationError(f"Invalid event fragment: {fragment}")

    name, raw_params = match.groups()
    params = []
    for raw in filter(None, (part.strip() for part in raw_params.split(","))):
        tokens = raw.split()
        if len(tokens) == 3 and tokens[1] == "indexed":
            params.append(EventParam(name=tokens[2], type=tokens[0], indexed=True))
        elif len(tokens) == 2:
            params.append(EventParam(name=tokens[1], type=tokens[0], indexed=False))
        else:
            raise ConfigurationError(f"Invalid event parameter '{raw}' in {fragment}")

    return EventSignature(contract=contract, name=name, params=tuple(params))


@dataclass
class DecodeBatchResult:
    """Outcome of decoding a batch of logs."""
    events: List[DomainEvent] = field(default_factory=list)
    unknown: int = 0
    errors: int = 0


Builder = Callable[[RawLog, Dict[str, Any]], DomainEvent]


class EventDecoder:
    """
    Decoder for the four monitored contracts.

    Logs are matched on (emitting contract, topic0): the fungible and NFT
    contracts both emit ``Transfer`` with the same signature hash but a
    different indexed layout.
    """

    def __init__(
        self,
        contract_addresses: Dict[ContractName, str],
        abis: Optional[Dict[ContractName, List[str]]] = None
    ):
        self.logger = logger.bind(service="event_decoder")
        self._contracts_by_address = {
            address.lower(): contract for contract, address in contract_addresses.items()
        }
        self._addresses = {contract: address.lower() for contract, address in contract_addresses.items()}

        self._signatures: Dict[Tuple[ContractName, str], EventSignature] = {}
        for contract, fragments in (abis or ChainConfig.CONTRACT_ABIS).items():
            for fragment in fragments:
                signature = parse_event_fragment(contract, fragment)
                self._signatures[(contract, signature.topic0)] = signature

        self._builders: Dict[Tuple[ContractName, str], Builder] = {
            (ContractName.DEX, "TokensPurchased"): self._build_purchase,
            (ContractName.DEX, "TokensSold"): self._build_sale,
            (ContractName.DEX, "LiquidityAdded"): self._build_liquidity_added,
            (ContractName.DEX, "LiquidityRemoved"): self._build_liquidity_removed,
            (ContractName.FUNGIBLE_TOKEN, "Transfer"): self._build_fungible_transfer,
            (ContractName.FUNGIBLE_TOKEN, "TokensMinted"): self._build_tokens_minted,
            (ContractName.FUNGIBLE_TOKEN, "TokensBurned"): self._build_tokens_burned,
            (ContractName.NFT_TOKEN, "Transfer"): self._build_nft_transfer,
            (ContractName.NFT_TOKEN, "AssetMinted"): self._build_asset_minted,
            (ContractName.NFT_TOKEN, "AssetValuationUpdated"): self._build_valuation_updated,
            (ContractName.ORACLE, "PriceUpdated"): self._build_price_updated,
        }

        missing = [
            f"{sig.contract.value}.{sig.name}"
            for sig in self._signatures.values()
            if (sig.contract, sig.name) not in self._builders
        ]
        if missing:
            raise ConfigurationError("Events without a decoder", {"events": missing})

    def topics_for(self, contract: ContractName) -> List[str]:
        """Signature hashes to request from the node for a contract."""
        return sorted(topic for (owner, topic) in self._signatures if owner == contract)

    def contract_for(self, address: str) -> Optional[ContractName]:
        return self._contracts_by_address.get(address.lower())

    def decode(self, log: RawLog) -> DomainEvent:
        """
        Decode one raw log.

        Raises:
            UnknownEventError: If the emitter or signature is not in the table
            DecodeError: If the payload does not match the signature
        """
        contract = self.contract_for(log.address)
        topic0 = log.topics[0].lower() if log.topics else None
        if contract is None or topic0 is None:
            raise UnknownEventError(log.address, topic0)

        signature = self._signatures.get((contract, topic0))
        if signature is None:
            raise UnknownEventError(log.address, topic0)

        args = self._decode_args(signature, log)
        return self._builders[(contract, signature.name)](log, args)

    def decode_batch(self, logs: List[RawLog]) -> DecodeBatchResult:
        """Decode logs, skipping the ones that cannot be decoded."""
        result = DecodeBatchResult()
        for log in logs:
            try:
                result.events.append(self.decode(log))
            except UnknownEventError as e:
                result.unknown += 1
                self.logger.warning(
                    "Skipping unknown event",
                    address=log.address,
                    topic0=e.details.get("topic0"),
                    transaction_hash=log.transaction_hash,
                    log_index=log.log_index
                )
            except DecodeError as e:
                result.errors += 1
                self.logger.warning(
                    "Skipping undecodable log",
                    transaction_hash=log.transaction_hash,
                    log_index=log.log_index,
                    error=e.message
                )
        return result

    def _decode_args(self, signature: EventSignature, log: RawLog) -> Dict[str, Any]:
        indexed = signature.indexed_params
        if len(log.topics) - 1 != len(indexed):
            raise DecodeError(
                f"{signature.name} expects {len(indexed)} indexed topics, got {len(log.topics) - 1}",
                {"transaction_hash": log.transaction_hash, "log_index": log.log_index}
            )

        args: Dict[str, Any] = {}
        try:
            for param, topic in zip(indexed, log.topics[1:]):
                (args[param.name],) = abi_decode([param.type], _hex_to_bytes(topic))

            data_params = signature.data_params
            if data_params:
                values = abi_decode([p.type for p in data_params], _hex_to_bytes(log.data))
                for param, value in zip(data_params, values):
                    args[param.name] = value
        except (DecodingError, ValueError, TypeError) as e:
            raise DecodeError(
                f"Failed to decode {signature.name}: {e}",
                {"transaction_hash": log.transaction_hash, "log_index": log.log_index}
            )

        for param in signature.params:
            if param.type == "address":
                args[param.name] = args[param.name].lower()
        return args

    @staticmethod
    def _common(log: RawLog, event_name: str) -> Dict[str, Any]:
        return {
            "event_name": event_name,
            "contract_address": log.address.lower(),
            "transaction_hash": log.transaction_hash,
            "log_index": log.log_index,
            "block_number": log.block_number,
            "block_hash": log.block_hash,
            "block_timestamp": log.block_timestamp,
        }

    @staticmethod
    def _timestamp(value: int) -> int:
        if value > MAX_TIMESTAMP:
            raise DecodeError(f"Timestamp {value} out of range")
        return value

    def _build_purchase(self, log: RawLog, args: Dict[str, Any]) -> SwapEvent:
        return SwapEvent(
            **self._common(log, "TokensPurchased"),
            trader=args["buyer"],
            direction=SwapDirection.BUY,
            eth_amount=args["ethIn"],
            token_amount=args["tokensOut"],
            timestamp=self._timestamp(args["timestamp"]),
        )

    def _build_sale(self, log: RawLog, args: Dict[str, Any]) -> SwapEvent:
        return SwapEvent(
            **self._common(log, "TokensSold"),
            trader=args["seller"],
            direction=SwapDirection.SELL,
            eth_amount=args["ethOut"],
            token_amount=args["tokensIn"],
            timestamp=self._timestamp(args["timestamp"]),
        )

    def _build_liquidity_added(self, log: RawLog, args: Dict[str, Any]) -> LiquidityEvent:
        return LiquidityEvent(
            **self._common(log, "LiquidityAdded"),
            provider=args["provider"],
            kind=LiquidityKind.ADDED,
            token_amount=args["tokenAmount"],
            eth_amount=args["ethAmount"],
            liquidity_tokens=args["liquidityMinted"],
            timestamp=self._timestamp(args["timestamp"]),
        )

    def _build_liquidity_removed(self, log: RawLog, args: Dict[str, Any]) -> LiquidityEvent:
        return LiquidityEvent(
            **self._common(log, "LiquidityRemoved"),
            provider=args["provider"],
            kind=LiquidityKind.REMOVED,
            token_amount=args["tokenAmount"],
            eth_amount=args["ethAmount"],
            liquidity_tokens=args["liquidityBurned"],
            timestamp=self._timestamp(args["timestamp"]),
        )

    def _build_fungible_transfer(self, log: RawLog, args: Dict[str, Any]) -> TransferEvent:
        return TransferEvent(
            **self._common(log, "Transfer"),
            token_type=TokenType.FUNGIBLE,
            from_address=args["from"],
            to_address=args["to"],
            value=args["value"],
            minted=args["from"] == ChainConfig.ZERO_ADDRESS,
            burned=args["to"] == ChainConfig.ZERO_ADDRESS,
        )

    def _build_tokens_minted(self, log: RawLog, args: Dict[str, Any]) -> TransferEvent:
        return TransferEvent(
            **self._common(log, "TokensMinted"),
            token_type=TokenType.FUNGIBLE,
            from_address=ChainConfig.ZERO_ADDRESS,
            to_address=args["to"],
            value=args["amount"],
            minted=True,
        )

    def _build_tokens_burned(self, log: RawLog, args: Dict[str, Any]) -> TransferEvent:
        return TransferEvent(
            **self._common(log, "TokensBurned"),
            token_type=TokenType.FUNGIBLE,
            from_address=args["from"],
            to_address=ChainConfig.ZERO_ADDRESS,
            value=args["amount"],
            burned=True,
        )

    def _build_nft_transfer(self, log: RawLog, args: Dict[str, Any]) -> TransferEvent:
        return TransferEvent(
            **self._common(log, "Transfer"),
            token_type=TokenType.NFT,
            from_address=args["from"],
            to_address=args["to"],
            value=1,
            token_id=args["tokenId"],
            minted=args["from"] == ChainConfig.ZERO_ADDRESS,
            burned=args["to"] == ChainConfig.ZERO_ADDRESS,
        )

    def _build_asset_minted(self, log: RawLog, args: Dict[str, Any]) -> NFTMintEvent:
        return NFTMintEvent(
            **self._common(log, "AssetMinted"),
            token_id=args["tokenId"],
            owner=args["owner"],
            name=args["name"],
            valuation=args["valuation"],
            timestamp=self._timestamp(args["timestamp"]),
        )

    def _build_valuation_updated(self, log: RawLog, args: Dict[str, Any]) -> PriceUpdateEvent:
        if log.block_timestamp is None:
            raise DecodeError(
                "AssetValuationUpdated needs the block timestamp",
                {"transaction_hash": log.transaction_hash, "log_index": log.log_index}
            )
        return PriceUpdateEvent(
            **self._common(log, "AssetValuationUpdated"),
            token_address=log.address.lower(),
            token_id=args["tokenId"],
            new_price=args["newValuation"],
            timestamp=log.block_timestamp,
        )

    def _build_price_updated(self, log: RawLog, args: Dict[str, Any]) -> PriceUpdateEvent:
        # NFT ids start at 0; the priced contract decides whether tokenId applies
        is_nft = args["tokenAddress"] == self._addresses.get(ContractName.NFT_TOKEN)
        return PriceUpdateEvent(
            **self._common(log, "PriceUpdated"),
            token_address=args["tokenAddress"],
            token_id=args["tokenId"] if is_nft else None,
            old_price=args["oldPrice"],
            new_price=args["newPrice"],
            timestamp=self._timestamp(args["timestamp"]),
        )


def _hex_to_bytes(value: str) -> bytes:
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)

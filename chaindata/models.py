"""Pydantic models for registry entities, config-feed records and API responses."""

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union


# Existential deposits can exceed 2^64 token units, so they are carried as
# python ints and serialized as decimal strings
BigInt = Annotated[int, PlainSerializer(lambda value: str(value), return_type=str, when_used="json")]

# Quoted price per currency code, e.g. {"usd": 5.21, "eur": 4.87}
TokenRates = Dict[str, Optional[float]]


class CamelModel(BaseModel):
    """Base model accepting and emitting the feed's camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Embedded rpcs

class SubstrateRpc(CamelModel):
    """A chain-native (websocket) rpc endpoint."""
    url: str
    is_healthy: bool = False


class EthereumRpc(CamelModel):
    """An ethereum json-rpc (https) endpoint."""
    url: str
    is_healthy: bool = False


# Entities

class Chain(CamelModel):
    """A relay chain or parachain."""
    id: str
    is_testnet: bool = False
    sort_index: Optional[int] = None
    genesis_hash: Optional[str] = None
    prefix: Optional[int] = None
    name: Optional[str] = None
    chain_name: Optional[str] = None
    impl_name: Optional[str] = None
    spec_name: Optional[str] = None
    spec_version: Optional[str] = None
    native_token_id: Optional[str] = None
    # index of CurrencyId::Token, needed for fetching orml token balances
    tokens_currency_id_index: Optional[int] = None
    account: Optional[str] = None
    subscan_url: Optional[str] = None
    rpcs: List[SubstrateRpc] = Field(default_factory=list)
    is_healthy: bool = False
    # para_id and relay_id are either both set or both unset
    para_id: Optional[int] = None
    relay_id: Optional[str] = None


class EvmNetwork(CamelModel):
    """An ethereum-compatible network, standalone or linked to a chain."""
    id: str
    is_testnet: bool = False
    sort_index: Optional[int] = None
    name: Optional[str] = None
    explorer_url: Optional[str] = None
    rpcs: List[EthereumRpc] = Field(default_factory=list)
    is_healthy: bool = False
    substrate_chain_id: Optional[str] = None
    native_token_id: Optional[str] = None

    @property
    def is_standalone(self) -> bool:
        return self.substrate_chain_id is None and self.name is not None

    @property
    def is_linked(self) -> bool:
        return self.substrate_chain_id is not None


class TokenBase(CamelModel):
    """Fields shared by every token variant."""
    id: str
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    coingecko_id: Optional[str] = None
    is_testnet: bool = False
    rates: Optional[TokenRates] = None


class NativeToken(TokenBase):
    """The native token of a chain or of a standalone evm network."""
    type: Literal["native"] = "native"
    existential_deposit: Optional[BigInt] = None
    chain_id: Optional[str] = None
    evm_network_id: Optional[str] = None


class OrmlToken(TokenBase):
    """A token held in an orml-style multi-asset pallet."""
    type: Literal["orml"] = "orml"
    existential_deposit: Optional[BigInt] = None
    state_key: Optional[str] = None
    chain_id: Optional[str] = None


class Erc20Token(TokenBase):
    """A contract token on an evm network."""
    type: Literal["erc20"] = "erc20"
    contract_address: Optional[str] = None
    evm_network_id: Optional[str] = None


Token = Annotated[Union[NativeToken, OrmlToken, Erc20Token], Field(discriminator="type")]
token_adapter: TypeAdapter = TypeAdapter(Token)


def token_anchor(token: TokenBase) -> Tuple[Optional[str], Optional[str]]:
    """Return the (chain id, evm network id) the token is anchored to."""
    if token.type == "orml":
        return token.chain_id, None
    if token.type == "erc20":
        return None, token.evm_network_id
    return token.chain_id, token.evm_network_id


def native_token_id(anchor_id: str, symbol: Optional[str]) -> str:
    return f"{anchor_id}-native-{symbol}".lower()


def orml_token_id(chain_id: str, symbol: str) -> str:
    return f"{chain_id}-orml-{symbol}".lower()


def erc20_token_id(evm_network_id: str, contract_address: str) -> str:
    return f"{evm_network_id}-erc20-{contract_address}".lower()


# Config-feed records

class RelayRef(CamelModel):
    id: Optional[str] = None


class ConfigChain(CamelModel):
    """A chain record from chaindata.json / testnets-chaindata.json."""
    id: str
    is_testnet: bool = False
    name: Optional[str] = None
    account: Optional[str] = None
    subscan_url: Optional[str] = None
    rpcs: List[str] = Field(default_factory=list)
    para_id: Optional[int] = None
    relay: Optional[RelayRef] = None

    @field_validator("rpcs", mode="before")
    @classmethod
    def _none_rpcs(cls, value):
        return value or []


class ConfigEvmNetwork(CamelModel):
    """An evm network record from evm-networks.json."""
    name: Optional[str] = None
    is_testnet: bool = False
    explorer_url: Optional[str] = None
    rpcs: List[str] = Field(default_factory=list)
    substrate_chain_id: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None

    @field_validator("rpcs", mode="before")
    @classmethod
    def _none_rpcs(cls, value):
        return value or []

    @property
    def is_standalone(self) -> bool:
        return self.substrate_chain_id is None and self.name is not None

    @property
    def is_linked(self) -> bool:
        return self.substrate_chain_id is not None


class ConfigToken(CamelModel):
    """A token record from tokens.json (an override or an erc20 definition)."""
    id: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    coingecko_id: Optional[str] = None
    contract_address: Optional[str] = None
    evm_network_id: Optional[str] = None

    @field_validator("evm_network_id", mode="before")
    @classmethod
    def _stringify_network_id(cls, value):
        # the feed writes evm network ids as numbers
        return None if value is None else str(value)

    @property
    def is_override(self) -> bool:
        return self.id is not None and (self.symbol is not None or self.coingecko_id is not None)

    @property
    def is_erc20(self) -> bool:
        return self.contract_address is not None and self.evm_network_id is not None


# API responses

class HealthResponse(BaseModel):
    """Response model for /health endpoint."""
    status: str
    chain_count: int
    evm_network_count: int
    token_count: int


class PipelineStatus(BaseModel):
    """Outcome of the most recent pipeline run."""
    last_block_height: Optional[int] = None
    last_block_timestamp: Optional[int] = None
    last_run_started_at: Optional[float] = None
    last_run_duration: Optional[float] = None
    last_run_succeeded: Optional[bool] = None
    last_error: Optional[str] = None
    runs_completed: int = 0
    runs_failed: int = 0

"""Runtime metadata extraction: chain constants, native token and orml tokens."""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import xxhash
from scalecodec.base import RuntimeConfigurationObject, ScaleBytes
from scalecodec.type_registry import load_type_registry_preset

from chaindata.rpc import ENDPOINT_ERRORS, SubstrateRpcClient, disconnect, send_with_timeout

logger = logging.getLogger(__name__)

DEFAULT_SS58_PREFIX = 42
CURRENCY_ID_TYPE = "CurrencyId"
TOKEN_SYMBOL_TYPE = "TokenSymbol"
TOKEN_CURRENCY_VARIANT = "Token"

CHAIN_DATA_BATCH = [
    ("chain_getBlockHash", [0]),
    ("state_getRuntimeVersion", []),
    ("state_getMetadata", []),
    ("system_chain", []),
    ("system_properties", []),
]

# Chains whose metadata or properties don't describe their tokens correctly.
# symbol_indexes are TokenSymbol discriminants, used to build the storage keys.
TOKEN_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "interlay": {
        "symbols": ["INTR", "IBTC", "DOT"],
        "decimals": [10, 8, 10],
        "currency_id_index": 0,
        "symbol_indexes": {"DOT": 0, "IBTC": 1, "INTR": 2},
    },
    "kintsugi": {
        "symbols": ["KINT", "KBTC", "KSM"],
        "decimals": [12, 8, 12],
        "currency_id_index": 0,
        "symbol_indexes": {"KSM": 10, "KBTC": 11, "KINT": 12},
    },
}


class MetadataDecodeError(Exception):
    """Runtime metadata could not be decoded."""


@dataclass
class TypeDefinition:
    """A type from the metadata lookup; variants is None unless it is an enum."""
    path: List[str]
    variants: Optional[List[Tuple[str, int]]] = None

    @property
    def name(self) -> Optional[str]:
        return self.path[-1] if self.path else None


class MetadataDecoder(Protocol):
    def decode_constants(self, metadata: str) -> Dict[str, Optional[int]]:
        ...

    def decode_type_lookup(self, metadata: str) -> List[TypeDefinition]:
        ...


def twox64_concat(data: bytes) -> bytes:
    """The Twox64Concat storage hasher: xxhash64 (seed 0, little-endian) followed by the input."""
    return xxhash.xxh64(data, seed=0).intdigest().to_bytes(8, "little") + data


def decode_le_int(value: Any) -> int:
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return int.from_bytes(bytes(value), "little")


def constant_bytes(value: str) -> bytes:
    # scalecodec hands back Bytes as text when they happen to be valid utf-8
    if value.startswith("0x"):
        return bytes.fromhex(value[2:])
    return value.encode()


class ScaleMetadataDecoder:
    """MetadataDecoder backed by py-scale-codec."""

    @staticmethod
    @lru_cache(maxsize=8)
    def _decode(metadata: str) -> Dict[str, Any]:
        try:
            runtime_config = RuntimeConfigurationObject()
            runtime_config.update_type_registry(load_type_registry_preset("core"))
            decoded = runtime_config.create_scale_object("MetadataVersioned", data=ScaleBytes(metadata))
            decoded.decode()
        except Exception as e:
            raise MetadataDecodeError(f"Undecodable runtime metadata: {e!r}") from e

        # value is [magic, {"V14": {...}}]
        value = decoded.value
        versioned = value[-1] if isinstance(value, (list, tuple)) else value
        if isinstance(versioned, dict) and len(versioned) == 1:
            (version, inner), = versioned.items()
            if str(version).startswith("V"):
                return inner
        raise MetadataDecodeError("Unrecognised runtime metadata layout")

    def decode_constants(self, metadata: str) -> Dict[str, Optional[int]]:
        constants = {}
        for pallet in self._decode(metadata).get("pallets") or []:
            for constant in pallet.get("constants") or []:
                constants[(pallet.get("name"), constant.get("name"))] = constant.get("value")

        existential_deposit = constants.get(("Balances", "ExistentialDeposit"))
        ss58_prefix = constants.get(("System", "SS58Prefix"))
        return {
            "existential_deposit": decode_le_int(constant_bytes(existential_deposit)) if existential_deposit is not None else None,
            "ss58_prefix": decode_le_int(constant_bytes(ss58_prefix)) if ss58_prefix is not None else None,
        }

    def decode_type_lookup(self, metadata: str) -> List[TypeDefinition]:
        registry = self._decode(metadata).get("types") or {}
        definitions = []
        for entry in registry.get("types") or []:
            type_info = entry.get("type") or {}
            variant = (type_info.get("def") or {}).get("variant")
            variants = None
            if variant is not None:
                variants = [(v["name"], v["index"]) for v in variant.get("variants") or []]
            definitions.append(TypeDefinition(path=list(type_info.get("path") or []), variants=variants))
        return definitions


@dataclass
class DerivedToken:
    """An orml token found in a chain's metadata."""
    symbol: str
    decimals: Optional[int]
    state_key: str


@dataclass
class ChainMetadata:
    """Everything extracted from one successful batch against a chain rpc."""
    genesis_hash: str
    chain_name: Optional[str]
    spec_name: Optional[str]
    spec_version: Optional[str]
    impl_name: Optional[str]
    ss58_prefix: int
    existential_deposit: Optional[int]
    tokens_currency_id_index: Optional[int]
    native_symbol: Optional[str]
    native_decimals: Optional[int]
    derived_tokens: List[DerivedToken] = field(default_factory=list)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


class ChainMetadataExtractor:
    """
    Fetches runtime data from a chain's healthy rpcs and derives its tokens.

    Rpcs are tried one at a time in round-robin order, at most twice each.
    """

    def __init__(
        self,
        client_factory: Callable[[str], SubstrateRpcClient],
        timeout: float,
        decoder: Optional[MetadataDecoder] = None,
        hash_key: Callable[[bytes], bytes] = twox64_concat,
        overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.client_factory = client_factory
        self.timeout = timeout
        self.decoder = decoder or ScaleMetadataDecoder()
        self.hash_key = hash_key
        self.overrides = {**TOKEN_OVERRIDES, **(overrides or {})}

    async def extract(self, chain_id: str, healthy_urls: Sequence[str]) -> Optional[ChainMetadata]:
        """
        Extract chain metadata, retrying across healthy rpcs.

        Returns:
            The decoded bundle, or None once 2 * len(healthy_urls) attempts have failed
        """
        max_attempts = len(healthy_urls) * 2
        for attempt in range(1, max_attempts + 1):
            url = healthy_urls[(attempt - 1) % len(healthy_urls)]
            client = self.client_factory(url)
            try:
                results = await send_with_timeout(client, CHAIN_DATA_BATCH, self.timeout)
                return await asyncio.to_thread(self.decode, chain_id, *results)
            except ENDPOINT_ERRORS + (MetadataDecodeError, KeyError, TypeError) as e:
                logger.warning(f"[Chain {chain_id}] attempt {attempt} failed {e!r}")
            finally:
                await disconnect(client)

        logger.warning(f"[Chain {chain_id}] all attempts ({max_attempts}) failed")
        return None

    def decode(
        self,
        chain_id: str,
        genesis_hash: str,
        runtime_version: Dict[str, Any],
        metadata: str,
        chain_name: Optional[str],
        properties: Optional[Dict[str, Any]],
    ) -> ChainMetadata:
        """Turn the raw rpc batch results into a ChainMetadata bundle."""
        properties = properties or {}
        constants = self.decoder.decode_constants(metadata)
        lookup = self.decoder.decode_type_lookup(metadata)
        override = self.overrides.get(chain_id) or {}

        currency_index = self._currency_id_index(lookup)
        if "currency_id_index" in override:
            currency_index = override["currency_id_index"]

        symbol_indexes = self._token_symbol_indexes(lookup)
        if "symbol_indexes" in override:
            symbol_indexes = dict(override["symbol_indexes"])
        state_keys = {
            symbol: "0x" + self.hash_key(bytes([currency_index or 0, index])).hex()
            for symbol, index in symbol_indexes.items()
        }
        state_keys.update(override.get("state_keys") or {})

        raw_symbols = override.get("symbols") or properties.get("tokenSymbol")
        symbols = _as_list(raw_symbols)
        decimals = _as_list(override.get("decimals") or properties.get("tokenDecimals"))

        # a single (non-list) symbol means the chain only has its native token
        derived_tokens = [] if not isinstance(raw_symbols, (list, tuple)) else [
            DerivedToken(
                symbol=symbol,
                decimals=decimals[index] if index < len(decimals) else None,
                state_key=state_keys[symbol],
            )
            for index, symbol in enumerate(symbols)
            if symbol in state_keys
        ]

        ss58_prefix = constants.get("ss58_prefix")
        if not isinstance(ss58_prefix, int):
            ss58_prefix = properties.get("ss58Format")
        if not isinstance(ss58_prefix, int):
            ss58_prefix = DEFAULT_SS58_PREFIX

        runtime_version = runtime_version or {}
        spec_version = runtime_version.get("specVersion")
        return ChainMetadata(
            genesis_hash=genesis_hash,
            chain_name=chain_name,
            spec_name=runtime_version.get("specName"),
            spec_version=None if spec_version is None else str(spec_version),
            impl_name=runtime_version.get("implName"),
            ss58_prefix=ss58_prefix,
            existential_deposit=constants.get("existential_deposit"),
            tokens_currency_id_index=currency_index,
            native_symbol=symbols[0] if symbols else None,
            native_decimals=decimals[0] if decimals else None,
            derived_tokens=derived_tokens,
        )

    @staticmethod
    def _currency_id_index(lookup: List[TypeDefinition]) -> Optional[int]:
        for definition in lookup:
            if definition.name == CURRENCY_ID_TYPE and definition.variants is not None:
                return dict(definition.variants).get(TOKEN_CURRENCY_VARIANT)
        return None

    @staticmethod
    def _token_symbol_indexes(lookup: List[TypeDefinition]) -> Dict[str, int]:
        for definition in lookup:
            if definition.name == TOKEN_SYMBOL_TYPE and definition.variants is not None:
                return dict(definition.variants)
        return {}

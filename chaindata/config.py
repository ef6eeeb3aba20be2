"""Configuration management for the chaindata registry."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Dict, Optional, Any
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "./data/chaindata.db"

    # Config feed (chains, testnet chains, evm networks, tokens)
    chaindata_base_url: str = "https://raw.githubusercontent.com/TalismanSociety/chaindata/main"
    chains_document: str = "chaindata.json"
    testnet_chains_document: str = "testnets-chaindata.json"
    evm_networks_document: str = "evm-networks.json"
    tokens_document: str = "tokens.json"
    feed_timeout: float = 30.0

    # Price feed
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    # Comma-separated list of quote currencies, e.g. "usd,eur"
    coingecko_currencies: str = "usd,eur"

    # RPC probing
    # chain rpcs are set to unhealthy if they don't respond before this timeout (seconds)
    chain_rpc_timeout: float = 120.0
    evm_rpc_timeout: float = 30.0
    process_chains_concurrency: int = 20
    # our wallet extension sends this header with every request, so the probes do too
    rpc_origin: str = "chrome-extension://abpofhpcakjhnpklgodncneklaobppdc"

    # Trigger
    relay_rpc_url: str = "wss://rpc.polkadot.io"
    num_blocks_per_execution: int = 50  # ~5 minutes at 6s / block
    skip_blocks_older_than_ms: int = 86_400_000  # 24 hours
    poll_interval: float = 6.0

    # Per-chain token overrides as a JSON object, merged over the built-in ones
    # Example: {"crust": {"symbols": ["CRU"], "decimals": [12]}}
    token_overrides: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def get_currencies(self) -> List[str]:
        """Parse and return the configured quote currencies."""
        return [c.strip().lower() for c in self.coingecko_currencies.split(",") if c.strip()]

    def get_token_overrides(self) -> Dict[str, Dict[str, Any]]:
        """Parse and return per-chain token overrides."""
        if not self.token_overrides:
            return {}
        try:
            overrides = json.loads(self.token_overrides)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError(f"Invalid token_overrides JSON: {e}")
        if not isinstance(overrides, dict):
            raise ValueError("Invalid token_overrides JSON: expected an object keyed by chain id")
        return overrides

    def feed_url(self, document: str) -> str:
        return f"{self.chaindata_base_url.rstrip('/')}/{document}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from .adapters.explorer_httpx import ETHERSCAN_V2_URL
from .domain.networks import ETHEREUM_MAINNET, SEPOLIA, Network
from .domain.value_types import Source
from .errors import ConfigError

DEFAULT_DATABASE_URL = "sqlite:///cometscan.db"

# network key → env var holding its JSON-RPC endpoint
RPC_URL_VARS: dict[str, str] = {
    SEPOLIA.key: "SEPOLIA_RPC_URL",
    ETHEREUM_MAINNET.key: "MAINNET_RPC_URL",
}


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(slots=True, frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    rpc_urls: Mapping[str, str] = field(default_factory=dict)
    explorer_api_key: str = ""
    explorer_url: str = ETHERSCAN_V2_URL
    source: Source = "rpc"
    start_block: int = 0
    batch_size: int = 9
    poll_interval_s: float = 12.0
    retry_delay_s: float = 5.0
    rate_limit_interval_ms: int = 350
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read settings from the process environment (after loading ``.env``)."""
        if env is None:
            load_dotenv()
            env = os.environ
        source = env.get("INDEXER_SOURCE", "rpc").strip().lower() or "rpc"
        if source not in ("rpc", "explorer"):
            raise ConfigError(f"INDEXER_SOURCE must be 'rpc' or 'explorer', got {source!r}")
        batch = _int(env, "INDEXER_BATCH_SIZE", 9)
        if batch < 1:
            raise ConfigError(f"INDEXER_BATCH_SIZE must be >= 1, got {batch}")
        return cls(
            database_url=env.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
            rpc_urls={k: env[v] for k, v in RPC_URL_VARS.items() if env.get(v)},
            explorer_api_key=env.get("ETHERSCAN_API_KEY", ""),
            explorer_url=env.get("ETHERSCAN_API_URL") or ETHERSCAN_V2_URL,
            source=source,  # type: ignore[arg-type]
            start_block=_int(env, "INDEXER_START_BLOCK", 0),
            batch_size=batch,
            poll_interval_s=float(_int(env, "INDEXER_POLL_INTERVAL", 12)),
            retry_delay_s=float(_int(env, "INDEXER_RETRY_DELAY", 5)),
            rate_limit_interval_ms=_int(env, "RATE_LIMIT_INTERVAL_MS", 350),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def rpc_url_for(self, network: Network) -> str:
        url = self.rpc_urls.get(network.key)
        if not url:
            var = RPC_URL_VARS.get(network.key, f"{network.key}_RPC_URL")
            raise ConfigError(f"missing RPC endpoint for {network.key}: set {var}")
        return url

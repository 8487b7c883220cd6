"""
TOML-based configuration for Custodia.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from custodia_core.config import load_config
    cfg = load_config("custodia.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class NodeConfig:
    """Blockchain node connection."""
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 1                   # expected network; mismatch only warns
    timeout_seconds: float = 30.0       # per JSON-RPC round trip
    read_retries: int = 3               # attempts for read-only calls (>= 1)
    retry_backoff_seconds: float = 0.5


@dataclass
class TokenConfig:
    """The ERC-20 token this service manages."""
    address: str = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    default_symbol: str = "USDT"        # used when symbol() fails


@dataclass
class TransferConfig:
    """Transaction construction and confirmation."""
    confirmations: int = 1
    confirm_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    priority_fee_gwei: float = 1.0
    gas_multiplier: float = 1.2


@dataclass
class APIConfig:
    """Local HTTP surface."""
    host: str = "127.0.0.1"
    port: int = 8787
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 60          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 5 * 1024 * 1024


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class CustodiaConfig:
    """Top-level configuration container."""
    node: NodeConfig = field(default_factory=NodeConfig)
    token: TokenConfig = field(default_factory=TokenConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> CustodiaConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        CUSTODIA_RPC_URL        -> node.rpc_url
        CUSTODIA_CHAIN_ID       -> node.chain_id
        CUSTODIA_TOKEN_ADDRESS  -> token.address
        CUSTODIA_DEFAULT_SYMBOL -> token.default_symbol
        CUSTODIA_HOST           -> api.host
        CUSTODIA_PORT           -> api.port
        CUSTODIA_API_KEY        -> api.api_key
        CUSTODIA_CORS_ORIGINS   -> api.cors_origins  (comma-separated)
        CUSTODIA_LOG_LEVEL      -> logging.level
        CUSTODIA_LOG_FMT        -> logging.format
    """
    cfg = CustodiaConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("node", cfg.node),
                ("token", cfg.token),
                ("transfer", cfg.transfer),
                ("api", cfg.api),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("CUSTODIA_RPC_URL"):
        cfg.node.rpc_url = v
    if v := os.environ.get("CUSTODIA_CHAIN_ID"):
        cfg.node.chain_id = int(v)
    if v := os.environ.get("CUSTODIA_TOKEN_ADDRESS"):
        cfg.token.address = v.strip()
    if v := os.environ.get("CUSTODIA_DEFAULT_SYMBOL"):
        cfg.token.default_symbol = v
    if v := os.environ.get("CUSTODIA_HOST"):
        cfg.api.host = v
    if v := os.environ.get("CUSTODIA_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("CUSTODIA_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("CUSTODIA_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("CUSTODIA_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("CUSTODIA_LOG_FMT"):
        cfg.logging.format = v

    return cfg

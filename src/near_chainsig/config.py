"""
Configuration management for near-chainsig.

Provides centralized configuration for:
- The NEAR network hosting the wallet session and the MPC contract
- Destination EVM chain presets
- MPC signature request parameters
- Gas defaults for fee-market transactions
- Outcome polling and logging
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# Default attached gas for a FunctionCall action (30 Tgas)
DEFAULT_FUNCTION_CALL_GAS = "30000000000000"
DEFAULT_FUNCTION_CALL_DEPOSIT = "0"


@dataclass
class NearNetworkConfig:
    """Configuration for the NEAR network the session lives on."""
    network_id: str = "testnet"
    node_url: str = "https://rpc.testnet.near.org"
    # Contract the wallet creates a function-call access key for on sign-in
    create_access_key_for: str = ""


@dataclass
class EvmChainConfig:
    """Configuration for a destination EVM chain."""
    chain_id: int
    name: str
    rpc_url: str


@dataclass
class MPCConfig:
    """Parameters of the `sign` call on the MPC contract."""
    contract_id: str = "v1.signer-prod.testnet"
    sign_method: str = "sign"
    public_key_method: str = "public_key"
    # 250 Tgas; the signer yields until the MPC network responds
    sign_gas: str = "250000000000000"
    sign_deposit: str = "1"
    key_version: int = 0


@dataclass
class GasConfig:
    """Gas defaults for EIP-1559 payloads."""
    default_gas_limit: int = 50_000
    default_priority_fee_gwei: Decimal = Decimal("1.5")

    @property
    def default_priority_fee_wei(self) -> int:
        return int(self.default_priority_fee_gwei * 10**9)


@dataclass
class PollingConfig:
    """Outcome polling on the NEAR side."""
    outcome_poll_interval_seconds: float = 1.0
    wait_until: str = "FINAL"


@dataclass
class LoggingConfig:
    """Configuration for pipeline operation logging."""
    rpc_call_level: str = "DEBUG"
    operation_level: str = "INFO"
    error_level: str = "ERROR"

    mask_addresses: bool = False
    log_gas_prices: bool = True
    log_rpc_latency: bool = True


@dataclass
class ChainSigConfig:
    """
    Master configuration for near-chainsig.

    Supports loading from environment variables with prefix CHAINSIG_.
    """
    near: NearNetworkConfig = field(default_factory=NearNetworkConfig)
    chains: Dict[str, EvmChainConfig] = field(default_factory=dict)
    mpc: MPCConfig = field(default_factory=MPCConfig)
    gas: GasConfig = field(default_factory=GasConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    default_chain: str = "ethereum_sepolia"
    http_timeout_seconds: float = 30.0

    def get_chain_config(self, chain: str) -> EvmChainConfig:
        """Get configuration for a specific chain."""
        if chain not in self.chains:
            raise ValueError(f"Unknown chain: {chain}")
        return self.chains[chain]


def _get_env(key: str, default: Any = None, prefix: str = "CHAINSIG_") -> Any:
    """Get environment variable with prefix."""
    return os.getenv(f"{prefix}{key}", default)


def _build_chain_config(chain_id: int, name: str, default_rpc: str) -> EvmChainConfig:
    """Build an EvmChainConfig with an RPC URL override from the environment."""
    rpc_url = _get_env(f"{name.upper()}_RPC_URL") or default_rpc
    return EvmChainConfig(chain_id=chain_id, name=name, rpc_url=rpc_url)


# (name, chain id, public RPC)
CHAIN_PRESETS = [
    ("ethereum_sepolia", 11155111, "https://ethereum-sepolia-rpc.publicnode.com"),
    ("ethereum", 1, "https://ethereum-rpc.publicnode.com"),
    ("base_sepolia", 84532, "https://sepolia.base.org"),
    ("base", 8453, "https://mainnet.base.org"),
    ("polygon_amoy", 80002, "https://rpc-amoy.polygon.technology"),
    ("arbitrum_sepolia", 421614, "https://sepolia-rollup.arbitrum.io/rpc"),
]


def build_default_config() -> ChainSigConfig:
    """Build default configuration with all preset chains."""
    chains = {
        name: _build_chain_config(chain_id, name, default_rpc)
        for name, chain_id, default_rpc in CHAIN_PRESETS
    }

    network_id = _get_env("NEAR_NETWORK", "testnet")
    near = NearNetworkConfig(
        network_id=network_id,
        node_url=_get_env("NEAR_NODE_URL", f"https://rpc.{network_id}.near.org"),
        create_access_key_for=_get_env("CREATE_ACCESS_KEY_FOR", ""),
    )

    mpc = MPCConfig(
        contract_id=_get_env(
            "MPC_CONTRACT_ID",
            "v1.signer" if network_id == "mainnet" else "v1.signer-prod.testnet",
        ),
    )

    return ChainSigConfig(
        near=near,
        chains=chains,
        mpc=mpc,
        default_chain=_get_env("DEFAULT_CHAIN", "ethereum_sepolia"),
        http_timeout_seconds=float(_get_env("HTTP_TIMEOUT_SECONDS", "30")),
    )


# Global configuration instance
_global_config: Optional[ChainSigConfig] = None


def get_config() -> ChainSigConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = build_default_config()
    return _global_config


def set_config(config: ChainSigConfig) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def get_chain_config(chain: str) -> EvmChainConfig:
    """Convenience function to get chain configuration."""
    return get_config().get_chain_config(chain)

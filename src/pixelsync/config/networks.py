"""
Known networks and where the canvas contract lives on each.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pixelsync.errors import ConfigurationError


@dataclass(frozen=True)
class NetworkConfig:
    chain_id: int
    name: str
    contract_address: str
    block_explorer_url: str
    rpc_url: str
    ws_url: str = ""
    fallback_rpc_urls: List[str] = field(default_factory=list)


NETWORK_CONFIGS: Dict[int, NetworkConfig] = {
    1: NetworkConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        contract_address="",  # not deployed yet
        block_explorer_url="https://etherscan.io",
        rpc_url=os.getenv("PIXELSYNC_MAINNET_RPC_URL", ""),
        ws_url=os.getenv("PIXELSYNC_MAINNET_WS_URL", ""),
        fallback_rpc_urls=["https://eth.llamarpc.com", "https://1rpc.io/eth"],
    ),
    11155111: NetworkConfig(
        chain_id=11155111,
        name="Sepolia Testnet",
        contract_address="0x98cb468f12e856FAf2320e2B3d2969B97d59Eb91",
        block_explorer_url="https://sepolia.etherscan.io",
        rpc_url=os.getenv("PIXELSYNC_SEPOLIA_RPC_URL", ""),
        ws_url=os.getenv("PIXELSYNC_SEPOLIA_WS_URL", ""),
        fallback_rpc_urls=[
            "https://eth-sepolia.public.blastapi.io",
            "https://rpc.sepolia.org",
            "https://1rpc.io/sepolia",
        ],
    ),
    31337: NetworkConfig(
        chain_id=31337,
        name="Localhost",
        contract_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",  # first Hardhat deployment
        block_explorer_url="",
        rpc_url="http://localhost:8545",
        ws_url="ws://localhost:8545",
    ),
}

DEFAULT_CHAIN_ID = 11155111


def get_network(chain_id: int) -> NetworkConfig:
    network = NETWORK_CONFIGS.get(chain_id)
    if network is None:
        raise ConfigurationError(f"Network configuration not found for chain ID: {chain_id}")
    return network


def resolve_rpc_url(chain_id: int, override: Optional[str] = None) -> str:
    """Explicit override, then the network's configured URL, then its first public fallback."""
    if override and override.strip():
        return override.strip()
    network = get_network(chain_id)
    if network.rpc_url.strip():
        return network.rpc_url.strip()
    if network.fallback_rpc_urls:
        return network.fallback_rpc_urls[0]
    raise ConfigurationError(f"No valid RPC URL found for chain ID: {chain_id}")


def resolve_ws_url(chain_id: int, rpc_url: str, override: Optional[str] = None) -> str:
    if override and override.strip():
        return override.strip()
    network = get_network(chain_id)
    if network.ws_url.strip():
        return network.ws_url.strip()
    # Most providers serve websockets on the same host
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url

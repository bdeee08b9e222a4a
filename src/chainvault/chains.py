"""Supported EVM chains.

Three chains are supported:
- Ethereum mainnet (1)
- Base (8453) - identity registry deployed
- Avalanche C-Chain (43114) - identity registry deployed

The table is a process-wide constant. RPC URLs and registry addresses can be
overridden through settings, which yields a new (still frozen) config.
"""

from dataclasses import dataclass, replace
from typing import Optional

from chainvault.config import Settings, get_settings
from chainvault.errors import UnknownChainError


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for an EVM chain."""

    key: str                 # ethereum, base, avalanche
    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str
    registry_address: Optional[str] = None  # ERC-8004 identity registry
    decimals: int = 18

    @property
    def explorer_tx_base(self) -> str:
        """Prefix for transaction links (hash is appended)."""
        return f"{self.explorer_url}/tx/"

    def tx_url(self, tx_hash: str) -> str:
        """Explorer link for a transaction hash."""
        return f"{self.explorer_tx_base}{tx_hash}"

    def address_url(self, address: str) -> str:
        """Explorer link for an address."""
        return f"{self.explorer_url}/address/{address}"

    @property
    def supports_registration(self) -> bool:
        return self.registry_address is not None


# ======================
# Chain Configurations
# ======================

CHAINS: dict[str, ChainConfig] = {
    "ethereum": ChainConfig(
        key="ethereum",
        name="Ethereum",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        native_symbol="ETH",
        explorer_url="https://etherscan.io",
    ),
    "base": ChainConfig(
        key="base",
        name="Base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH",
        explorer_url="https://basescan.org",
        registry_address="0x63a3d64DfA31509DE763f6939BF586dc4C06d1D5",
    ),
    "avalanche": ChainConfig(
        key="avalanche",
        name="Avalanche",
        chain_id=43114,
        rpc_url="https://api.avax.network/ext/bc/C/rpc",
        native_symbol="AVAX",
        explorer_url="https://snowtrace.io",
        registry_address="0x0161c45ad09Fd8dEA6F4A7396fafa3ca1Cffc1b5",
    ),
}

# Chains carrying the identity registry, in display order
REGISTRATION_CHAINS: tuple[str, ...] = ("base", "avalanche")


def get_chain(key: str, settings: Optional[Settings] = None) -> ChainConfig:
    """Get a chain by key, applying RPC/registry overrides from settings.

    Raises:
        UnknownChainError: If the key is not a supported chain
    """
    normalized = key.strip().lower()
    if normalized not in CHAINS:
        raise UnknownChainError(
            f"Unknown chain '{key}'. Available: {list_chain_keys()}"
        )

    chain = CHAINS[normalized]
    settings = settings or get_settings()

    rpc_url = settings.get_rpc_url(normalized) or chain.rpc_url
    registry = settings.get_registry_override(normalized) or chain.registry_address
    if rpc_url != chain.rpc_url or registry != chain.registry_address:
        chain = replace(chain, rpc_url=rpc_url, registry_address=registry)
    return chain


def get_chain_by_id(chain_id: int, settings: Optional[Settings] = None) -> ChainConfig:
    """Get a chain by its numeric EIP-155 id."""
    for key, chain in CHAINS.items():
        if chain.chain_id == chain_id:
            return get_chain(key, settings)
    raise UnknownChainError(f"Unknown chain id {chain_id}")


def list_chain_keys() -> list[str]:
    """Return the keys of all supported chains."""
    return list(CHAINS.keys())


def all_chains(settings: Optional[Settings] = None) -> list[ChainConfig]:
    """Return every supported chain with settings overrides applied."""
    return [get_chain(key, settings) for key in CHAINS]

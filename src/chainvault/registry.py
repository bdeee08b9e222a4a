"""Read-only queries against the identity registry and chain health checks."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from chainvault import abi
from chainvault.chains import ChainConfig
from chainvault.errors import InvalidInputError, RpcError
from chainvault.rpc import RpcClient
from chainvault.utils.cancel import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class ChainHealth:
    """Connectivity report for one chain endpoint."""

    chain: str
    reachable: bool
    chain_id: Optional[int] = None
    block_number: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class RegistryReader:
    """Reads agent registrations and registry liveness."""

    def __init__(self, rpc: RpcClient):
        self.rpc = rpc

    @staticmethod
    def _registry(chain: ChainConfig) -> str:
        if not chain.registry_address:
            raise InvalidInputError(f"No identity registry on {chain.key}")
        return chain.registry_address

    async def get_agent(
        self, chain: ChainConfig, address: str, cancel: Optional[CancelToken] = None
    ) -> Optional[abi.AgentRecord]:
        """Look up an address in the registry.

        Returns:
            AgentRecord, or None when the address is not registered

        Raises:
            RpcError: If the read fails
        """
        output = await self.rpc.eth_call(
            chain.rpc_url, self._registry(chain), abi.encode_get_agent(address), cancel=cancel
        )
        return abi.decode_agent(output)

    async def get_agent_count(
        self, chain: ChainConfig, cancel: Optional[CancelToken] = None
    ) -> Optional[int]:
        """Total registrations on a chain, or None if the read fails."""
        try:
            output = await self.rpc.eth_call(
                chain.rpc_url, self._registry(chain), abi.encode_call("getTotalAgents()"),
                cancel=cancel,
            )
        except RpcError as e:
            logger.warning(f"getTotalAgents failed on {chain.key}: {e}")
            return None
        return abi.decode_uint256(output)

    async def is_contract_alive(
        self, chain: ChainConfig, cancel: Optional[CancelToken] = None
    ) -> bool:
        """True if the registry address has deployed code."""
        try:
            code = await self.rpc.get_code(chain.rpc_url, self._registry(chain), cancel=cancel)
        except RpcError as e:
            logger.warning(f"eth_getCode failed on {chain.key}: {e}")
            return False
        return code not in ("0x", "0x0")

    async def get_block_number(
        self, chain: ChainConfig, cancel: Optional[CancelToken] = None
    ) -> Optional[int]:
        try:
            return await self.rpc.block_number(chain.rpc_url, cancel=cancel)
        except RpcError as e:
            logger.warning(f"eth_blockNumber failed on {chain.key}: {e}")
            return None

    async def check_chain_connectivity(
        self, chain: ChainConfig, cancel: Optional[CancelToken] = None
    ) -> ChainHealth:
        """Probe an endpoint: chain id must match and a block number must be served."""
        started = time.monotonic()
        try:
            chain_id, block = await asyncio.gather(
                self.rpc.chain_id(chain.rpc_url, cancel=cancel),
                self.rpc.block_number(chain.rpc_url, cancel=cancel),
            )
        except RpcError as e:
            return ChainHealth(chain=chain.key, reachable=False, error=str(e))

        latency = (time.monotonic() - started) * 1000
        if chain_id != chain.chain_id:
            return ChainHealth(
                chain=chain.key,
                reachable=False,
                block_number=block,
                latency_ms=latency,
                error=f"Endpoint serves chain {chain_id}, expected {chain.chain_id}",
            )
        return ChainHealth(
            chain=chain.key,
            reachable=True,
            chain_id=chain_id,
            block_number=block,
            latency_ms=latency,
        )

    async def check_all(
        self, chains: Sequence[ChainConfig], cancel: Optional[CancelToken] = None
    ) -> list[ChainHealth]:
        return list(await asyncio.gather(
            *(self.check_chain_connectivity(chain, cancel) for chain in chains)
        ))

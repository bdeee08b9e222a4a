"""Multi-chain balance aggregation.

One ``eth_getBalance`` per chain and one ``balanceOf`` per token, all issued
concurrently. A failed read never fails the batch: it yields a zero balance
with ``error`` set.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from eth_utils import is_hex_address, to_checksum_address

from chainvault import abi
from chainvault.chains import ChainConfig, all_chains, get_chain
from chainvault.config import Settings, get_settings
from chainvault.errors import ChainVaultError, InvalidAddressError, OperationCancelled, RpcError
from chainvault.rpc import CallClass, RpcClient
from chainvault.tokens import FEATURED_TOKENS, TokenInfo, format_token_amount, native_token
from chainvault.utils.cancel import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class TokenBalance:
    """Balance of one token for one address."""

    token: TokenInfo
    balance_raw: int = 0
    balance_formatted: str = "0"
    error: Optional[str] = None

    @property
    def symbol(self) -> str:
        return self.token.symbol

    @property
    def chain(self) -> str:
        return self.token.chain

    @property
    def contract_address(self) -> Optional[str]:
        return self.token.contract_address

    @property
    def ok(self) -> bool:
        return self.error is None


def _require_address(address: str) -> str:
    if not isinstance(address, str) or not is_hex_address(address):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return to_checksum_address(address)


class BalanceAggregator:
    """Reads native and token balances across chains."""

    def __init__(self, rpc: RpcClient, settings: Optional[Settings] = None):
        self.rpc = rpc
        self.settings = settings or get_settings()

    async def fetch_native_balance(
        self, chain: ChainConfig, address: str, cancel: Optional[CancelToken] = None
    ) -> TokenBalance:
        """Native coin balance on one chain."""
        address = _require_address(address)
        token = native_token(chain)
        try:
            wei = await self.rpc.get_balance(chain.rpc_url, address, cancel=cancel)
        except RpcError as e:
            logger.warning(f"Native balance read failed on {chain.key}: {e}")
            return TokenBalance(token=token, error=str(e))
        return TokenBalance(
            token=token,
            balance_raw=wei,
            balance_formatted=format_token_amount(wei, token.decimals),
        )

    async def fetch_token_balance(
        self, token: TokenInfo, address: str, cancel: Optional[CancelToken] = None
    ) -> TokenBalance:
        """ERC-20 balance via ``balanceOf``. Empty ``0x`` output reads as zero."""
        address = _require_address(address)
        try:
            chain = get_chain(token.chain, self.settings)
            if token.is_native:
                return await self.fetch_native_balance(chain, address, cancel)
            output = await self.rpc.eth_call(
                chain.rpc_url,
                token.contract_address,
                abi.encode_balance_of(address),
                call_class=CallClass.READ,
                cancel=cancel,
            )
        except OperationCancelled:
            raise
        except ChainVaultError as e:
            logger.warning(f"{token.symbol} balance read failed on {token.chain}: {e}")
            return TokenBalance(token=token, error=str(e))

        raw = abi.decode_uint256(output)
        return TokenBalance(
            token=token,
            balance_raw=raw,
            balance_formatted=format_token_amount(raw, token.decimals),
        )

    async def fetch_all(
        self,
        address: str,
        tokens: Optional[Sequence[TokenInfo]] = None,
        chains: Optional[Sequence[ChainConfig]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> list[TokenBalance]:
        """Fetch native balances of all chains plus the given tokens concurrently.

        Args:
            address: Account to query
            tokens: ERC-20 tokens (featured tokens when None)
            chains: Chains for native balances (all supported when None)
            cancel: Optional cancellation token

        Returns:
            One TokenBalance per native coin and token. Order is not guaranteed.
        """
        address = _require_address(address)
        chains = list(chains) if chains is not None else all_chains(self.settings)
        tokens = list(tokens) if tokens is not None else list(FEATURED_TOKENS)

        tasks = [self.fetch_native_balance(chain, address, cancel) for chain in chains]
        tasks += [self.fetch_token_balance(token, address, cancel) for token in tokens]

        results = await asyncio.gather(*tasks)
        failed = sum(1 for r in results if r.error)
        if failed:
            logger.warning(f"{failed}/{len(results)} balance reads failed for {address}")
        return list(results)

    async def fetch_token_info(
        self, chain: ChainConfig, contract_address: str, cancel: Optional[CancelToken] = None
    ) -> Optional[TokenInfo]:
        """Discover an ERC-20 token's metadata.

        name, symbol and decimals are read concurrently. Returns None if the
        reads fail or the contract reports no symbol.
        """
        contract_address = _require_address(contract_address)
        try:
            name_hex, symbol_hex, decimals_hex = await asyncio.gather(
                self.rpc.eth_call(
                    chain.rpc_url, contract_address, abi.encode_call("name()"),
                    call_class=CallClass.READ, cancel=cancel,
                ),
                self.rpc.eth_call(
                    chain.rpc_url, contract_address, abi.encode_call("symbol()"),
                    call_class=CallClass.READ, cancel=cancel,
                ),
                self.rpc.eth_call(
                    chain.rpc_url, contract_address, abi.encode_call("decimals()"),
                    call_class=CallClass.READ, cancel=cancel,
                ),
            )
        except RpcError as e:
            logger.warning(f"Token info read failed for {contract_address} on {chain.key}: {e}")
            return None

        symbol = abi.decode_string(symbol_hex)
        if not symbol:
            return None
        name = abi.decode_string(name_hex) or symbol

        return TokenInfo(
            contract_address=contract_address,
            chain=chain.key,
            symbol=symbol,
            name=name,
            decimals=abi.decode_uint8(decimals_hex),
        )

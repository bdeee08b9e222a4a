"""Gas estimation.

EIP-1559 fees are derived from ``eth_feeHistory`` and are preferred; any
failure there falls back to a legacy ``eth_gasPrice`` quote. The gas limit is
the node's estimate plus a safety margin.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from chainvault.chains import ChainConfig
from chainvault.config import Settings, get_settings
from chainvault.errors import RpcError
from chainvault.rpc import FeeHistory, RpcClient
from chainvault.tokens import format_token_amount
from chainvault.utils.cancel import CancelToken

logger = logging.getLogger(__name__)

GWEI = 10**9


@dataclass
class GasEstimate:
    """Gas limit and fee quote for one transaction."""

    gas_limit: int
    is_eip1559: bool
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def estimated_fee_wei(self) -> int:
        """Worst-case fee: gas limit times the per-gas price ceiling."""
        price = self.max_fee_per_gas if self.is_eip1559 else self.gas_price
        return self.gas_limit * (price or 0)

    def tx_fields(self) -> dict:
        """Fee fields for a transaction dict."""
        if self.is_eip1559:
            return {
                "gas": self.gas_limit,
                "maxFeePerGas": self.max_fee_per_gas,
                "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
                "type": 2,
            }
        return {"gas": self.gas_limit, "gasPrice": self.gas_price}


@dataclass
class FeeQuote:
    """Per-gas pricing without a gas limit."""

    is_eip1559: bool
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


def apply_gas_buffer(gas: int, percent: int = 20) -> int:
    """Add a percentage safety margin to a gas estimate."""
    return gas * (100 + percent) // 100


def compute_eip1559_fees(history: FeeHistory, min_priority_fee: int) -> tuple[int, int]:
    """Compute (max_fee_per_gas, max_priority_fee_per_gas) from fee history.

    The priority fee is the mean of the first reward percentile across the
    window, floored at *min_priority_fee* when it comes out as zero. The max
    fee allows the base fee to double before the transaction is priced out.

    Raises:
        ValueError: If the history carries no base fee
    """
    if not history.base_fee_per_gas:
        raise ValueError("fee history has no base fee")

    rewards = [row[0] for row in history.reward if row]
    priority = sum(rewards) // len(rewards) if rewards else 0
    if priority == 0:
        priority = min_priority_fee

    max_fee = 2 * history.latest_base_fee + priority
    return max_fee, priority


def format_wei(wei: int, decimals: int = 6) -> str:
    """Format a wei amount as a native-unit string with at most *decimals* places."""
    return format_token_amount(wei, 18, max_decimals=decimals)


class GasEstimator:
    """Estimates gas limits and fees for a chain."""

    def __init__(self, rpc: RpcClient, settings: Optional[Settings] = None):
        self.rpc = rpc
        self.settings = settings or get_settings()

    async def estimate(
        self,
        chain: ChainConfig,
        from_address: str,
        to: str,
        value: int = 0,
        data: str = "0x",
        cancel: Optional[CancelToken] = None,
    ) -> GasEstimate:
        """Estimate gas limit and fees for a call.

        Args:
            chain: Target chain
            from_address: Sender
            to: Recipient or contract
            value: Native value in wei
            data: Call data

        Returns:
            GasEstimate with a buffered limit

        Raises:
            RpcError: If eth_estimateGas fails (e.g. the call would revert)
        """
        tx = {"from": from_address, "to": to, "value": hex(value), "data": data}
        raw_limit = await self.rpc.estimate_gas(chain.rpc_url, tx, cancel)
        gas_limit = apply_gas_buffer(raw_limit, self.settings.gas_limit_buffer_percent)

        quote = await self.quote_fees(chain, cancel)
        estimate = GasEstimate(
            gas_limit=gas_limit,
            is_eip1559=quote.is_eip1559,
            gas_price=quote.gas_price,
            max_fee_per_gas=quote.max_fee_per_gas,
            max_priority_fee_per_gas=quote.max_priority_fee_per_gas,
        )
        logger.debug(
            f"Gas estimate on {chain.key}: limit={gas_limit} (raw {raw_limit}) "
            f"fee={estimate.estimated_fee_wei} eip1559={estimate.is_eip1559}"
        )
        return estimate

    async def quote_fees(self, chain: ChainConfig, cancel: Optional[CancelToken] = None) -> FeeQuote:
        """Quote per-gas fees, preferring EIP-1559."""
        try:
            history = await self.rpc.fee_history(
                chain.rpc_url,
                self.settings.fee_history_blocks,
                "latest",
                [self.settings.fee_history_percentile],
                cancel,
            )
            max_fee, priority = compute_eip1559_fees(history, self.settings.min_priority_fee_wei)
            return FeeQuote(
                is_eip1559=True,
                max_fee_per_gas=max_fee,
                max_priority_fee_per_gas=priority,
            )
        except (RpcError, ValueError) as e:
            logger.warning(f"Fee history unavailable on {chain.key}, using legacy gas price: {e}")

        gas_price = await self.rpc.gas_price(chain.rpc_url, cancel)
        return FeeQuote(is_eip1559=False, gas_price=gas_price)

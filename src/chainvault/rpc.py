"""JSON-RPC 2.0 client for EVM nodes.

One request object per HTTP POST. Every call belongs to a call class that
sets its timeout (connect timeout plus a total wall-clock deadline). Results
are validated here so that callers never see raw, untyped node output.

No retries happen at this layer; the transaction engine decides what is safe
to re-send.
"""

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chainvault.config import Settings, get_settings
from chainvault.errors import (
    RpcDecodeError,
    RpcRemoteError,
    RpcTimeoutError,
    RpcTransportError,
)
from chainvault.utils.cancel import CancelToken, run_cancellable

logger = logging.getLogger(__name__)


class CallClass(str, Enum):
    """Timeout class of an RPC call."""

    READ = "read"          # balances, token metadata
    DEFAULT = "default"    # contract reads, receipts
    WRITE = "write"        # gas, nonce, broadcast


def parse_quantity(value: Any, field: str = "result") -> int:
    """Parse a JSON-RPC hex quantity (``"0x1a"``) into an int.

    Raises:
        RpcDecodeError: If the value is not a hex string
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise RpcDecodeError(f"Expected hex quantity for {field}, got {value!r}")
    if value in ("0x", "0X"):
        return 0
    try:
        return int(value, 16)
    except ValueError:
        raise RpcDecodeError(f"Malformed hex quantity for {field}: {value!r}") from None


def _parse_hex_data(value: Any, field: str = "result") -> str:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise RpcDecodeError(f"Expected hex data for {field}, got {value!r}")
    try:
        bytes.fromhex(value[2:])
    except ValueError:
        raise RpcDecodeError(f"Malformed hex data for {field}") from None
    return value.lower()


class FeeHistory(BaseModel):
    """Validated ``eth_feeHistory`` result."""

    model_config = ConfigDict(populate_by_name=True)

    oldest_block: int = Field(alias="oldestBlock")
    base_fee_per_gas: list[int] = Field(alias="baseFeePerGas")
    gas_used_ratio: list[float] = Field(default_factory=list, alias="gasUsedRatio")
    reward: list[list[int]] = Field(default_factory=list)

    @field_validator("oldest_block", mode="before")
    @classmethod
    def _parse_block(cls, v):
        return parse_quantity(v, "oldestBlock")

    @field_validator("base_fee_per_gas", mode="before")
    @classmethod
    def _parse_base_fees(cls, v):
        if not isinstance(v, list):
            raise RpcDecodeError(f"Expected a list for baseFeePerGas, got {v!r}")
        return [parse_quantity(x, "baseFeePerGas") for x in v]

    @field_validator("reward", mode="before")
    @classmethod
    def _parse_reward(cls, v):
        if v is None:
            return []
        if not isinstance(v, list) or not all(isinstance(row, list) for row in v):
            raise RpcDecodeError(f"Expected a list of lists for reward, got {v!r}")
        return [[parse_quantity(x, "reward") for x in row] for row in v]

    @property
    def latest_base_fee(self) -> int:
        """Base fee of the newest block (last entry is the next block's)."""
        if not self.base_fee_per_gas:
            return 0
        return self.base_fee_per_gas[-1]


class TransactionReceipt(BaseModel):
    """Validated ``eth_getTransactionReceipt`` result."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_hash: str = Field(alias="transactionHash")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    status: Optional[int] = None
    gas_used: Optional[int] = Field(default=None, alias="gasUsed")
    effective_gas_price: Optional[int] = Field(default=None, alias="effectiveGasPrice")
    contract_address: Optional[str] = Field(default=None, alias="contractAddress")

    @field_validator("block_number", "status", "gas_used", "effective_gas_price", mode="before")
    @classmethod
    def _parse_optional_quantity(cls, v):
        if v is None:
            return None
        return parse_quantity(v, "receipt")

    @property
    def is_mined(self) -> bool:
        return self.block_number is not None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class RpcClient:
    """Async JSON-RPC client shared by all chain components.

    Example:
        async with RpcClient() as rpc:
            wei = await rpc.get_balance(chain.rpc_url, address)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            settings: Settings providing call-class timeouts
            transport: Optional httpx transport (mocked in tests)
        """
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def timeout_for(self, call_class: CallClass) -> float:
        """Total deadline in seconds for a call class."""
        return {
            CallClass.READ: self.settings.rpc_read_timeout,
            CallClass.DEFAULT: self.settings.rpc_default_timeout,
            CallClass.WRITE: self.settings.rpc_write_timeout,
        }[call_class]

    async def call(
        self,
        endpoint: str,
        method: str,
        params: Optional[Sequence[Any]] = None,
        call_class: CallClass = CallClass.DEFAULT,
        cancel: Optional[CancelToken] = None,
    ) -> Any:
        """Send one JSON-RPC request and return its ``result``.

        Args:
            endpoint: Node URL
            method: JSON-RPC method name
            params: Positional parameters
            call_class: Timeout class
            cancel: Optional cancellation token

        Returns:
            The raw ``result`` member of the response

        Raises:
            RpcRemoteError: Node returned a JSON-RPC error object
            RpcTimeoutError: Deadline exceeded
            RpcTransportError: Connection or HTTP failure
            RpcDecodeError: Response was not a JSON-RPC envelope
            OperationCancelled: The token fired
        """
        return await run_cancellable(
            self._call(endpoint, method, list(params or []), call_class),
            cancel,
        )

    async def _call(
        self,
        endpoint: str,
        method: str,
        params: list[Any],
        call_class: CallClass,
    ) -> Any:
        total = self.timeout_for(call_class)
        timeout = httpx.Timeout(total, connect=min(self.settings.rpc_connect_timeout, total))
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(endpoint, json=payload, timeout=timeout),
                timeout=total,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"RPC {method} timed out after {total}s")
            raise RpcTimeoutError(f"{method} timed out after {total}s") from e
        except httpx.HTTPError as e:
            logger.warning(f"RPC {method} transport error: {type(e).__name__}")
            raise RpcTransportError(f"{method} failed: {type(e).__name__}") from e

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                raise RpcTransportError(f"{method} failed: HTTP {response.status_code}") from e
            raise RpcDecodeError(f"{method} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise RpcDecodeError(f"{method} returned a non-object response")

        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                message = str(error.get("message") or "Unknown RPC error")
                code = error.get("code")
            else:
                message, code = str(error), None
            logger.debug(f"RPC {method} error: {message} ({code})")
            raise RpcRemoteError(message, code if isinstance(code, int) else None)

        if response.status_code >= 400:
            raise RpcTransportError(f"{method} failed: HTTP {response.status_code}")

        if "result" not in body:
            raise RpcDecodeError(f"{method} response has no result")

        return body["result"]

    # ======================
    # Typed wrappers
    # ======================

    async def get_balance(
        self, endpoint: str, address: str, block: str = "latest", cancel: Optional[CancelToken] = None
    ) -> int:
        """Native balance in wei."""
        result = await self.call(endpoint, "eth_getBalance", [address, block], CallClass.READ, cancel)
        return parse_quantity(result, "eth_getBalance")

    async def get_transaction_count(
        self, endpoint: str, address: str, block: str = "latest", cancel: Optional[CancelToken] = None
    ) -> int:
        """Account nonce."""
        result = await self.call(
            endpoint, "eth_getTransactionCount", [address, block], CallClass.WRITE, cancel
        )
        return parse_quantity(result, "eth_getTransactionCount")

    async def estimate_gas(
        self, endpoint: str, tx: dict, cancel: Optional[CancelToken] = None
    ) -> int:
        result = await self.call(endpoint, "eth_estimateGas", [tx], CallClass.WRITE, cancel)
        return parse_quantity(result, "eth_estimateGas")

    async def gas_price(self, endpoint: str, cancel: Optional[CancelToken] = None) -> int:
        result = await self.call(endpoint, "eth_gasPrice", [], CallClass.WRITE, cancel)
        return parse_quantity(result, "eth_gasPrice")

    async def fee_history(
        self,
        endpoint: str,
        block_count: int,
        newest_block: str = "latest",
        percentiles: Sequence[float] = (50,),
        cancel: Optional[CancelToken] = None,
    ) -> FeeHistory:
        """Fetch and validate ``eth_feeHistory``."""
        result = await self.call(
            endpoint,
            "eth_feeHistory",
            [hex(block_count), newest_block, list(percentiles)],
            CallClass.WRITE,
            cancel,
        )
        if not isinstance(result, dict):
            raise RpcDecodeError("eth_feeHistory returned a non-object result")
        try:
            return FeeHistory.model_validate(result)
        except ValidationError as e:
            raise RpcDecodeError(f"Malformed eth_feeHistory result: {e.error_count()} errors") from e

    async def send_raw_transaction(
        self, endpoint: str, raw_tx: str, cancel: Optional[CancelToken] = None
    ) -> str:
        """Broadcast a signed transaction and return its hash."""
        result = await self.call(endpoint, "eth_sendRawTransaction", [raw_tx], CallClass.WRITE, cancel)
        tx_hash = _parse_hex_data(result, "eth_sendRawTransaction")
        if len(tx_hash) != 66:
            raise RpcDecodeError("eth_sendRawTransaction returned a malformed hash")
        return tx_hash

    async def get_transaction_receipt(
        self, endpoint: str, tx_hash: str, cancel: Optional[CancelToken] = None
    ) -> Optional[TransactionReceipt]:
        """Receipt of a transaction, or None while it is not mined."""
        result = await self.call(
            endpoint, "eth_getTransactionReceipt", [tx_hash], CallClass.DEFAULT, cancel
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RpcDecodeError("eth_getTransactionReceipt returned a non-object result")
        try:
            return TransactionReceipt.model_validate(result)
        except ValidationError as e:
            raise RpcDecodeError("Malformed transaction receipt") from e

    async def eth_call(
        self,
        endpoint: str,
        to: str,
        data: str,
        block: str = "latest",
        call_class: CallClass = CallClass.DEFAULT,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """Execute a read-only contract call and return the hex output."""
        result = await self.call(
            endpoint, "eth_call", [{"to": to, "data": data}, block], call_class, cancel
        )
        return _parse_hex_data(result, "eth_call")

    async def get_code(
        self, endpoint: str, address: str, block: str = "latest", cancel: Optional[CancelToken] = None
    ) -> str:
        result = await self.call(endpoint, "eth_getCode", [address, block], CallClass.DEFAULT, cancel)
        return _parse_hex_data(result, "eth_getCode")

    async def block_number(self, endpoint: str, cancel: Optional[CancelToken] = None) -> int:
        result = await self.call(endpoint, "eth_blockNumber", [], CallClass.DEFAULT, cancel)
        return parse_quantity(result, "eth_blockNumber")

    async def chain_id(self, endpoint: str, cancel: Optional[CancelToken] = None) -> int:
        result = await self.call(endpoint, "eth_chainId", [], CallClass.DEFAULT, cancel)
        return parse_quantity(result, "eth_chainId")

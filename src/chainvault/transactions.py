"""Transaction engine: build, sign, broadcast and track transactions.

Nonce fetch through broadcast runs under a per-(account, chain) lock so two
sends from the same account never reuse a nonce. The private key is revealed
only inside ``sign_transaction``.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from eth_account import Account as EthAccount
from eth_utils import is_hex_address, to_checksum_address, to_hex

from chainvault import abi
from chainvault.chains import ChainConfig
from chainvault.config import Settings, get_settings
from chainvault.errors import (
    ChainVaultError,
    ErrorKind,
    InvalidAddressError,
    InvalidInputError,
    OperationCancelled,
    RpcError,
    RpcRemoteError,
    RpcTransportError,
)
from chainvault.gas import GasEstimate, GasEstimator
from chainvault.rpc import RpcClient, TransactionReceipt
from chainvault.tokens import TokenInfo, parse_token_amount
from chainvault.utils.cancel import CancelToken, raise_if_cancelled, sleep_cancellable
from chainvault.utils.locks import NonceLock
from chainvault.wallet.account import Account

logger = logging.getLogger(__name__)

ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")


class ReceiptStatus(str, Enum):
    """Outcome of waiting for a receipt."""

    CONFIRMED = "confirmed"   # Mined with status 0x1
    REVERTED = "reverted"     # Mined with status 0x0
    PENDING = "pending"       # Not mined before the deadline


@dataclass
class ReceiptOutcome:
    """Result of bounded receipt polling."""

    status: ReceiptStatus
    receipt: Optional[TransactionReceipt] = None
    polls: int = 0


@dataclass
class TxResult:
    """Result of a send."""

    success: bool
    chain: str
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    nonce: Optional[int] = None
    gas: Optional[GasEstimate] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None


def classify_broadcast_error(message: str) -> ErrorKind:
    """Map a node's rejection message to an error kind."""
    lowered = message.lower()
    if "insufficient funds" in lowered or "gas" in lowered:
        return ErrorKind.INSUFFICIENT_GAS
    if "nonce" in lowered or "replacement" in lowered:
        return ErrorKind.NONCE_CONFLICT
    return ErrorKind.REJECTED


def is_already_known(message: str) -> bool:
    """True if the node reports the transaction is already in its pool."""
    lowered = message.lower()
    return any(marker in lowered for marker in ALREADY_KNOWN_MARKERS)


def _require_address(address: str, what: str = "recipient") -> str:
    if not isinstance(address, str) or not is_hex_address(address):
        raise InvalidAddressError(f"Invalid {what} address: {address!r}")
    return to_checksum_address(address)


class TransactionEngine:
    """Builds, signs and broadcasts transactions for an unlocked account."""

    def __init__(
        self,
        rpc: RpcClient,
        gas_estimator: Optional[GasEstimator] = None,
        settings: Optional[Settings] = None,
    ):
        self.rpc = rpc
        self.settings = settings or get_settings()
        self.gas = gas_estimator or GasEstimator(rpc, self.settings)

    # ======================
    # Building and signing
    # ======================

    @staticmethod
    def build_transaction(
        chain: ChainConfig,
        to: str,
        value: int,
        data: str,
        nonce: int,
        gas: GasEstimate,
    ) -> dict:
        """Build a typed transaction dict (EIP-1559 type 2 or legacy)."""
        tx = {
            "chainId": chain.chain_id,
            "nonce": nonce,
            "to": to,
            "value": value,
            "data": data,
        }
        tx.update(gas.tx_fields())
        return tx

    @staticmethod
    def sign_transaction(account: Account, tx: dict) -> tuple[str, str]:
        """Sign a transaction.

        Returns:
            Tuple of (raw transaction hex, transaction hash hex)
        """
        signed = EthAccount.sign_transaction(tx, account.private_key.reveal())
        return to_hex(signed.raw_transaction), to_hex(signed.hash)

    # ======================
    # Sending
    # ======================

    async def send(
        self,
        chain: ChainConfig,
        account: Account,
        to: str,
        value: int = 0,
        data: str = "0x",
        gas: Optional[GasEstimate] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TxResult:
        """Send a transaction and return right after broadcast.

        Args:
            chain: Target chain
            account: Unlocked sender
            to: Recipient or contract
            value: Native value in wei
            data: Call data
            gas: Pre-computed estimate (estimated here when None)
            cancel: Optional cancellation token

        Returns:
            TxResult with hash and explorer link, or error kind and message
        """
        nonce: Optional[int] = None
        handed_off: Optional[str] = None
        try:
            to = _require_address(to)
            if value < 0:
                raise InvalidInputError("Value must not be negative")

            async with NonceLock(
                account.address,
                chain.key,
                timeout=self.settings.nonce_lock_timeout,
                operation="send",
            ):
                nonce = await self.rpc.get_transaction_count(
                    chain.rpc_url, account.address, "latest", cancel
                )
                if gas is None:
                    gas = await self.gas.estimate(chain, account.address, to, value, data, cancel)

                tx = self.build_transaction(chain, to, value, data, nonce, gas)
                raw_tx, local_hash = self.sign_transaction(account, tx)
                raise_if_cancelled(cancel)
                handed_off = local_hash
                tx_hash = await self._broadcast(chain, raw_tx, local_hash, cancel)

        except RpcRemoteError as e:
            kind = classify_broadcast_error(e.message)
            logger.error(f"Transaction rejected on {chain.key}: {e} ({kind.value})")
            return TxResult(
                success=False, chain=chain.key, nonce=nonce, gas=gas,
                error_kind=kind, error=e.message,
            )
        except OperationCancelled as e:
            if handed_off is None:
                logger.info(f"Transaction on {chain.key} cancelled before broadcast")
                return TxResult(
                    success=False, chain=chain.key, nonce=nonce, gas=gas,
                    error_kind=e.kind, error=e.message,
                )
            # Signed bytes may already have reached the node
            logger.warning(f"Broadcast on {chain.key} cancelled, transaction may be pending: {handed_off}")
            return TxResult(
                success=False, chain=chain.key, tx_hash=handed_off,
                explorer_url=chain.tx_url(handed_off), nonce=nonce, gas=gas,
                error_kind=e.kind, error=e.message,
            )
        except ChainVaultError as e:
            logger.error(f"Transaction failed on {chain.key}: {e.message} ({e.kind.value})")
            return TxResult(
                success=False, chain=chain.key, nonce=nonce, gas=gas,
                error_kind=e.kind, error=e.message,
            )

        logger.info(f"Transaction broadcast on {chain.key}: {tx_hash} (nonce {nonce})")
        return TxResult(
            success=True,
            chain=chain.key,
            tx_hash=tx_hash,
            explorer_url=chain.tx_url(tx_hash),
            nonce=nonce,
            gas=gas,
        )

    async def _broadcast(
        self, chain: ChainConfig, raw_tx: str, local_hash: str, cancel: Optional[CancelToken]
    ) -> str:
        """Broadcast signed bytes, re-sending the same bytes on transport failure."""
        attempts = 1 + max(0, self.settings.broadcast_retries)
        last_error: Optional[RpcTransportError] = None

        for attempt in range(attempts):
            try:
                tx_hash = await self.rpc.send_raw_transaction(chain.rpc_url, raw_tx, cancel)
            except RpcRemoteError as e:
                if is_already_known(e.message):
                    logger.info(f"Transaction already known on {chain.key}: {local_hash}")
                    return local_hash
                raise
            except RpcTransportError as e:
                last_error = e
                if attempt + 1 < attempts:
                    delay = self.settings.broadcast_retry_delay * (attempt + 1)
                    logger.warning(
                        f"Broadcast attempt {attempt + 1}/{attempts} on {chain.key} failed: {e}, "
                        f"retrying in {delay}s"
                    )
                    await sleep_cancellable(delay, cancel)
                continue

            if tx_hash.lower() != local_hash.lower():
                logger.warning(f"Node returned hash {tx_hash}, expected {local_hash}")
            return tx_hash

        raise last_error

    async def send_native(
        self,
        chain: ChainConfig,
        account: Account,
        to: str,
        amount: Union[str, Decimal],
        cancel: Optional[CancelToken] = None,
    ) -> TxResult:
        """Send native coin given a human amount (e.g. ``"0.01"``)."""
        try:
            value = parse_token_amount(amount, chain.decimals)
        except InvalidInputError as e:
            return TxResult(
                success=False, chain=chain.key, error_kind=e.kind, error=e.message
            )
        return await self.send(chain, account, to, value=value, cancel=cancel)

    async def send_token(
        self,
        chain: ChainConfig,
        account: Account,
        token: TokenInfo,
        to: str,
        amount_raw: int,
        cancel: Optional[CancelToken] = None,
    ) -> TxResult:
        """Send an ERC-20 token via ``transfer(address,uint256)``."""
        try:
            if token.is_native or token.chain != chain.key:
                raise InvalidInputError(f"{token.symbol} is not an ERC-20 token on {chain.key}")
            data = abi.encode_transfer(_require_address(to), amount_raw)
        except InvalidInputError as e:
            return TxResult(
                success=False, chain=chain.key, error_kind=e.kind, error=e.message
            )
        return await self.send(
            chain, account, token.contract_address, value=0, data=data, cancel=cancel
        )

    async def estimate_native_send(
        self,
        chain: ChainConfig,
        from_address: str,
        to: str,
        value: int,
        cancel: Optional[CancelToken] = None,
    ) -> GasEstimate:
        return await self.gas.estimate(
            chain, from_address, _require_address(to), value, "0x", cancel
        )

    async def estimate_token_send(
        self,
        chain: ChainConfig,
        from_address: str,
        token: TokenInfo,
        to: str,
        amount_raw: int,
        cancel: Optional[CancelToken] = None,
    ) -> GasEstimate:
        data = abi.encode_transfer(_require_address(to), amount_raw)
        return await self.gas.estimate(
            chain, from_address, token.contract_address, 0, data, cancel
        )

    # ======================
    # Receipts
    # ======================

    async def wait_for_receipt(
        self,
        chain: ChainConfig,
        tx_hash: str,
        interval: Optional[float] = None,
        deadline: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ReceiptOutcome:
        """Poll for a receipt until mined or the deadline passes.

        Transient read errors during polling are ignored; the deadline bounds
        the total wait.

        Returns:
            CONFIRMED / REVERTED once mined, PENDING on deadline
        """
        interval = interval if interval is not None else self.settings.receipt_poll_interval
        deadline = deadline if deadline is not None else self.settings.receipt_poll_deadline

        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + deadline
        polls = 0

        while True:
            polls += 1
            try:
                receipt = await self.rpc.get_transaction_receipt(chain.rpc_url, tx_hash, cancel)
            except RpcError as e:
                logger.debug(f"Receipt poll {polls} for {tx_hash} failed: {e}")
                receipt = None

            if receipt is not None and receipt.is_mined:
                status = ReceiptStatus.CONFIRMED if receipt.succeeded else ReceiptStatus.REVERTED
                logger.info(f"Transaction {tx_hash} on {chain.key} {status.value} in block {receipt.block_number}")
                return ReceiptOutcome(status=status, receipt=receipt, polls=polls)

            remaining = give_up_at - loop.time()
            if remaining <= 0:
                logger.warning(f"Transaction {tx_hash} on {chain.key} still pending after {deadline}s")
                return ReceiptOutcome(status=ReceiptStatus.PENDING, polls=polls)

            logger.debug(f"Receipt not yet available for {tx_hash}, poll {polls}")
            await sleep_cancellable(min(interval, remaining), cancel)

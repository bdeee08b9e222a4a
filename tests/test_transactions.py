"""Tests for the transaction engine."""

import asyncio

import pytest
from eth_account import Account as EthAccount
from eth_utils import keccak, to_hex

from chainvault.chains import get_chain
from chainvault.errors import ErrorKind
from chainvault.transactions import (
    ReceiptStatus,
    TransactionEngine,
    classify_broadcast_error,
    is_already_known,
)
from chainvault.tokens import FEATURED_TOKENS

from conftest import GWEI, RECIPIENT, TEST_ADDRESS


class TestClassification:
    @pytest.mark.parametrize(
        "message,kind",
        [
            ("insufficient funds for gas * price + value", ErrorKind.INSUFFICIENT_GAS),
            ("intrinsic gas too low", ErrorKind.INSUFFICIENT_GAS),
            ("nonce too low", ErrorKind.NONCE_CONFLICT),
            ("replacement transaction underpriced", ErrorKind.NONCE_CONFLICT),
            ("invalid sender", ErrorKind.REJECTED),
        ],
    )
    def test_classify(self, message, kind):
        assert classify_broadcast_error(message) == kind

    def test_already_known(self):
        assert is_already_known("already known")
        assert is_already_known("Known transaction: 0xabc")
        assert not is_already_known("nonce too low")


class TestSend:
    """Tests for build/sign/broadcast."""

    @pytest.mark.asyncio
    async def test_send_native_eip1559(self, rpc, settings, nodes, account):
        node = nodes["base"]
        node.set_balance(TEST_ADDRESS, 10**18)
        node.nonces[TEST_ADDRESS.lower()] = 7
        chain = get_chain("base", settings)

        result = await TransactionEngine(rpc, settings=settings).send_native(chain, account, RECIPIENT, "0.01")

        assert result.success
        assert result.nonce == 7
        assert result.explorer_url == f"https://basescan.org/tx/{result.tx_hash}"
        assert len(node.sent) == 1
        assert node.sent[0].startswith("0x02")
        assert EthAccount.recover_transaction(node.sent[0]) == TEST_ADDRESS
        assert node.calls_to("eth_getTransactionCount")[0] == [TEST_ADDRESS, "latest"]

    @pytest.mark.asyncio
    async def test_send_legacy_when_fee_history_missing(self, rpc, settings, nodes, account):
        nodes["avalanche"].fee_history_supported = False
        chain = get_chain("avalanche", settings)

        result = await TransactionEngine(rpc, settings=settings).send(chain, account, RECIPIENT, value=1)

        assert result.success
        assert not result.gas.is_eip1559
        assert result.gas.gas_price == 3 * GWEI
        assert not nodes["avalanche"].sent[0].startswith("0x02")

    @pytest.mark.asyncio
    async def test_send_token_calldata(self, rpc, settings, nodes, account):
        token = FEATURED_TOKENS[1]
        chain = get_chain("base", settings)

        result = await TransactionEngine(rpc, settings=settings).send_token(
            chain, account, token, RECIPIENT, 1_500_000
        )

        assert result.success
        estimate_tx = nodes["base"].calls_to("eth_estimateGas")[0][0]
        assert estimate_tx["to"].lower() == token.contract_address.lower()
        assert estimate_tx["data"].startswith("0xa9059cbb")
        assert int(estimate_tx["data"][-64:], 16) == 1_500_000

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, rpc, settings, nodes, account):
        nodes["base"].errors["eth_sendRawTransaction"] = {
            "code": -32000,
            "message": "insufficient funds for gas * price + value",
        }
        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1
        )

        assert not result.success
        assert result.error_kind == ErrorKind.INSUFFICIENT_GAS
        assert result.chain == "base"

    @pytest.mark.asyncio
    async def test_nonce_conflict_not_retried(self, rpc, settings, nodes, account):
        nodes["base"].errors["eth_sendRawTransaction"] = {"code": -32000, "message": "nonce too low"}
        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1
        )

        assert result.error_kind == ErrorKind.NONCE_CONFLICT
        assert len(nodes["base"].calls_to("eth_sendRawTransaction")) == 1

    @pytest.mark.asyncio
    async def test_already_known_is_success(self, rpc, settings, nodes, account):
        nodes["base"].errors["eth_sendRawTransaction"] = {"code": -32000, "message": "already known"}
        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1
        )

        assert result.success
        assert result.tx_hash.startswith("0x") and len(result.tx_hash) == 66

    @pytest.mark.asyncio
    async def test_transport_failure_rebroadcasts_same_bytes(self, rpc, settings, nodes, account):
        node = nodes["base"]
        node.transport_failures["eth_sendRawTransaction"] = 2

        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1
        )

        attempts = node.calls_to("eth_sendRawTransaction")
        assert result.success
        assert len(attempts) == 3
        assert attempts[0] == attempts[1] == attempts[2]

    @pytest.mark.asyncio
    async def test_transport_failure_exhausts_retries(self, rpc, settings, nodes, account):
        nodes["base"].transport_failures["eth_sendRawTransaction"] = 10

        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1
        )

        assert not result.success
        assert result.error_kind == ErrorKind.TRANSPORT
        assert len(nodes["base"].calls_to("eth_sendRawTransaction")) == 1 + settings.broadcast_retries

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, rpc, settings, nodes, account):
        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, "0xnot-an-address", value=1
        )
        assert result.error_kind == ErrorKind.INVALID_INPUT
        assert nodes["base"].calls == []

    @pytest.mark.asyncio
    async def test_invalid_amount(self, rpc, settings, account):
        result = await TransactionEngine(rpc, settings=settings).send_native(
            get_chain("base", settings), account, RECIPIENT, "-1"
        )
        assert result.error_kind == ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_cancelled(self, rpc, settings, nodes, account):
        cancel = asyncio.Event()
        cancel.set()
        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1, cancel=cancel
        )
        assert result.error_kind == ErrorKind.CANCELLED
        assert nodes["base"].sent == []

    @pytest.mark.asyncio
    async def test_cancelled_after_handoff_keeps_hash(self, rpc, settings, nodes, account):
        node = nodes["base"]
        node.transport_failures["eth_sendRawTransaction"] = 1
        slow_retry = settings.model_copy(update={"broadcast_retry_delay": 5.0})
        cancel = asyncio.Event()

        async def cancel_after_first_attempt():
            while not node.calls_to("eth_sendRawTransaction"):
                await asyncio.sleep(0.001)
            cancel.set()

        canceller = asyncio.create_task(cancel_after_first_attempt())
        result = await TransactionEngine(rpc, settings=slow_retry).send(
            get_chain("base", settings), account, RECIPIENT, value=1, cancel=cancel
        )
        await canceller

        raw = node.calls_to("eth_sendRawTransaction")[0][0]
        assert not result.success
        assert result.error_kind == ErrorKind.CANCELLED
        assert result.tx_hash == to_hex(keccak(hexstr=raw))
        assert result.explorer_url == f"https://basescan.org/tx/{result.tx_hash}"
        assert result.nonce == 0

    @pytest.mark.asyncio
    async def test_concurrent_sends_use_distinct_nonces(self, rpc, settings, nodes, account):
        engine = TransactionEngine(rpc, settings=settings)
        chain = get_chain("base", settings)

        results = await asyncio.gather(
            *(engine.send(chain, account, RECIPIENT, value=i + 1) for i in range(3))
        )

        assert all(r.success for r in results)
        assert sorted(r.nonce for r in results) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_private_key_not_in_error(self, rpc, settings, nodes, account):
        nodes["base"].errors["eth_sendRawTransaction"] = {"code": -32000, "message": "invalid sender"}
        result = await TransactionEngine(rpc, settings=settings).send(
            get_chain("base", settings), account, RECIPIENT, value=1
        )
        assert account.private_key.reveal()[2:] not in (result.error or "")


class TestReceipts:
    """Tests for bounded receipt polling."""

    @pytest.mark.asyncio
    async def test_confirmed_after_delay(self, rpc, settings, nodes, account):
        node = nodes["base"]
        node.receipt_delay_polls = 2
        engine = TransactionEngine(rpc, settings=settings)
        chain = get_chain("base", settings)

        result = await engine.send(chain, account, RECIPIENT, value=1)
        outcome = await engine.wait_for_receipt(chain, result.tx_hash)

        assert outcome.status == ReceiptStatus.CONFIRMED
        assert outcome.polls == 3
        assert outcome.receipt.succeeded

    @pytest.mark.asyncio
    async def test_reverted(self, rpc, settings, nodes, account):
        nodes["base"].receipt_mode = "revert"
        engine = TransactionEngine(rpc, settings=settings)
        chain = get_chain("base", settings)

        result = await engine.send(chain, account, RECIPIENT, value=1)
        outcome = await engine.wait_for_receipt(chain, result.tx_hash)

        assert outcome.status == ReceiptStatus.REVERTED

    @pytest.mark.asyncio
    async def test_deadline_yields_pending(self, rpc, settings, nodes):
        nodes["base"].receipt_mode = "never"
        engine = TransactionEngine(rpc, settings=settings)

        outcome = await engine.wait_for_receipt(
            get_chain("base", settings), "0x" + "ab" * 32, interval=0.01, deadline=0.05
        )

        assert outcome.status == ReceiptStatus.PENDING
        assert outcome.polls >= 2

"""Tests for the JSON-RPC client."""

import asyncio
import json

import httpx
import pytest

from chainvault.config import Settings
from chainvault.errors import (
    ErrorKind,
    OperationCancelled,
    RpcDecodeError,
    RpcRemoteError,
    RpcTimeoutError,
    RpcTransportError,
)
from chainvault.rpc import CallClass, FeeHistory, RpcClient, parse_quantity

from conftest import TEST_ADDRESS

BASE_URL = "https://mainnet.base.org"


def client_with(handler, settings=None) -> RpcClient:
    return RpcClient(settings or Settings(_env_file=None), transport=httpx.MockTransport(handler))


def reply(result):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


class TestEnvelope:
    """Tests for request/response envelopes."""

    @pytest.mark.asyncio
    async def test_request_shape_and_incrementing_ids(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x1"})

        async with client_with(handler) as rpc:
            await rpc.call(BASE_URL, "eth_blockNumber")
            await rpc.call(BASE_URL, "eth_chainId", [])

        assert seen[0]["jsonrpc"] == "2.0"
        assert seen[0]["method"] == "eth_blockNumber"
        assert seen[0]["params"] == []
        assert seen[1]["id"] == seen[0]["id"] + 1

    @pytest.mark.asyncio
    async def test_remote_error(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "nonce too low"}},
            )

        async with client_with(handler) as rpc:
            with pytest.raises(RpcRemoteError) as exc_info:
                await rpc.call(BASE_URL, "eth_sendRawTransaction", ["0x00"])

        assert exc_info.value.code == -32000
        assert exc_info.value.message == "nonce too low"
        assert "-32000" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        async with client_with(lambda r: httpx.Response(200, content=b"<html>")) as rpc:
            with pytest.raises(RpcDecodeError) as exc_info:
                await rpc.call(BASE_URL, "eth_blockNumber")
        assert exc_info.value.kind == ErrorKind.DECODE

    @pytest.mark.asyncio
    async def test_missing_result(self):
        async with client_with(lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1})) as rpc:
            with pytest.raises(RpcDecodeError):
                await rpc.call(BASE_URL, "eth_blockNumber")

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        async with client_with(lambda r: httpx.Response(503, content=b"unavailable")) as rpc:
            with pytest.raises(RpcTransportError):
                await rpc.call(BASE_URL, "eth_blockNumber")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with client_with(handler) as rpc:
            with pytest.raises(RpcTransportError) as exc_info:
                await rpc.call(BASE_URL, "eth_blockNumber")
        assert exc_info.value.kind == ErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_timeout_per_call_class(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1"})

        settings = Settings(_env_file=None, rpc_read_timeout=0.05)
        async with client_with(handler, settings) as rpc:
            assert rpc.timeout_for(CallClass.READ) == 0.05
            with pytest.raises(RpcTimeoutError) as exc_info:
                await rpc.call(BASE_URL, "eth_getBalance", [TEST_ADDRESS, "latest"], CallClass.READ)
        assert exc_info.value.kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancellation_aborts_request(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1"})

        cancel = asyncio.Event()
        async with client_with(handler) as rpc:
            asyncio.get_running_loop().call_later(0.02, cancel.set)
            with pytest.raises(OperationCancelled):
                await rpc.call(BASE_URL, "eth_blockNumber", cancel=cancel)

    @pytest.mark.asyncio
    async def test_already_cancelled_sends_nothing(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1"})

        cancel = asyncio.Event()
        cancel.set()
        async with client_with(handler) as rpc:
            with pytest.raises(OperationCancelled):
                await rpc.call(BASE_URL, "eth_blockNumber", cancel=cancel)
        assert calls == []


class TestTypedResults:
    """Tests for validated per-method results."""

    @pytest.mark.asyncio
    async def test_balance(self):
        async with client_with(reply("0xde0b6b3a7640000")) as rpc:
            assert await rpc.get_balance(BASE_URL, TEST_ADDRESS) == 10**18

    @pytest.mark.asyncio
    async def test_non_hex_quantity_rejected(self):
        async with client_with(reply(12.5)) as rpc:
            with pytest.raises(RpcDecodeError):
                await rpc.get_balance(BASE_URL, TEST_ADDRESS)

    @pytest.mark.asyncio
    async def test_fee_history(self):
        result = {
            "oldestBlock": "0x10",
            "baseFeePerGas": ["0x1", "0x2", "0x3"],
            "gasUsedRatio": [0.5, 0.4],
            "reward": [["0x64"], ["0xc8"]],
        }
        async with client_with(reply(result)) as rpc:
            history = await rpc.fee_history(BASE_URL, 2)

        assert isinstance(history, FeeHistory)
        assert history.oldest_block == 16
        assert history.latest_base_fee == 3
        assert history.reward == [[100], [200]]

    @pytest.mark.asyncio
    async def test_malformed_fee_history(self):
        async with client_with(reply({"oldestBlock": "0x1"})) as rpc:
            with pytest.raises(RpcDecodeError):
                await rpc.fee_history(BASE_URL, 5)

    @pytest.mark.asyncio
    async def test_receipt_none_while_pending(self):
        async with client_with(reply(None)) as rpc:
            assert await rpc.get_transaction_receipt(BASE_URL, "0x" + "ab" * 32) is None

    @pytest.mark.asyncio
    async def test_receipt(self):
        receipt = {
            "transactionHash": "0x" + "ab" * 32,
            "blockNumber": "0x64",
            "status": "0x1",
            "gasUsed": "0x5208",
        }
        async with client_with(reply(receipt)) as rpc:
            parsed = await rpc.get_transaction_receipt(BASE_URL, "0x" + "ab" * 32)

        assert parsed.block_number == 100
        assert parsed.is_mined
        assert parsed.succeeded
        assert parsed.gas_used == 21000

    @pytest.mark.asyncio
    async def test_send_raw_transaction_hash_validated(self):
        async with client_with(reply("0x1234")) as rpc:
            with pytest.raises(RpcDecodeError):
                await rpc.send_raw_transaction(BASE_URL, "0x02")

    @pytest.mark.asyncio
    async def test_eth_call_returns_lowercase_hex(self):
        async with client_with(reply("0xABCD")) as rpc:
            assert await rpc.eth_call(BASE_URL, TEST_ADDRESS, "0x06fdde03") == "0xabcd"


class TestParseQuantity:
    def test_values(self):
        assert parse_quantity("0x0") == 0
        assert parse_quantity("0x") == 0
        assert parse_quantity("0xff") == 255

    def test_rejects_decimal_string(self):
        with pytest.raises(RpcDecodeError):
            parse_quantity("255")

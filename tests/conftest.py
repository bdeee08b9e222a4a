"""Pytest configuration and fixtures."""

import json
import os
from typing import AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from eth_abi import encode as abi_encode
from eth_account import Account as EthAccount
from eth_utils import keccak, to_hex
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"

from chainvault.chains import CHAINS
from chainvault.config import Settings
from chainvault.ledger.models import Base
from chainvault.ledger.repository import WalletRepository
from chainvault.rpc import RpcClient
from chainvault.utils.locks import clear_nonce_locks
from chainvault.wallet.account import account_from_private_key
from chainvault.wallet.session import MemoryStore, SessionCache
from chainvault.wallet.vault import KeyVault

GWEI = 10**9

# Well-known throwaway test key
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"

# Standard development mnemonic and its first account
TEST_MNEMONIC = "test test test test test test test test test test test junk"
TEST_MNEMONIC_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

RECIPIENT = "0x000000000000000000000000000000000000dEaD"


class FakeNode:
    """In-memory JSON-RPC node for one chain."""

    def __init__(self, chain_id: int, registry: Optional[str] = None):
        self.chain_id = chain_id
        self.registry = registry.lower() if registry else None
        self.block = 1000
        self.balances: dict[str, int] = {}
        self.nonces: dict[str, int] = {}
        self.token_balances: dict[tuple[str, str], int] = {}
        self.token_meta: dict[str, tuple[str, str, int]] = {}
        self.empty_output: set[str] = set()
        self.agents: dict[str, tuple[str, str]] = {}
        self.code: dict[str, str] = {}
        if self.registry:
            self.code[self.registry] = "0x6080604052"

        self.gas_estimate = 100_000
        self.gas_price = 3 * GWEI
        self.base_fee = 10 * GWEI
        self.rewards = [GWEI, 2 * GWEI, 3 * GWEI, 2 * GWEI, 2 * GWEI]
        self.fee_history_supported = True

        # "success", "revert" or "never"
        self.receipt_mode = "success"
        self.receipt_delay_polls = 0
        self.receipt_polls: dict[str, int] = {}
        self.receipts: dict[str, dict] = {}

        self.errors: dict[str, dict] = {}
        self.transport_failures: dict[str, int] = {}
        self.calls: list[tuple[str, list]] = []
        self.sent: list[str] = []

    def calls_to(self, method: str) -> list[list]:
        return [params for m, params in self.calls if m == method]

    def set_balance(self, address: str, wei: int) -> None:
        self.balances[address.lower()] = wei

    def handle(self, method: str, params: list):
        handler = getattr(self, f"_{method}", None)
        if handler is None:
            raise KeyError(method)
        return handler(*params)

    def _eth_chainId(self):
        return hex(self.chain_id)

    def _eth_blockNumber(self):
        return hex(self.block)

    def _eth_getBalance(self, address, block):
        return hex(self.balances.get(address.lower(), 0))

    def _eth_getTransactionCount(self, address, block):
        return hex(self.nonces.get(address.lower(), 0))

    def _eth_estimateGas(self, tx):
        return hex(self.gas_estimate)

    def _eth_gasPrice(self):
        return hex(self.gas_price)

    def _eth_feeHistory(self, block_count, newest, percentiles):
        if not self.fee_history_supported:
            raise KeyError("eth_feeHistory")
        count = int(block_count, 16)
        return {
            "oldestBlock": hex(self.block - count + 1),
            "baseFeePerGas": [hex(self.base_fee)] * (count + 1),
            "gasUsedRatio": [0.5] * count,
            "reward": [[hex(r)] for r in self.rewards[:count]],
        }

    def _eth_getCode(self, address, block):
        return self.code.get(address.lower(), "0x")

    def _eth_sendRawTransaction(self, raw):
        self.sent.append(raw)
        tx_hash = to_hex(keccak(hexstr=raw))
        sender = EthAccount.recover_transaction(raw).lower()
        self.nonces[sender] = self.nonces.get(sender, 0) + 1

        if self.receipt_mode == "success":
            self.receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "blockNumber": hex(self.block + 1),
                "status": "0x1",
                "gasUsed": hex(self.gas_estimate),
            }
            if self.registry:
                self.agents[sender] = ("member", '{"type":"human","v":1}')
        elif self.receipt_mode == "revert":
            self.receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "blockNumber": hex(self.block + 1),
                "status": "0x0",
            }
        return tx_hash

    def _eth_getTransactionReceipt(self, tx_hash):
        polls = self.receipt_polls.get(tx_hash, 0) + 1
        self.receipt_polls[tx_hash] = polls
        if polls <= self.receipt_delay_polls:
            return None
        return self.receipts.get(tx_hash)

    def _eth_call(self, call, block):
        to = call["to"].lower()
        data = call["data"].lower()
        selector, args = data[:10], data[10:]

        if to in self.empty_output:
            return "0x"
        if selector == "0x70a08231":
            owner = "0x" + args[24:64]
            return to_hex(abi_encode(["uint256"], [self.token_balances.get((to, owner), 0)]))
        if selector in ("0x06fdde03", "0x95d89b41", "0x313ce567"):
            if to not in self.token_meta:
                return "0x"
            name, symbol, decimals = self.token_meta[to]
            if selector == "0x06fdde03":
                return to_hex(abi_encode(["string"], [name]))
            if selector == "0x95d89b41":
                return to_hex(abi_encode(["string"], [symbol]))
            return to_hex(abi_encode(["uint8"], [decimals]))
        if selector == "0xfb3551ff" and to == self.registry:
            owner = "0x" + args[24:64]
            name, description = self.agents.get(owner, ("", ""))
            return to_hex(abi_encode(["string", "string"], [name, description]))
        if selector == "0x3731a16f" and to == self.registry:
            return to_hex(abi_encode(["uint256"], [len(self.agents)]))
        return "0x"


def make_handler(nodes_by_url: dict[str, FakeNode]):
    def handler(request: httpx.Request) -> httpx.Response:
        node = nodes_by_url[str(request.url)]
        body = json.loads(request.content)
        method, params = body["method"], body.get("params", [])
        node.calls.append((method, params))

        remaining = node.transport_failures.get(method, 0)
        if remaining:
            node.transport_failures[method] = remaining - 1
            raise httpx.ConnectError("connection refused", request=request)

        if method in node.errors:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": node.errors[method]}
            )
        try:
            result = node.handle(method, params)
        except KeyError:
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {"code": -32601, "message": "the method does not exist"},
                },
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


@pytest.fixture(autouse=True)
def reset_locks():
    """Nonce locks are process-global; start every test clean."""
    clear_nonce_locks()
    yield
    clear_nonce_locks()


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        _env_file=None,
        receipt_poll_interval=0.01,
        receipt_poll_deadline=0.2,
        broadcast_retry_delay=0.0,
        pbkdf2_iterations=1000,
        nonce_lock_timeout=5,
    )


@pytest.fixture
def nodes(settings: Settings) -> dict[str, FakeNode]:
    """One fake node per supported chain, keyed by chain key."""
    return {
        key: FakeNode(chain.chain_id, chain.registry_address)
        for key, chain in CHAINS.items()
    }


@pytest_asyncio.fixture
async def rpc(settings: Settings, nodes: dict[str, FakeNode]) -> AsyncGenerator[RpcClient, None]:
    """RPC client routed to the fake nodes."""
    by_url = {settings.get_rpc_url(key): node for key, node in nodes.items()}
    client = RpcClient(settings, transport=httpx.MockTransport(make_handler(by_url)))
    yield client
    await client.close()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def wallet_repo(db_session: AsyncSession) -> WalletRepository:
    return WalletRepository(db_session)


@pytest.fixture
def volatile_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def vault(session_factory, settings, volatile_store) -> KeyVault:
    return KeyVault(
        session_factory=session_factory,
        session_cache=SessionCache(volatile_store),
        settings=settings,
    )


@pytest.fixture
def account():
    return account_from_private_key(TEST_PRIVATE_KEY)

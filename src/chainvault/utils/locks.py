"""Per-(account, chain) nonce locks.

Nonce fetch, signing and broadcast for one account on one chain run under a
single asyncio.Lock, so concurrent sends never read the same ``latest`` nonce.
Sends on different chains, or from different accounts, do not contend.
"""

import asyncio
import logging
from typing import Optional

from chainvault.errors import LockTimeoutError

logger = logging.getLogger(__name__)

LockKey = tuple[str, str]

_nonce_locks: dict[LockKey, asyncio.Lock] = {}


def _lock_key(address: str, chain: str) -> LockKey:
    return address.lower(), chain.lower()


async def get_nonce_lock(address: str, chain: str) -> asyncio.Lock:
    """Return the lock for an account on a chain, creating it on first use.

    Lookup and insert happen without an await in between, so two coroutines
    always receive the same lock object.
    """
    return _nonce_locks.setdefault(_lock_key(address, chain), asyncio.Lock())


class NonceLock:
    """Holds the nonce lock of an account on a chain for the duration of a send.

    Example:
        async with NonceLock(account.address, chain.key, timeout=30):
            nonce = await rpc.get_transaction_count(chain.rpc_url, account.address)
            ...

    Raises:
        LockTimeoutError: If another send holds the lock for longer than *timeout*
    """

    def __init__(
        self,
        address: str,
        chain: str,
        timeout: Optional[float] = 30.0,
        operation: str = "send",
    ):
        self.key = _lock_key(address, chain)
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None

    def _describe(self) -> str:
        address, chain = self.key
        return f"{address} on {chain} ({self.operation})"

    async def __aenter__(self) -> "NonceLock":
        lock = await get_nonce_lock(*self.key)
        if lock.locked():
            logger.debug(f"Waiting for nonce lock: {self._describe()}")

        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Nonce lock not acquired within {self.timeout}s: {self._describe()}")
            raise LockTimeoutError(
                f"Another transaction is still being sent for {self._describe()}"
            ) from None

        self._lock = lock
        logger.debug(f"Nonce lock held: {self._describe()}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._lock is not None:
            self._lock.release()
            self._lock = None
            logger.debug(f"Nonce lock released: {self._describe()}")
        return False

    @property
    def held(self) -> bool:
        return self._lock is not None


def clear_nonce_locks() -> None:
    """Forget every lock. Only safe when no send is in flight."""
    _nonce_locks.clear()

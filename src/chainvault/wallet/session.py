"""Session lifecycle state and the encrypted session cache.

The session cache keeps an encrypted copy of unlocked key material in a
volatile, tab-scoped store so a reload does not require the password again.
The store holds three slots: the random session key, the encrypted blob and
the plaintext address.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from chainvault.crypto import SessionEncryptor, encode_key, generate_session_key
from chainvault.errors import WalletLockedError
from chainvault.wallet.account import Account

logger = logging.getLogger(__name__)

SESSION_KEY_SLOT = "chainvault.session.key"
SESSION_BLOB_SLOT = "chainvault.session.blob"
SESSION_ADDRESS_SLOT = "chainvault.session.address"


class VaultState(str, Enum):
    """Lifecycle state of the key vault."""

    UNINITIALIZED = "uninitialized"   # No vault stored
    LOCKED = "locked"                 # Vault stored, no key material in memory
    UNLOCKED = "unlocked"             # Account held in memory


class VolatileStore(ABC):
    """Key/value store that does not outlive the session."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class MemoryStore(VolatileStore):
    """In-process volatile store."""

    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


@dataclass
class SessionState:
    """Explicit lifecycle state, owned by the vault and injected into components."""

    state: VaultState = VaultState.UNINITIALIZED
    address: Optional[str] = None
    account: Optional[Account] = None

    @property
    def is_unlocked(self) -> bool:
        return self.state == VaultState.UNLOCKED and self.account is not None

    def require_account(self) -> Account:
        """Return the unlocked account.

        Raises:
            WalletLockedError: If no account is unlocked
        """
        if not self.is_unlocked:
            raise WalletLockedError("Wallet is locked")
        return self.account

    def set_unlocked(self, account: Account) -> None:
        if self.account is not None and self.account is not account:
            self.account.wipe()
        self.account = account
        self.address = account.address
        self.state = VaultState.UNLOCKED

    def set_locked(self) -> None:
        """Wipe in-memory secrets; the address stays known."""
        if self.account is not None:
            self.account.wipe()
        self.account = None
        self.state = VaultState.LOCKED if self.address else VaultState.UNINITIALIZED

    def reset(self) -> None:
        if self.account is not None:
            self.account.wipe()
        self.account = None
        self.address = None
        self.state = VaultState.UNINITIALIZED


class SessionCache:
    """Encrypted copy of the unlocked account in a volatile store."""

    def __init__(self, store: Optional[VolatileStore] = None):
        self.store = store if store is not None else MemoryStore()

    def persist(self, account: Account) -> None:
        """Encrypt the account under a fresh random key and store it."""
        key = generate_session_key()
        blob = SessionEncryptor(key).encrypt(account.to_payload())
        self.store.set(SESSION_KEY_SLOT, encode_key(key))
        self.store.set(SESSION_BLOB_SLOT, blob)
        self.store.set(SESSION_ADDRESS_SLOT, account.address)
        logger.debug(f"Session persisted for {account.address}")

    def restore(self) -> Optional[Account]:
        """Decrypt the cached account.

        Never raises: a missing slot returns None, and any decryption or parse
        failure clears the store and returns None.
        """
        encoded_key = self.store.get(SESSION_KEY_SLOT)
        blob = self.store.get(SESSION_BLOB_SLOT)
        if not encoded_key or not blob:
            if encoded_key or blob:
                self.clear()
            return None

        try:
            payload = SessionEncryptor.from_encoded(encoded_key).decrypt(blob)
            account = Account.from_payload(payload)
        except Exception as e:
            logger.warning(f"Discarding unreadable session: {type(e).__name__}")
            self.clear()
            return None

        cached_address = self.store.get(SESSION_ADDRESS_SLOT)
        if cached_address and cached_address.lower() != account.address.lower():
            logger.warning("Discarding session with mismatched address")
            account.wipe()
            self.clear()
            return None

        return account

    def clear(self) -> None:
        for slot in (SESSION_KEY_SLOT, SESSION_BLOB_SLOT, SESSION_ADDRESS_SLOT):
            self.store.delete(slot)

    @property
    def cached_address(self) -> Optional[str]:
        return self.store.get(SESSION_ADDRESS_SLOT)

    def has_session(self) -> bool:
        return bool(self.store.get(SESSION_KEY_SLOT) and self.store.get(SESSION_BLOB_SLOT))

"""Key vault: custody of the account's key material.

State machine::

    UNINITIALIZED --create/import--> UNLOCKED --lock/logout--> LOCKED
    LOCKED --unlock/restore_session--> UNLOCKED
    any --delete--> UNINITIALIZED

The durable store only ever sees the password-encrypted vault and the
plaintext address index.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainvault.config import Settings, get_settings
from chainvault.crypto import VAULT_VERSION, decrypt_vault, encrypt_vault
from chainvault.errors import (
    IncorrectPasswordError,
    InvalidInputError,
    InvalidPrivateKeyError,
    WalletExistsError,
    WalletNotFoundError,
)
from chainvault.ledger.database import get_session_factory
from chainvault.ledger.repository import WalletRepository
from chainvault.wallet.account import (
    Account,
    account_from_mnemonic,
    account_from_private_key,
    generate_account,
)
from chainvault.wallet.session import SessionCache, SessionState, VaultState

logger = logging.getLogger(__name__)


class KeyVault:
    """Generates, imports, encrypts and unlocks the account.

    Usage:
        vault = KeyVault()
        await vault.boot()
        if vault.state == VaultState.LOCKED:
            account = await vault.unlock(password)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        session_cache: Optional[SessionCache] = None,
        settings: Optional[Settings] = None,
        session_state: Optional[SessionState] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory or get_session_factory()
        self.session_cache = session_cache or SessionCache()
        self.session = session_state or SessionState()

    @property
    def state(self) -> VaultState:
        return self.session.state

    @property
    def address(self) -> Optional[str]:
        return self.session.address

    def require_account(self) -> Account:
        """Return the unlocked account or raise WalletLockedError."""
        return self.session.require_account()

    # ======================
    # Lifecycle
    # ======================

    async def load(self) -> VaultState:
        """Derive the initial state from the durable store."""
        async with self._session_factory() as db:
            address = await WalletRepository(db).get_stored_address()

        if address is None:
            self.session.reset()
        elif not self.session.is_unlocked:
            self.session.address = address
            self.session.state = VaultState.LOCKED
        return self.session.state

    async def boot(self) -> Optional[Account]:
        """Load state and try to resume a cached session."""
        await self.load()
        if self.state == VaultState.LOCKED:
            return self.restore_session()
        return self.session.account

    async def is_wallet_created(self) -> bool:
        async with self._session_factory() as db:
            return await WalletRepository(db).get_vault() is not None

    async def create(self, password: str, overwrite: bool = False) -> Account:
        """Create a new account from a fresh mnemonic and unlock it.

        Raises:
            WalletExistsError: If a vault exists and overwrite is False
            InvalidInputError: If the password is empty
        """
        self._check_password(password)
        await self._check_can_store(overwrite)
        account = generate_account()
        await self._store_and_unlock(account, password)
        logger.info(f"Wallet created: {account.address}")
        return account

    async def import_from_mnemonic(self, phrase: str, password: str, overwrite: bool = False) -> Account:
        """Import an account from a BIP-39 phrase.

        Raises:
            InvalidMnemonicError: If the phrase is not valid BIP-39
        """
        self._check_password(password)
        account = account_from_mnemonic(phrase)
        await self._check_can_store(overwrite)
        await self._store_and_unlock(account, password)
        logger.info(f"Wallet imported from mnemonic: {account.address}")
        return account

    async def import_from_private_key(self, key: str, password: str, overwrite: bool = False) -> Account:
        """Import an account from a raw private key.

        Raises:
            InvalidPrivateKeyError: If the key is not 32 bytes of hex
        """
        self._check_password(password)
        account = account_from_private_key(key)
        await self._check_can_store(overwrite)
        await self._store_and_unlock(account, password)
        logger.info(f"Wallet imported from private key: {account.address}")
        return account

    async def unlock(self, password: str) -> Account:
        """Decrypt the vault and hold the account in memory.

        Raises:
            WalletNotFoundError: If no vault is stored
            IncorrectPasswordError: On a wrong password or corrupted vault
        """
        async with self._session_factory() as db:
            vault = await WalletRepository(db).get_vault()
            if vault is None:
                raise WalletNotFoundError("No wallet has been created")
            encrypted, stored_address = vault.encrypted_vault, vault.address

        plaintext = decrypt_vault(encrypted, password, self.settings.pbkdf2_iterations)
        try:
            account = Account.from_payload(plaintext)
        except InvalidPrivateKeyError:
            raise IncorrectPasswordError() from None

        if account.address.lower() != stored_address.lower():
            account.wipe()
            raise IncorrectPasswordError()

        self.session.set_unlocked(account)
        self.persist_session(account)
        logger.info(f"Wallet unlocked: {account.address}")
        return account

    def persist_session(self, account: Optional[Account] = None) -> None:
        """Cache the unlocked account in the volatile store."""
        self.session_cache.persist(account or self.require_account())

    def restore_session(self) -> Optional[Account]:
        """Resume from the volatile store. Never raises."""
        account = self.session_cache.restore()
        if account is None:
            return None

        if self.session.address and self.session.address.lower() != account.address.lower():
            logger.warning("Cached session does not match the stored wallet, discarding")
            account.wipe()
            self.session_cache.clear()
            return None

        self.session.set_unlocked(account)
        logger.info(f"Session restored: {account.address}")
        return account

    def lock(self) -> None:
        """Wipe in-memory key material and the cached session."""
        self.session.set_locked()
        self.session_cache.clear()
        logger.info("Wallet locked")

    def logout(self) -> None:
        """End the session. The durable vault is untouched."""
        self.lock()

    async def delete(self) -> None:
        """Remove the durable vault, address index and session."""
        async with self._session_factory() as db:
            await WalletRepository(db).delete_vault()
            await db.commit()
        self.session_cache.clear()
        self.session.reset()
        logger.info("Wallet deleted")

    # ======================
    # Internals
    # ======================

    @staticmethod
    def _check_password(password: str) -> None:
        if not isinstance(password, str) or not password:
            raise InvalidInputError("Password must not be empty")

    async def _check_can_store(self, overwrite: bool) -> None:
        if overwrite:
            return
        if await self.is_wallet_created():
            raise WalletExistsError("A wallet already exists")

    async def _store_and_unlock(self, account: Account, password: str) -> None:
        encrypted = encrypt_vault(account.to_payload(), password, self.settings.pbkdf2_iterations)
        async with self._session_factory() as db:
            await WalletRepository(db).save_vault(account.address, encrypted, VAULT_VERSION)
            await db.commit()
        self.session.set_unlocked(account)
        self.persist_session(account)

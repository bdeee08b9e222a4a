"""Key custody: accounts, session cache and the key vault."""

from chainvault.wallet.account import (
    Account,
    Secret,
    account_from_mnemonic,
    account_from_private_key,
    generate_account,
)
from chainvault.wallet.session import (
    MemoryStore,
    SessionCache,
    SessionState,
    VaultState,
    VolatileStore,
)
from chainvault.wallet.vault import KeyVault

__all__ = [
    "Account",
    "Secret",
    "generate_account",
    "account_from_mnemonic",
    "account_from_private_key",
    "MemoryStore",
    "SessionCache",
    "SessionState",
    "VaultState",
    "VolatileStore",
    "KeyVault",
]

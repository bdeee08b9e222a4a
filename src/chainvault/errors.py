"""Error taxonomy for the wallet engine.

Every exception raised by chainvault derives from ChainVaultError and carries
an ErrorKind so callers can branch on the category without string matching.
Write paths (send, registration) turn these into result objects; read paths
degrade to zero/empty values instead of propagating.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category of a failure."""

    INVALID_INPUT = "invalid_input"        # Malformed address/mnemonic/key
    AUTH_FAILURE = "auth_failure"          # Wrong password / decryption failure
    LOCKED = "locked"                      # Wallet not unlocked
    INSUFFICIENT_GAS = "insufficient_gas"
    NONCE_CONFLICT = "nonce_conflict"
    REVERTED = "reverted"
    REJECTED = "rejected"                  # Node rejected for other reasons
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    DECODE = "decode"                      # Malformed RPC or ABI response
    CANCELLED = "cancelled"


class ChainVaultError(Exception):
    """Base exception for all wallet engine errors."""

    kind: ErrorKind = ErrorKind.REJECTED

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


# ======================
# Input validation
# ======================


class InvalidInputError(ChainVaultError):
    """Raised when user-supplied input is malformed."""

    kind = ErrorKind.INVALID_INPUT


class InvalidAddressError(InvalidInputError):
    """Raised for a malformed EVM address."""


class InvalidMnemonicError(InvalidInputError):
    """Raised for a mnemonic that fails BIP-39 validation."""


class InvalidPrivateKeyError(InvalidInputError):
    """Raised for a private key that is not 32 bytes of hex."""


class UnknownChainError(InvalidInputError):
    """Raised when a chain key is not in the chain table."""


class UnknownSelectorError(ChainVaultError):
    """Raised when encoding a function that is not in the selector table.

    This is a static configuration error, never a runtime failure mode.
    """

    kind = ErrorKind.INVALID_INPUT


# ======================
# Key vault
# ======================


class AuthFailureError(ChainVaultError):
    """Raised when a vault cannot be decrypted."""

    kind = ErrorKind.AUTH_FAILURE


class IncorrectPasswordError(AuthFailureError):
    """Raised on a wrong password or a corrupted vault.

    Both cases deliberately share one message.
    """

    def __init__(self, message: str = "Incorrect password or corrupted vault"):
        super().__init__(message)


class WalletNotFoundError(ChainVaultError):
    """Raised when no encrypted vault has been stored yet."""

    kind = ErrorKind.INVALID_INPUT


class WalletExistsError(ChainVaultError):
    """Raised when creating a wallet over an existing vault."""

    kind = ErrorKind.INVALID_INPUT


class WalletLockedError(ChainVaultError):
    """Raised when an operation needs an unlocked account."""

    kind = ErrorKind.LOCKED


# ======================
# RPC
# ======================


class RpcError(ChainVaultError):
    """Base class for JSON-RPC failures."""

    kind = ErrorKind.TRANSPORT


class RpcRemoteError(RpcError):
    """The node answered with a JSON-RPC ``error`` object."""

    kind = ErrorKind.REJECTED

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"{self.message} (code {self.code})"


class RpcTransportError(RpcError):
    """Network failure talking to the endpoint."""

    kind = ErrorKind.TRANSPORT


class RpcTimeoutError(RpcTransportError):
    """The request exceeded its timeout."""

    kind = ErrorKind.TIMEOUT


class RpcDecodeError(RpcError):
    """The response was not valid JSON-RPC or had an unexpected shape."""

    kind = ErrorKind.DECODE


# ======================
# Concurrency
# ======================


class OperationCancelled(ChainVaultError):
    """Raised when a cancellation token fires during a network operation."""

    kind = ErrorKind.CANCELLED


class LockTimeoutError(ChainVaultError):
    """Raised when a nonce lock cannot be acquired in time."""

    kind = ErrorKind.NONCE_CONFLICT

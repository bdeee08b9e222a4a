"""Account key material.

Key generation and derivation use eth-account. BIP-39 mnemonics derive the
first account on the standard Ethereum path m/44'/60'/0'/0/0.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from eth_account import Account as EthAccount
from eth_utils import ValidationError, to_checksum_address, to_hex

from chainvault.errors import (
    InvalidMnemonicError,
    InvalidPrivateKeyError,
    WalletLockedError,
)

logger = logging.getLogger(__name__)

DERIVATION_PATH = "m/44'/60'/0'/0/0"
MNEMONIC_WORDS = 12

EthAccount.enable_unaudited_hdwallet_features()


class Secret:
    """Holder for a sensitive string that never prints its value.

    ``wipe()`` drops the only reference the engine keeps. Python strings are
    immutable, so this is the strongest zeroing available without native code.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value: Optional[str] = value

    def reveal(self) -> str:
        """Return the plaintext value.

        Raises:
            WalletLockedError: If the secret was wiped
        """
        if self._value is None:
            raise WalletLockedError("Key material has been wiped")
        return self._value

    def wipe(self) -> None:
        self._value = None

    @property
    def wiped(self) -> bool:
        return self._value is None

    def __repr__(self) -> str:
        return "Secret(****)" if self._value is not None else "Secret(<wiped>)"

    __str__ = __repr__


@dataclass
class Account:
    """An unlocked account.

    Only the address is ever shown; secrets mask themselves.
    """

    address: str
    private_key: Secret = field(repr=False)
    mnemonic: Optional[Secret] = field(default=None, repr=False)

    def wipe(self) -> None:
        """Zero in-memory key material."""
        self.private_key.wipe()
        if self.mnemonic is not None:
            self.mnemonic.wipe()

    @property
    def has_mnemonic(self) -> bool:
        return self.mnemonic is not None and not self.mnemonic.wiped

    def to_payload(self) -> str:
        """Serialize for encryption. The result must never be stored in clear."""
        return json.dumps({
            "address": self.address,
            "privateKey": self.private_key.reveal(),
            "mnemonic": self.mnemonic.reveal() if self.has_mnemonic else None,
        })

    @classmethod
    def from_payload(cls, payload: str) -> "Account":
        """Rebuild an account from a decrypted payload.

        The address is re-derived from the private key and must match.

        Raises:
            InvalidPrivateKeyError: If the payload is malformed or inconsistent
        """
        try:
            data = json.loads(payload)
            private_key = data["privateKey"]
            stored_address = data.get("address")
            mnemonic = data.get("mnemonic")
        except (ValueError, KeyError, TypeError, AttributeError):
            raise InvalidPrivateKeyError("Malformed key payload") from None

        account = account_from_private_key(private_key)
        if stored_address and stored_address.lower() != account.address.lower():
            raise InvalidPrivateKeyError("Key payload address mismatch")
        if mnemonic:
            account.mnemonic = Secret(mnemonic)
        return account


def normalize_mnemonic(phrase: str) -> str:
    """Collapse whitespace and lowercase a mnemonic phrase."""
    return " ".join(phrase.strip().lower().split())


def generate_account() -> Account:
    """Create a new account from a fresh BIP-39 mnemonic."""
    eth_account, phrase = EthAccount.create_with_mnemonic(
        num_words=MNEMONIC_WORDS, account_path=DERIVATION_PATH
    )
    logger.info(f"Generated new account {eth_account.address}")
    return Account(
        address=to_checksum_address(eth_account.address),
        private_key=Secret(to_hex(eth_account.key)),
        mnemonic=Secret(phrase),
    )


def account_from_mnemonic(phrase: str) -> Account:
    """Derive the first account of a mnemonic.

    Raises:
        InvalidMnemonicError: If the phrase fails BIP-39 validation
    """
    if not isinstance(phrase, str):
        raise InvalidMnemonicError("Mnemonic must be a string")
    normalized = normalize_mnemonic(phrase)
    if len(normalized.split()) not in (12, 15, 18, 21, 24):
        raise InvalidMnemonicError("Mnemonic must have 12, 15, 18, 21 or 24 words")

    try:
        eth_account = EthAccount.from_mnemonic(normalized, account_path=DERIVATION_PATH)
    except (ValueError, ValidationError):
        raise InvalidMnemonicError("Invalid mnemonic phrase") from None

    return Account(
        address=to_checksum_address(eth_account.address),
        private_key=Secret(to_hex(eth_account.key)),
        mnemonic=Secret(normalized),
    )


def normalize_private_key(key: str) -> str:
    """Return a 0x-prefixed lowercase 32-byte hex key.

    Raises:
        InvalidPrivateKeyError: If the value is not 32 bytes of hex
    """
    if not isinstance(key, str):
        raise InvalidPrivateKeyError("Private key must be a string")
    body = key.strip()
    if body.startswith(("0x", "0X")):
        body = body[2:]
    if len(body) != 64:
        raise InvalidPrivateKeyError("Private key must be 32 bytes of hex")
    try:
        bytes.fromhex(body)
    except ValueError:
        raise InvalidPrivateKeyError("Private key must be 32 bytes of hex") from None
    return "0x" + body.lower()


def account_from_private_key(key: str) -> Account:
    """Build an account from a raw private key (no mnemonic).

    Raises:
        InvalidPrivateKeyError: If the key is malformed or outside the curve order
    """
    normalized = normalize_private_key(key)
    try:
        eth_account = EthAccount.from_key(normalized)
    except (ValueError, ValidationError):
        raise InvalidPrivateKeyError("Private key is not a valid secp256k1 key") from None

    return Account(
        address=to_checksum_address(eth_account.address),
        private_key=Secret(normalized),
    )

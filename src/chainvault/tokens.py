"""Token catalogue and amount formatting.

Featured tokens are built in; users can track extra ERC-20 contracts, which
are stored durably as custom tokens.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from eth_utils import is_hex_address, to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainvault.chains import ChainConfig, get_chain
from chainvault.errors import InvalidAddressError, InvalidInputError
from chainvault.ledger.database import get_session_factory
from chainvault.ledger.repository import WalletRepository

logger = logging.getLogger(__name__)

_AMOUNT_RE = re.compile(r"^\d*(\.\d*)?$")


@dataclass(frozen=True)
class TokenInfo:
    """Metadata of a native coin or an ERC-20 token."""

    contract_address: Optional[str]   # None for the native coin
    chain: str
    symbol: str
    name: str
    decimals: int = 18
    price_id: Optional[str] = None    # CoinGecko id for price lookup

    @property
    def is_native(self) -> bool:
        return self.contract_address is None


def native_token(chain: ChainConfig) -> TokenInfo:
    """TokenInfo of a chain's native coin."""
    return TokenInfo(
        contract_address=None,
        chain=chain.key,
        symbol=chain.native_symbol,
        name=chain.name,
        decimals=chain.decimals,
    )


FEATURED_TOKENS: tuple[TokenInfo, ...] = (
    TokenInfo(
        contract_address="0x2565ae0385659badCada1031DB704442E1b69982",
        chain="ethereum",
        symbol="ASM",
        name="Assemble Protocol",
        decimals=18,
        price_id="assemble-protocol",
    ),
    TokenInfo(
        contract_address="0x3b53604113B5677291BFc0bc255379E7a796559b",
        chain="base",
        symbol="ASM",
        name="Assemble Protocol",
        decimals=18,
        price_id="assemble-protocol",
    ),
)


# ======================
# Formatting
# ======================


def format_token_amount(raw_amount: int, decimals: int, max_decimals: int = 6) -> str:
    """Format a raw integer amount for display.

    The fraction is truncated (not rounded) to *max_decimals* places and
    trailing zeros are trimmed.

    Example:
        format_token_amount(1_500_000, 6) -> "1.5"
    """
    if raw_amount == 0:
        return "0"
    sign = "-" if raw_amount < 0 else ""
    raw_amount = abs(raw_amount)

    whole, remainder = divmod(raw_amount, 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    frac = str(remainder).rjust(decimals, "0")[:max_decimals].rstrip("0")
    if not frac:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac}"


def parse_token_amount(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Parse a human amount into raw integer units.

    Fraction digits beyond *decimals* are truncated.

    Example:
        parse_token_amount("1.5", 6) -> 1500000

    Raises:
        InvalidInputError: If the amount is negative or not a decimal number
    """
    if isinstance(amount, bool):
        raise InvalidInputError("Amount must be a number")
    if isinstance(amount, int):
        if amount < 0:
            raise InvalidInputError("Amount must not be negative")
        return amount * 10**decimals
    if isinstance(amount, Decimal):
        try:
            text = format(amount, "f")
        except (ValueError, InvalidOperation):
            raise InvalidInputError("Amount must be a finite number") from None
    else:
        text = str(amount).strip()

    if text.startswith("-"):
        raise InvalidInputError("Amount must not be negative")
    if not text or text == "." or not _AMOUNT_RE.match(text):
        raise InvalidInputError(f"Invalid amount: {amount!r}")

    whole, _, frac = text.partition(".")
    frac = frac[:decimals].ljust(decimals, "0")
    return int(whole or "0") * 10**decimals + int(frac or "0")


# ======================
# Catalogue
# ======================


class TokenCatalogue:
    """Featured tokens plus the user's durable custom token list."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    @staticmethod
    def featured(chain: Optional[str] = None) -> list[TokenInfo]:
        return [t for t in FEATURED_TOKENS if chain is None or t.chain == chain]

    async def list_custom_tokens(self, chain: Optional[str] = None) -> list[TokenInfo]:
        async with self._session_factory() as db:
            rows = await WalletRepository(db).list_custom_tokens(chain)
        return [
            TokenInfo(
                contract_address=to_checksum_address(row.contract_address),
                chain=row.chain,
                symbol=row.symbol,
                name=row.name,
                decimals=row.decimals,
                price_id=row.price_id,
            )
            for row in rows
        ]

    async def list_tokens(self, chain: Optional[str] = None) -> list[TokenInfo]:
        """Featured tokens followed by custom tokens, without duplicates."""
        tokens = self.featured(chain)
        seen = {(t.chain, t.contract_address.lower()) for t in tokens}
        for token in await self.list_custom_tokens(chain):
            key = (token.chain, token.contract_address.lower())
            if key not in seen:
                seen.add(key)
                tokens.append(token)
        return tokens

    async def add_custom_token(self, token: TokenInfo) -> TokenInfo:
        """Track a custom ERC-20 token.

        Raises:
            InvalidAddressError: If the contract address is malformed
            UnknownChainError: If the chain is not supported
        """
        get_chain(token.chain)
        if not token.contract_address or not is_hex_address(token.contract_address):
            raise InvalidAddressError(f"Invalid token contract: {token.contract_address!r}")

        async with self._session_factory() as db:
            await WalletRepository(db).add_custom_token(
                chain=token.chain,
                contract_address=token.contract_address,
                symbol=token.symbol,
                name=token.name,
                decimals=token.decimals,
                price_id=token.price_id,
            )
            await db.commit()
        return token

    async def remove_custom_token(self, chain: str, contract_address: str) -> bool:
        async with self._session_factory() as db:
            removed = await WalletRepository(db).remove_custom_token(chain, contract_address)
            await db.commit()
        if removed:
            logger.info(f"Removed custom token {contract_address} on {chain}")
        return removed

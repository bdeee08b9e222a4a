"""Repository for durable wallet state."""

import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from chainvault.ledger.models import CustomToken, RegistrationEntry, WalletVault

logger = logging.getLogger(__name__)


class WalletRepository:
    """Repository for vault, registration and custom token records.

    Account addresses are keyed case-insensitively (stored lowercase).
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # Vault operations
    async def get_vault(self) -> Optional[WalletVault]:
        """Get the stored vault, if a wallet was created."""
        stmt = select(WalletVault).order_by(WalletVault.id).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_stored_address(self) -> Optional[str]:
        """Get the plaintext address index."""
        vault = await self.get_vault()
        return vault.address if vault else None

    async def save_vault(self, address: str, encrypted_vault: str, version: int = 2) -> WalletVault:
        """Store the encrypted vault, replacing any previous one."""
        await self.session.execute(delete(WalletVault))
        vault = WalletVault(address=address, encrypted_vault=encrypted_vault, version=version)
        self.session.add(vault)
        await self.session.flush()
        return vault

    async def delete_vault(self) -> bool:
        """Remove the vault and address index."""
        result = await self.session.execute(delete(WalletVault))
        return result.rowcount > 0

    # Registration operations
    async def get_registrations(self, wallet_address: str) -> list[RegistrationEntry]:
        """Get all chain registrations for an account, oldest first."""
        stmt = (
            select(RegistrationEntry)
            .where(RegistrationEntry.wallet_address == wallet_address.lower())
            .order_by(RegistrationEntry.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_registration(self, wallet_address: str, chain: str) -> Optional[RegistrationEntry]:
        stmt = select(RegistrationEntry).where(
            RegistrationEntry.wallet_address == wallet_address.lower(),
            RegistrationEntry.chain == chain,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_registration(
        self,
        wallet_address: str,
        chain: str,
        chain_id: int,
        tx_hash: Optional[str],
        explorer_url: Optional[str],
        verified: bool,
    ) -> RegistrationEntry:
        """Record a chain registration additively.

        An existing entry is never removed or downgraded: ``verified`` can only
        go from False to True, and a missing tx hash is filled in.
        """
        entry = await self.get_registration(wallet_address, chain)

        if entry is None:
            entry = RegistrationEntry(
                wallet_address=wallet_address.lower(),
                chain=chain,
                chain_id=chain_id,
                tx_hash=tx_hash,
                explorer_url=explorer_url,
                verified=verified,
            )
            self.session.add(entry)
        else:
            if verified and not entry.verified:
                entry.verified = True
            if tx_hash and not entry.tx_hash:
                entry.tx_hash = tx_hash
                entry.explorer_url = explorer_url

        await self.session.flush()
        return entry

    async def set_registration_verified(
        self, wallet_address: str, chain: str, verified: bool
    ) -> Optional[RegistrationEntry]:
        """Overwrite the verified flag after an explicit on-chain re-check."""
        entry = await self.get_registration(wallet_address, chain)
        if entry is None:
            return None
        entry.verified = verified
        await self.session.flush()
        return entry

    async def delete_registrations(self, wallet_address: str) -> int:
        """Remove all registrations of an account. Returns the number deleted."""
        result = await self.session.execute(
            delete(RegistrationEntry).where(
                RegistrationEntry.wallet_address == wallet_address.lower()
            )
        )
        return result.rowcount

    # Custom token operations
    async def list_custom_tokens(self, chain: Optional[str] = None) -> list[CustomToken]:
        stmt = select(CustomToken).order_by(CustomToken.id)
        if chain:
            stmt = stmt.where(CustomToken.chain == chain)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_custom_token(self, chain: str, contract_address: str) -> Optional[CustomToken]:
        stmt = select(CustomToken).where(
            CustomToken.chain == chain,
            CustomToken.contract_address == contract_address.lower(),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_custom_token(
        self,
        chain: str,
        contract_address: str,
        symbol: str,
        name: str,
        decimals: int,
        price_id: Optional[str] = None,
    ) -> CustomToken:
        """Add a custom token; returns the existing row if already tracked."""
        existing = await self.get_custom_token(chain, contract_address)
        if existing is not None:
            return existing

        token = CustomToken(
            chain=chain,
            contract_address=contract_address.lower(),
            symbol=symbol,
            name=name,
            decimals=decimals,
            price_id=price_id,
        )
        self.session.add(token)
        await self.session.flush()
        logger.info(f"Added custom token {symbol} on {chain}")
        return token

    async def remove_custom_token(self, chain: str, contract_address: str) -> bool:
        result = await self.session.execute(
            delete(CustomToken).where(
                CustomToken.chain == chain,
                CustomToken.contract_address == contract_address.lower(),
            )
        )
        return result.rowcount > 0

"""SQLAlchemy models for durable wallet state.

Nothing stored here is a plaintext secret: the vault row holds only the
password-encrypted envelope, and the address index is public data.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class WalletVault(Base):
    """Encrypted key material plus the plaintext address index."""

    __tablename__ = "wallet_vaults"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False, index=True)
    encrypted_vault: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=2)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<WalletVault {self.address}>"


class RegistrationEntry(Base):
    """One chain on which an account completed registration."""

    __tablename__ = "chain_registrations"
    __table_args__ = (
        UniqueConstraint("wallet_address", "chain", name="uq_registration_wallet_chain"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    explorer_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # False while the transaction is only broadcast (receipt poll timed out)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<RegistrationEntry {self.wallet_address} {self.chain} verified={self.verified}>"


class CustomToken(Base):
    """User-added ERC-20 token tracked in balance views."""

    __tablename__ = "custom_tokens"
    __table_args__ = (
        UniqueConstraint("chain", "contract_address", name="uq_custom_token_chain_contract"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, default=18)
    price_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<CustomToken {self.symbol} on {self.chain}>"

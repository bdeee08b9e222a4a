"""Durable storage for the encrypted vault, registrations and custom tokens."""

from chainvault.ledger.database import close_db, get_db, get_engine, get_session_factory, init_db
from chainvault.ledger.models import Base, CustomToken, RegistrationEntry, WalletVault
from chainvault.ledger.repository import WalletRepository

__all__ = [
    "Base",
    "WalletVault",
    "RegistrationEntry",
    "CustomToken",
    "WalletRepository",
    "get_engine",
    "get_session_factory",
    "get_db",
    "init_db",
    "close_db",
]

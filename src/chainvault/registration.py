"""Multi-chain registration with the on-chain identity registry.

Per chain::

    NOT_REGISTERED -> SUBMITTING -> PENDING -> CONFIRMED | REVERTED | FAILED

Chains are processed concurrently and independently. A chain that is already
registered on-chain short-circuits to CONFIRMED without spending gas. The
durable record only ever grows: new chains are appended and ``verified`` is
upgraded on confirmation.

Registration unlocks the gated application features (see available_features).
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from eth_utils import is_hex_address, to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainvault import abi
from chainvault.chains import REGISTRATION_CHAINS, ChainConfig, get_chain
from chainvault.config import Settings, get_settings
from chainvault.errors import (
    ChainVaultError,
    ErrorKind,
    InvalidAddressError,
    InvalidInputError,
    OperationCancelled,
    RpcError,
    RpcRemoteError,
)
from chainvault.ledger.database import get_session_factory
from chainvault.ledger.models import RegistrationEntry
from chainvault.ledger.repository import WalletRepository
from chainvault.registry import RegistryReader
from chainvault.rpc import RpcClient
from chainvault.transactions import (
    ReceiptOutcome,
    ReceiptStatus,
    TransactionEngine,
    classify_broadcast_error,
)
from chainvault.utils.cancel import CancelToken
from chainvault.wallet.account import Account
from chainvault.wallet.session import SessionState

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_TEXT = 200


class ChainStatus(str, Enum):
    """Registration state on one chain."""

    NOT_REGISTERED = "not_registered"
    SUBMITTING = "submitting"
    PENDING = "pending"          # Broadcast, no receipt before the deadline
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    FAILED = "failed"


class RegistrationLevel(str, Enum):
    BASIC = "basic"
    FULL = "full"


class IdentityType(str, Enum):
    """Identity type stored in the registration description metadata."""

    HUMAN = "human"
    COMPANION = "companion"
    AGENT = "agent"


# Features unlocked by registration; chat and contract knowledge are always on
GATED_FEATURES = (
    "memory",
    "self_learning",
    "emotional_intelligence",
    "goals",
    "personality",
    "session_summaries",
    "proactive_suggestions",
    "export",
)
OPEN_FEATURES = ("chat", "contract_knowledge")


@dataclass
class ChainRegistration:
    """A chain on which the account is registered."""

    chain: str
    chain_id: int
    tx_hash: Optional[str]
    explorer_url: Optional[str]
    verified: bool
    registered_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: RegistrationEntry) -> "ChainRegistration":
        return cls(
            chain=entry.chain,
            chain_id=entry.chain_id,
            tx_hash=entry.tx_hash,
            explorer_url=entry.explorer_url,
            verified=entry.verified,
            registered_at=entry.registered_at,
        )


@dataclass
class RegistrationRecord:
    """Durable registration state of an account."""

    wallet_address: str
    chains: list[ChainRegistration] = field(default_factory=list)

    @property
    def level(self) -> RegistrationLevel:
        return RegistrationLevel.FULL if self.chains else RegistrationLevel.BASIC

    @property
    def chain_keys(self) -> list[str]:
        return [c.chain for c in self.chains]

    def get(self, chain: str) -> Optional[ChainRegistration]:
        for registration in self.chains:
            if registration.chain == chain:
                return registration
        return None


@dataclass
class ChainRegistrationResult:
    """Outcome of registering on one chain."""

    chain: str
    status: ChainStatus
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    already_registered: bool = False
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """Confirmed, or accepted by the network but not yet mined."""
        return self.status in (ChainStatus.CONFIRMED, ChainStatus.PENDING)


@dataclass
class RegistrationOutcome:
    """Per-chain results plus the updated durable record."""

    results: list[ChainRegistrationResult]
    record: RegistrationRecord

    @property
    def succeeded(self) -> list[ChainRegistrationResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[ChainRegistrationResult]:
        return [r for r in self.results if not r.success]

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)


# ======================
# Description metadata
# ======================


def build_registration_description(
    identity_type: IdentityType = IdentityType.AGENT,
    description: Optional[str] = None,
    specializations: Optional[Sequence[str]] = None,
    capabilities: Optional[Sequence[str]] = None,
    human_name: Optional[str] = None,
) -> str:
    """Build the JSON metadata stored in the registry's description field.

    Example:
        {"type":"agent","v":1,"spec":["research"],"caps":["nlp"]}
    """
    meta: dict = {"type": IdentityType(identity_type).value, "v": 1}
    if description:
        meta["desc"] = description[:MAX_DESCRIPTION_TEXT]
    if specializations:
        meta["spec"] = list(specializations)
    if capabilities:
        meta["caps"] = list(capabilities)
    if human_name:
        meta["human"] = human_name
    return json.dumps(meta, separators=(",", ":"))


def parse_identity_type(description: str) -> IdentityType:
    """Read the identity type from a registration description.

    Descriptions that are not JSON metadata are legacy agent registrations.
    """
    try:
        parsed = json.loads(description)
    except (ValueError, TypeError):
        return IdentityType.AGENT
    if isinstance(parsed, dict):
        try:
            return IdentityType(parsed.get("type"))
        except ValueError:
            pass
    return IdentityType.AGENT


def available_features(record: Optional[RegistrationRecord]) -> dict[str, bool]:
    """Feature gating map for an account's registration record."""
    registered = record is not None and record.level == RegistrationLevel.FULL
    features = {name: True for name in OPEN_FEATURES}
    features.update({name: registered for name in GATED_FEATURES})
    return features


def default_registration_name(address: str, prefix: str = "member") -> str:
    """Registration name derived from the address, e.g. ``member-ab12cd34``."""
    return f"{prefix}-{address[2:10].lower()}"


# ======================
# Orchestrator
# ======================


class RegistrationOrchestrator:
    """Drives idempotent registry writes across chains."""

    def __init__(
        self,
        rpc: RpcClient,
        engine: Optional[TransactionEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        session_state: Optional[SessionState] = None,
    ):
        self.rpc = rpc
        self.settings = settings or get_settings()
        self.engine = engine or TransactionEngine(rpc, settings=self.settings)
        self.registry = RegistryReader(rpc)
        self.session = session_state
        self._session_factory = session_factory or get_session_factory()

    async def register(
        self,
        account: Optional[Account] = None,
        chains: Optional[Sequence[str]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RegistrationOutcome:
        """Register the account on each target chain.

        Args:
            account: Unlocked account (taken from the session when None)
            chains: Chain keys (all registry chains when None)
            name: Registration name (derived from the address when None)
            description: Description metadata (human identity when None)
            cancel: Optional cancellation token

        Returns:
            RegistrationOutcome with one result per chain

        Raises:
            WalletLockedError: If no account is given and the session is locked
            InvalidInputError: If the name is empty or a chain key is unknown
        """
        if account is None:
            if self.session is None:
                raise InvalidInputError("No account given and no session attached")
            account = self.session.require_account()

        name = name if name is not None else default_registration_name(
            account.address, self.settings.registration_name_prefix
        )
        if not name.strip():
            raise InvalidInputError("Registration name must not be empty")
        if description is None:
            description = build_registration_description(IdentityType.HUMAN)

        targets = [get_chain(key, self.settings) for key in (chains or REGISTRATION_CHAINS)]
        logger.info(
            f"Registering {account.address} on {', '.join(c.key for c in targets)}"
        )

        results = await asyncio.gather(
            *(self._register_on_chain(chain, account, name, description, cancel) for chain in targets)
        )

        record = await self._record_results(account.address, targets, results)
        for result in results:
            if result.success:
                logger.info(f"Registration on {result.chain}: {result.status.value}")
            else:
                logger.error(
                    f"Registration on {result.chain} failed: {result.status.value} "
                    f"({result.error_kind.value if result.error_kind else 'unknown'}) {result.error or ''}"
                )
        return RegistrationOutcome(results=list(results), record=record)

    async def _register_on_chain(
        self,
        chain: ChainConfig,
        account: Account,
        name: str,
        description: str,
        cancel: Optional[CancelToken],
    ) -> ChainRegistrationResult:
        if not chain.registry_address:
            return ChainRegistrationResult(
                chain=chain.key,
                status=ChainStatus.FAILED,
                error_kind=ErrorKind.INVALID_INPUT,
                error=f"No identity registry on {chain.key}",
            )

        try:
            # 1. Existing registration short-circuits without spending gas
            if await self._is_registered_on_chain(chain, account.address, cancel):
                logger.info(f"{account.address} already registered on {chain.key}")
                return ChainRegistrationResult(
                    chain=chain.key, status=ChainStatus.CONFIRMED, already_registered=True
                )

            # 2. Minimum balance
            balance = await self.rpc.get_balance(chain.rpc_url, account.address, cancel=cancel)
            if balance < self.settings.registration_min_balance_wei:
                return ChainRegistrationResult(
                    chain=chain.key,
                    status=ChainStatus.FAILED,
                    error_kind=ErrorKind.INSUFFICIENT_GAS,
                    error=f"Insufficient {chain.native_symbol} for gas on {chain.name}",
                )

            # 3. Build call and check the estimated fee against the balance
            data = abi.encode_register_agent(name, description, abi.identity_hash(account.address))
            try:
                gas = await self.engine.gas.estimate(
                    chain, account.address, chain.registry_address, 0, data, cancel
                )
            except RpcRemoteError as e:
                return ChainRegistrationResult(
                    chain=chain.key,
                    status=ChainStatus.FAILED,
                    error_kind=classify_broadcast_error(e.message),
                    error=e.message,
                )
            if gas.estimated_fee_wei > balance:
                return ChainRegistrationResult(
                    chain=chain.key,
                    status=ChainStatus.FAILED,
                    error_kind=ErrorKind.INSUFFICIENT_GAS,
                    error=(
                        f"Estimated fee {gas.estimated_fee_wei} wei exceeds balance "
                        f"{balance} wei on {chain.name}"
                    ),
                )

            # 4. Sign and broadcast
            logger.info(f"Registration on {chain.key}: {ChainStatus.SUBMITTING.value}")
            tx = await self.engine.send(
                chain, account, chain.registry_address, value=0, data=data, gas=gas, cancel=cancel
            )
            if not tx.success:
                # A cancelled broadcast still carries the hash it may have landed under
                return ChainRegistrationResult(
                    chain=chain.key,
                    status=ChainStatus.FAILED,
                    tx_hash=tx.tx_hash,
                    explorer_url=tx.explorer_url,
                    error_kind=tx.error_kind,
                    error=tx.error,
                )

        except ChainVaultError as e:
            return ChainRegistrationResult(
                chain=chain.key,
                status=ChainStatus.FAILED,
                error_kind=e.kind,
                error=e.message or str(e),
            )
        except Exception as e:
            logger.error(f"Unexpected error registering on {chain.key}: {type(e).__name__}: {e}")
            return ChainRegistrationResult(
                chain=chain.key,
                status=ChainStatus.FAILED,
                error_kind=ErrorKind.REJECTED,
                error=f"Unexpected error: {type(e).__name__}",
            )

        # 5. Bounded receipt polling; the transaction is on the network from here
        try:
            outcome = await self.engine.wait_for_receipt(chain, tx.tx_hash, cancel=cancel)
        except OperationCancelled:
            logger.warning(f"Receipt polling on {chain.key} cancelled, {tx.tx_hash} left pending")
            outcome = ReceiptOutcome(status=ReceiptStatus.PENDING)
        except Exception as e:
            logger.error(f"Receipt polling on {chain.key} failed, {tx.tx_hash} left pending: {e}")
            outcome = ReceiptOutcome(status=ReceiptStatus.PENDING)

        if outcome.status == ReceiptStatus.CONFIRMED:
            status, error_kind, error = ChainStatus.CONFIRMED, None, None
        elif outcome.status == ReceiptStatus.REVERTED:
            status, error_kind, error = ChainStatus.REVERTED, ErrorKind.REVERTED, "Transaction reverted"
        else:
            status, error_kind, error = ChainStatus.PENDING, None, None

        return ChainRegistrationResult(
            chain=chain.key,
            status=status,
            tx_hash=tx.tx_hash,
            explorer_url=tx.explorer_url,
            error_kind=error_kind,
            error=error,
        )

    async def _is_registered_on_chain(
        self, chain: ChainConfig, address: str, cancel: Optional[CancelToken]
    ) -> bool:
        """Registry lookup; a failed read counts as not registered."""
        try:
            return await self.registry.get_agent(chain, address, cancel) is not None
        except RpcError as e:
            logger.warning(f"Registration check failed on {chain.key}, assuming not registered: {e}")
            return False

    async def _record_results(
        self,
        address: str,
        targets: Sequence[ChainConfig],
        results: Sequence[ChainRegistrationResult],
    ) -> RegistrationRecord:
        chain_ids = {chain.key: chain.chain_id for chain in targets}
        async with self._session_factory() as db:
            repo = WalletRepository(db)
            for result in results:
                if not result.success:
                    continue
                await repo.add_registration(
                    wallet_address=address,
                    chain=result.chain,
                    chain_id=chain_ids[result.chain],
                    tx_hash=result.tx_hash,
                    explorer_url=result.explorer_url,
                    verified=result.status == ChainStatus.CONFIRMED,
                )
            await db.commit()
            entries = await repo.get_registrations(address)
        return self._to_record(address, entries)

    # ======================
    # Record queries
    # ======================

    @staticmethod
    def _to_record(address: str, entries: Sequence[RegistrationEntry]) -> RegistrationRecord:
        return RegistrationRecord(
            wallet_address=to_checksum_address(address),
            chains=[ChainRegistration.from_entry(e) for e in entries],
        )

    @staticmethod
    def _require_address(address: str) -> str:
        if not isinstance(address, str) or not is_hex_address(address):
            raise InvalidAddressError(f"Invalid address: {address!r}")
        return address

    async def get_record(self, address: str) -> RegistrationRecord:
        """Durable registration record of an account (BASIC when empty)."""
        address = self._require_address(address)
        async with self._session_factory() as db:
            entries = await WalletRepository(db).get_registrations(address)
        return self._to_record(address, entries)

    async def is_registered(self, address: str) -> bool:
        return (await self.get_record(address)).level == RegistrationLevel.FULL

    async def unregister(self, address: str) -> int:
        """Drop the local record, reverting to BASIC. On-chain state is untouched."""
        address = self._require_address(address)
        async with self._session_factory() as db:
            removed = await WalletRepository(db).delete_registrations(address)
            await db.commit()
        logger.info(f"Unregistered {address} locally ({removed} chains)")
        return removed

    async def reverify(
        self,
        address: str,
        chains: Optional[Sequence[str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RegistrationRecord:
        """Re-check the registry and update ``verified`` per chain.

        Recorded chains get their flag set from the lookup; chains found
        registered on-chain but missing locally are appended. A failed read
        leaves that chain unchanged.
        """
        address = self._require_address(address)
        targets = [get_chain(key, self.settings) for key in (chains or REGISTRATION_CHAINS)]

        async def lookup(chain: ChainConfig) -> Optional[bool]:
            try:
                return await self.registry.get_agent(chain, address, cancel) is not None
            except RpcError as e:
                logger.warning(f"Re-verification read failed on {chain.key}: {e}")
                return None

        found = await asyncio.gather(*(lookup(chain) for chain in targets))

        async with self._session_factory() as db:
            repo = WalletRepository(db)
            for chain, registered in zip(targets, found):
                if registered is None:
                    continue
                entry = await repo.get_registration(address, chain.key)
                if entry is not None:
                    await repo.set_registration_verified(address, chain.key, registered)
                elif registered:
                    await repo.add_registration(
                        wallet_address=address,
                        chain=chain.key,
                        chain_id=chain.chain_id,
                        tx_hash=None,
                        explorer_url=None,
                        verified=True,
                    )
            await db.commit()
            entries = await repo.get_registrations(address)
        return self._to_record(address, entries)

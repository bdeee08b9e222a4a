"""Command line interface for read-only chain queries.

Usage:
    chainvault chains
    chainvault balances 0xADDRESS [--chain base] [--featured-only]
    chainvault registration 0xADDRESS [--verify]
    chainvault status
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainvault import __version__
from chainvault.balances import BalanceAggregator
from chainvault.chains import REGISTRATION_CHAINS, all_chains, get_chain
from chainvault.config import Settings, get_settings
from chainvault.errors import ChainVaultError
from chainvault.ledger.database import close_db, get_session_factory, init_db
from chainvault.registration import RegistrationOrchestrator, available_features
from chainvault.registry import RegistryReader
from chainvault.rpc import RpcClient
from chainvault.tokens import TokenCatalogue

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chainvault", description="Multi-chain wallet engine")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("chains", help="List supported chains")

    balances = sub.add_parser("balances", help="Show native and token balances")
    balances.add_argument("address", help="Account address")
    balances.add_argument(
        "--chain", action="append", dest="chains", help="Restrict to a chain (repeatable)"
    )
    balances.add_argument(
        "--featured-only", action="store_true", help="Skip user-added custom tokens"
    )

    registration = sub.add_parser("registration", help="Show registration record")
    registration.add_argument("address", help="Account address")
    registration.add_argument(
        "--verify", action="store_true", help="Re-check the registry on-chain first"
    )

    sub.add_parser("status", help="Check chain endpoints and registries")
    return parser


def configure_logging(settings: Settings) -> None:
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def cmd_chains(args, settings: Settings, **_) -> int:
    for chain in all_chains(settings):
        registry = chain.registry_address or "-"
        print(f"{chain.key:<10} {chain.chain_id:>6}  {chain.native_symbol:<5} {chain.explorer_url}  registry={registry}")
    return 0


async def cmd_balances(
    args,
    settings: Settings,
    rpc: RpcClient,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    chains = [get_chain(key, settings) for key in args.chains] if args.chains else all_chains(settings)
    chain_keys = {c.key for c in chains}

    if args.featured_only:
        tokens = [t for t in TokenCatalogue.featured() if t.chain in chain_keys]
    else:
        if session_factory is None:
            await init_db()
        catalogue = TokenCatalogue(session_factory)
        tokens = [t for t in await catalogue.list_tokens() if t.chain in chain_keys]

    balances = await BalanceAggregator(rpc, settings).fetch_all(args.address, tokens, chains)
    for balance in sorted(balances, key=lambda b: (b.chain, b.contract_address is not None, b.symbol)):
        suffix = f"  (error: {balance.error})" if balance.error else ""
        print(f"{balance.chain:<10} {balance.symbol:<8} {balance.balance_formatted}{suffix}")
    return 0


async def cmd_registration(
    args,
    settings: Settings,
    rpc: RpcClient,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    if session_factory is None:
        await init_db()
    orchestrator = RegistrationOrchestrator(rpc, session_factory=session_factory, settings=settings)

    if args.verify:
        record = await orchestrator.reverify(args.address)
    else:
        record = await orchestrator.get_record(args.address)

    print(f"address: {record.wallet_address}")
    print(f"level:   {record.level.value}")
    for registration in record.chains:
        state = "verified" if registration.verified else "unverified"
        print(f"  {registration.chain:<10} {state:<10} {registration.tx_hash or '-'}")

    enabled = [name for name, on in available_features(record).items() if on]
    print(f"features: {', '.join(enabled)}")
    return 0


async def cmd_status(args, settings: Settings, rpc: RpcClient, **_) -> int:
    reader = RegistryReader(rpc)
    chains = all_chains(settings)
    reports = await reader.check_all(chains)

    healthy = True
    for report in reports:
        if report.reachable:
            print(f"{report.chain:<10} ok     block={report.block_number} latency={report.latency_ms:.0f}ms")
        else:
            healthy = False
            print(f"{report.chain:<10} DOWN   {report.error}")

    for key in REGISTRATION_CHAINS:
        chain = get_chain(key, settings)
        alive = await reader.is_contract_alive(chain)
        count = await reader.get_agent_count(chain) if alive else None
        print(f"{key:<10} registry {'alive' if alive else 'missing'}  agents={count if count is not None else '-'}")
    return 0 if healthy else 1


COMMANDS = {
    "chains": cmd_chains,
    "balances": cmd_balances,
    "registration": cmd_registration,
    "status": cmd_status,
}


async def run_command(
    args: argparse.Namespace,
    settings: Optional[Settings] = None,
    rpc: Optional[RpcClient] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    """Dispatch a parsed command. Injected clients are not closed here."""
    settings = settings or get_settings()
    owns_rpc = rpc is None
    rpc = rpc or RpcClient(settings)
    try:
        return await COMMANDS[args.command](
            args, settings=settings, rpc=rpc, session_factory=session_factory
        )
    except ChainVaultError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        if owns_rpc:
            await rpc.close()
        if session_factory is None:
            await close_db()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    return asyncio.run(run_command(args, settings))


if __name__ == "__main__":
    sys.exit(main())

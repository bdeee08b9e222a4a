"""Tests for the command line interface."""

import pytest

from chainvault.cli import build_parser, main, run_command
from chainvault.ledger.repository import WalletRepository

from conftest import TEST_ADDRESS


def parse(*argv):
    return build_parser().parse_args(list(argv))


class TestParser:
    def test_balances_options(self):
        args = parse("balances", TEST_ADDRESS, "--chain", "base", "--chain", "avalanche", "--featured-only")
        assert args.command == "balances"
        assert args.chains == ["base", "avalanche"]
        assert args.featured_only is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse()


class TestCommands:
    def test_chains(self, capsys):
        assert main(["chains"]) == 0

        out = capsys.readouterr().out
        assert "ethereum" in out
        assert "8453" in out
        assert "registry=0x0161c45ad09Fd8dEA6F4A7396fafa3ca1Cffc1b5" in out

    @pytest.mark.asyncio
    async def test_balances(self, rpc, settings, nodes, session_factory, capsys):
        nodes["base"].set_balance(TEST_ADDRESS, 15 * 10**17)

        code = await run_command(
            parse("balances", TEST_ADDRESS, "--chain", "base"),
            settings=settings, rpc=rpc, session_factory=session_factory,
        )

        lines = capsys.readouterr().out.splitlines()
        assert code == 0
        assert any(line.split() == ["base", "ETH", "1.5"] for line in lines)
        assert any(line.split() == ["base", "ASM", "0"] for line in lines)
        assert nodes["ethereum"].calls == []

    @pytest.mark.asyncio
    async def test_invalid_address(self, rpc, settings, session_factory, capsys):
        code = await run_command(
            parse("balances", "0x123", "--featured-only"),
            settings=settings, rpc=rpc, session_factory=session_factory,
        )

        assert code == 2
        assert "error:" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_registration(self, rpc, settings, session_factory, db_session, capsys):
        await WalletRepository(db_session).add_registration(
            wallet_address=TEST_ADDRESS,
            chain="base",
            chain_id=8453,
            tx_hash="0xabc",
            explorer_url="https://basescan.org/tx/0xabc",
            verified=True,
        )
        await db_session.commit()

        code = await run_command(
            parse("registration", TEST_ADDRESS),
            settings=settings, rpc=rpc, session_factory=session_factory,
        )

        out = capsys.readouterr().out
        assert code == 0
        assert "level:   full" in out
        assert "verified" in out
        assert "memory" in out

    @pytest.mark.asyncio
    async def test_status(self, rpc, settings, nodes, session_factory, capsys):
        nodes["avalanche"].transport_failures["eth_chainId"] = 1

        code = await run_command(
            parse("status"), settings=settings, rpc=rpc, session_factory=session_factory
        )

        out = capsys.readouterr().out
        assert code == 1
        assert "avalanche  DOWN" in out
        assert "base       registry alive" in out

"""Tests for registry reads and chain health checks."""

import pytest

from chainvault.chains import all_chains, get_chain
from chainvault.errors import InvalidInputError, RpcError
from chainvault.registry import RegistryReader

from conftest import TEST_ADDRESS


class TestRegistryReads:
    @pytest.mark.asyncio
    async def test_get_agent(self, rpc, settings, nodes):
        nodes["base"].agents[TEST_ADDRESS.lower()] = ("alice", '{"type":"human","v":1}')
        reader = RegistryReader(rpc)

        agent = await reader.get_agent(get_chain("base", settings), TEST_ADDRESS)
        missing = await reader.get_agent(get_chain("avalanche", settings), TEST_ADDRESS)

        assert agent.name == "alice"
        assert agent.description == '{"type":"human","v":1}'
        assert missing is None

    @pytest.mark.asyncio
    async def test_get_agent_propagates_errors(self, rpc, settings, nodes):
        nodes["base"].errors["eth_call"] = {"code": -32000, "message": "execution reverted"}
        with pytest.raises(RpcError):
            await RegistryReader(rpc).get_agent(get_chain("base", settings), TEST_ADDRESS)

    @pytest.mark.asyncio
    async def test_no_registry(self, rpc, settings):
        with pytest.raises(InvalidInputError):
            await RegistryReader(rpc).get_agent(get_chain("ethereum", settings), TEST_ADDRESS)

    @pytest.mark.asyncio
    async def test_agent_count(self, rpc, settings, nodes):
        nodes["avalanche"].agents = {"0x" + "11" * 20: ("a", ""), "0x" + "22" * 20: ("b", "")}
        reader = RegistryReader(rpc)

        assert await reader.get_agent_count(get_chain("avalanche", settings)) == 2

        nodes["avalanche"].transport_failures["eth_call"] = 1
        assert await reader.get_agent_count(get_chain("avalanche", settings)) is None

    @pytest.mark.asyncio
    async def test_contract_alive(self, rpc, settings, nodes):
        reader = RegistryReader(rpc)
        base = get_chain("base", settings)

        assert await reader.is_contract_alive(base) is True

        nodes["base"].code.clear()
        assert await reader.is_contract_alive(base) is False


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_all_reachable(self, rpc, settings):
        reports = await RegistryReader(rpc).check_all(all_chains(settings))

        assert [r.chain for r in reports] == ["ethereum", "base", "avalanche"]
        assert all(r.reachable for r in reports)
        assert reports[1].chain_id == 8453
        assert reports[1].block_number == 1000

    @pytest.mark.asyncio
    async def test_wrong_chain_id(self, rpc, settings, nodes):
        nodes["base"].chain_id = 1

        health = await RegistryReader(rpc).check_chain_connectivity(get_chain("base", settings))

        assert not health.reachable
        assert "8453" in health.error

    @pytest.mark.asyncio
    async def test_unreachable(self, rpc, settings, nodes):
        nodes["avalanche"].transport_failures["eth_chainId"] = 1

        health = await RegistryReader(rpc).check_chain_connectivity(get_chain("avalanche", settings))

        assert not health.reachable
        assert health.error

    @pytest.mark.asyncio
    async def test_block_number(self, rpc, settings, nodes):
        reader = RegistryReader(rpc)
        chain = get_chain("ethereum", settings)

        assert await reader.get_block_number(chain) == 1000

        nodes["ethereum"].errors["eth_blockNumber"] = {"code": -32000, "message": "unavailable"}
        assert await reader.get_block_number(chain) is None

"""
Tests for the miniupnpc-backed gateway client.
"""
import time
from unittest.mock import MagicMock

import pytest

from upnp_daemon.errors import DiscoveryError, GatewayRejected, NoGatewayFound
from upnp_daemon.gateway import GatewayHandle, MiniUPnPGatewayClient, RemoveResult
from upnp_daemon.rules import Protocol


CONTROL_URL = "http://192.168.0.1:5000/ctl/IPConn"


def make_upnp(devices=1, lanaddr="192.168.0.10"):
    """Mock of a ``miniupnpc.UPnP`` object."""
    upnp = MagicMock()
    upnp.discover.return_value = devices
    upnp.selectigd.return_value = CONTROL_URL
    upnp.externalipaddress.return_value = "203.0.113.7"
    upnp.lanaddr = lanaddr
    upnp.addportmapping.return_value = True
    upnp.deleteportmapping.return_value = True
    return upnp


@pytest.fixture
def upnp():
    return make_upnp()


@pytest.fixture
def client(upnp):
    factory = MagicMock(return_value=upnp)
    return MiniUPnPGatewayClient(discovery_timeout=0.5, control_timeout=0.5, upnp_factory=factory)


@pytest.fixture
def handle(upnp):
    return GatewayHandle(identifier=CONTROL_URL, local_address="192.168.0.10", session=upnp)


class TestDiscovery:
    """Tests for gateway discovery."""

    @pytest.mark.asyncio
    async def test_discover_binds_to_candidate(self, client, upnp):
        gateway = await client.discover("192.168.0.10")

        assert gateway.identifier == CONTROL_URL
        assert gateway.local_address == "192.168.0.10"
        assert gateway.external_address == "203.0.113.7"
        assert gateway.session is upnp
        client._upnp_factory.assert_called_once_with(multicastif="192.168.0.10", discoverdelay=500)

    @pytest.mark.asyncio
    async def test_no_devices(self):
        factory = MagicMock(return_value=make_upnp(devices=0))
        client = MiniUPnPGatewayClient(upnp_factory=factory)

        assert await client.discover("10.0.0.5") is None

    @pytest.mark.asyncio
    async def test_no_igd_among_devices(self, client, upnp):
        upnp.selectigd.side_effect = Exception("No UPnP device discovered")

        assert await client.discover("192.168.0.10") is None

    @pytest.mark.asyncio
    async def test_external_ip_optional(self, client, upnp):
        upnp.externalipaddress.side_effect = Exception("UnknownError")

        gateway = await client.discover("192.168.0.10")

        assert gateway.external_address is None

    @pytest.mark.asyncio
    async def test_socket_error_becomes_discovery_error(self, client, upnp):
        upnp.discover.side_effect = OSError("Network is unreachable")

        with pytest.raises(DiscoveryError) as exc_info:
            await client.discover("192.168.0.10")

        assert exc_info.value.local_address == "192.168.0.10"

    @pytest.mark.asyncio
    async def test_discovery_timeout(self, upnp):
        upnp.discover.side_effect = lambda: time.sleep(0.3)
        client = MiniUPnPGatewayClient(
            discovery_timeout=0.05, control_timeout=0.05, upnp_factory=MagicMock(return_value=upnp)
        )

        with pytest.raises(NoGatewayFound):
            await client.discover("192.168.0.10")


class TestControl:
    """Tests for add/remove/list requests."""

    @pytest.mark.asyncio
    async def test_add_mapping(self, client, upnp, handle):
        await client.add_mapping(handle, "192.168.0.10", 12345, Protocol.UDP, 60, "Test 1")

        upnp.addportmapping.assert_called_once_with(12345, "UDP", "192.168.0.10", 12345, "Test 1", "", 60)

    @pytest.mark.asyncio
    async def test_add_rejected(self, client, upnp, handle):
        upnp.addportmapping.side_effect = Exception("ConflictInMappingEntry")

        with pytest.raises(GatewayRejected) as exc_info:
            await client.add_mapping(handle, "192.168.0.10", 80, Protocol.TCP, 0, "web")

        assert exc_info.value.operation == "add"
        assert exc_info.value.gateway == CONTROL_URL

    @pytest.mark.asyncio
    async def test_add_false_result(self, client, upnp, handle):
        upnp.addportmapping.return_value = False

        with pytest.raises(GatewayRejected):
            await client.add_mapping(handle, "192.168.0.10", 80, Protocol.TCP, 0, "web")

    @pytest.mark.asyncio
    async def test_remove_existing(self, client, upnp, handle):
        result = await client.remove_mapping(handle, 80, Protocol.TCP)

        assert result is RemoveResult.REMOVED
        upnp.deleteportmapping.assert_called_once_with(80, "TCP")

    @pytest.mark.asyncio
    async def test_remove_missing_is_not_an_error(self, client, upnp, handle):
        upnp.deleteportmapping.side_effect = Exception("NoSuchEntryInArray")

        assert await client.remove_mapping(handle, 80, Protocol.TCP) is RemoveResult.NOT_FOUND

    @pytest.mark.asyncio
    async def test_remove_other_error(self, client, upnp, handle):
        upnp.deleteportmapping.side_effect = Exception("ActionNotAuthorized")

        with pytest.raises(GatewayRejected):
            await client.remove_mapping(handle, 80, Protocol.TCP)

    @pytest.mark.asyncio
    async def test_list_mappings(self, client, upnp, handle):
        entries = [
            (12345, "UDP", ("192.168.0.10", 12345), "Test 1", "1", "", 60),
            (80, "TCP", ("192.168.0.20", 8080), "web", "1", "", 0),
            None,
        ]
        upnp.getgenericportmapping.side_effect = entries

        mappings = await client.list_mappings(handle)

        assert [(m.external_port, m.protocol) for m in mappings] == [(12345, Protocol.UDP), (80, Protocol.TCP)]
        assert mappings[1].internal_port == 8080
        assert mappings[0].lease_seconds == 60

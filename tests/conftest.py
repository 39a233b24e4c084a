"""
Shared test doubles for the gateway and interface capabilities.
"""
import asyncio
from typing import Dict, List, Optional, Set, Tuple

import pytest

from upnp_daemon.errors import GatewayRejected
from upnp_daemon.gateway import ExistingMapping, GatewayClient, GatewayHandle, RemoveResult
from upnp_daemon.interfaces import StaticInterfaceEnumerator
from upnp_daemon.metrics import MetricsCollector
from upnp_daemon.rules import Protocol


class FakeGatewayClient(GatewayClient):
    """
    In-memory gateways keyed by the local address they are reachable from.

    Several local addresses may share one gateway; its table is keyed by
    ``(port, protocol)`` just like a real IGD.
    """

    def __init__(
        self,
        gateways: Optional[Dict[str, str]] = None,
        reject_add: Optional[Set[str]] = None,
        reject_remove: Optional[Set[str]] = None,
        delay: float = 0.0
    ):
        self.gateways = dict(gateways or {})
        self.reject_add = set(reject_add or ())
        self.reject_remove = set(reject_remove or ())
        self.delay = delay
        self.tables: Dict[str, Dict[Tuple[int, Protocol], dict]] = {}
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def discover(self, local_address: str) -> Optional[GatewayHandle]:
        self.calls.append(("discover", local_address))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        gateway_id = self.gateways.get(local_address)
        if gateway_id is None:
            return None
        self.tables.setdefault(gateway_id, {})
        return GatewayHandle(identifier=gateway_id, local_address=local_address)

    async def remove_mapping(self, gateway, port, protocol) -> RemoveResult:
        self.calls.append(("remove", gateway.identifier, port, protocol))
        if gateway.identifier in self.reject_remove:
            raise GatewayRejected("remove refused", operation="remove", gateway=gateway.identifier)
        table = self.tables[gateway.identifier]
        if table.pop((port, protocol), None) is None:
            return RemoveResult.NOT_FOUND
        return RemoveResult.REMOVED

    async def add_mapping(self, gateway, local_address, port, protocol, lease_seconds, comment):
        self.calls.append(("add", gateway.identifier, local_address, port, protocol))
        if gateway.identifier in self.reject_add:
            raise GatewayRejected("ConflictInMappingEntry", operation="add", gateway=gateway.identifier)
        table = self.tables[gateway.identifier]
        if (port, protocol) in table:
            # Real gateways refuse an add for a port already mapped elsewhere
            raise GatewayRejected("ConflictInMappingEntry", operation="add", gateway=gateway.identifier)
        table[(port, protocol)] = {
            "client": local_address,
            "lease": lease_seconds,
            "comment": comment,
        }

    async def list_mappings(self, gateway) -> List[ExistingMapping]:
        return [
            ExistingMapping(
                external_port=port,
                protocol=protocol,
                internal_client=entry["client"],
                internal_port=port,
                description=entry["comment"],
                lease_seconds=entry["lease"],
            )
            for (port, protocol), entry in self.tables.get(gateway.identifier, {}).items()
        ]

    def discovered_from(self) -> List[str]:
        return [call[1] for call in self.calls if call[0] == "discover"]


class RecordingEnumerator(StaticInterfaceEnumerator):
    """Static enumerator that counts how often it was consulted."""

    def __init__(self, addresses):
        super().__init__(addresses)
        self.calls = 0

    def list_local_addresses(self):
        self.calls += 1
        return super().list_local_addresses()


@pytest.fixture
def metrics():
    """Fresh metrics collector, independent of the global one."""
    return MetricsCollector()


@pytest.fixture
def fake_gateway():
    """Gateway reachable from two local addresses, plus one unreachable address."""
    return FakeGatewayClient(gateways={
        "192.168.0.10": "http://192.168.0.1:5000/ctl/IPConn",
        "10.0.0.5": "http://10.0.0.1:49000/upnp/control/WANIPConn1",
    })

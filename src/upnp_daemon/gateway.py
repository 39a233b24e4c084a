"""
Gateway client capability.

The reconciliation engine talks to gateways only through :class:`GatewayClient`.
:class:`MiniUPnPGatewayClient` implements it on top of the ``miniupnpc``
binding (UPnP IGD discovery over SSDP, SOAP control requests).
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from upnp_daemon.errors import DiscoveryError, GatewayRejected, NoGatewayFound
from upnp_daemon.rules import Protocol


class RemoveResult(Enum):
    """Result of an idempotent remove operation."""
    REMOVED = "removed"
    NOT_FOUND = "not_found"


@dataclass
class GatewayHandle:
    """A gateway discovered from one local address."""
    identifier: str
    local_address: str
    external_address: Optional[str] = None
    session: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class ExistingMapping:
    """A mapping currently stored in a gateway's table."""
    external_port: int
    protocol: Protocol
    internal_client: str
    internal_port: int
    description: str = ""
    enabled: bool = True
    lease_seconds: int = 0
    remote_host: str = ""


class GatewayClient(ABC):
    """
    Discovery and control operations against gateways.

    Every call is bounded by a timeout; implementations raise
    :class:`DiscoveryError` or :class:`GatewayRejected` instead of hanging.
    """

    @abstractmethod
    async def discover(self, local_address: str) -> Optional[GatewayHandle]:
        """
        Find a gateway reachable from a local address.

        Args:
            local_address: Local interface address to search from

        Returns:
            Gateway handle, or None if no gateway answered
        """

    @abstractmethod
    async def remove_mapping(
        self,
        gateway: GatewayHandle,
        port: int,
        protocol: Protocol
    ) -> RemoveResult:
        """Remove a mapping; a missing mapping is reported, not raised."""

    @abstractmethod
    async def add_mapping(
        self,
        gateway: GatewayHandle,
        local_address: str,
        port: int,
        protocol: Protocol,
        lease_seconds: int,
        comment: str
    ) -> None:
        """Add (or overwrite) a mapping for ``(port, protocol)``."""

    async def list_mappings(self, gateway: GatewayHandle) -> List[ExistingMapping]:
        """List the gateway's current mappings."""
        raise NotImplementedError(f"{type(self).__name__} cannot list mappings")


# UPnP error 714, returned when deleting a mapping that does not exist
NOT_FOUND_MARKERS = ("NoSuchEntryInArray", "714")


class MiniUPnPGatewayClient(GatewayClient):
    """
    Gateway client backed by ``miniupnpc``.

    The binding is blocking, so every call runs in the default executor and is
    bounded by ``asyncio.wait_for``.
    """

    def __init__(
        self,
        discovery_timeout: float = 2.0,
        control_timeout: float = 5.0,
        upnp_factory: Optional[Callable[..., Any]] = None
    ):
        """
        Initialize the client.

        Args:
            discovery_timeout: SSDP discovery delay in seconds
            control_timeout: Timeout for each control request in seconds
            upnp_factory: Callable creating ``miniupnpc.UPnP`` objects
        """
        self.discovery_timeout = discovery_timeout
        self.control_timeout = control_timeout
        self._upnp_factory = upnp_factory
        self.logger = structlog.get_logger()

    def _create_upnp(self, local_address: str) -> Any:
        if self._upnp_factory is not None:
            factory = self._upnp_factory
        else:
            import miniupnpc
            factory = miniupnpc.UPnP
        return factory(
            multicastif=local_address,
            discoverdelay=int(self.discovery_timeout * 1000),
        )

    async def _call(self, func: Callable[..., Any], *args: Any, timeout: float) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, func, *args),
            timeout=timeout
        )

    def _discover_blocking(self, local_address: str) -> Optional[GatewayHandle]:
        upnp = self._create_upnp(local_address)

        devices = upnp.discover()
        if not devices:
            return None

        try:
            control_url = upnp.selectigd()
        except Exception as e:
            # selectigd raises when none of the discovered devices is an IGD
            self.logger.debug("igd_selection_failed", local_address=local_address, error=str(e))
            return None

        try:
            external_address = upnp.externalipaddress() or None
        except Exception as e:
            self.logger.debug("external_ip_unavailable", gateway=control_url, error=str(e))
            external_address = None

        return GatewayHandle(
            identifier=str(control_url),
            local_address=upnp.lanaddr or local_address,
            external_address=external_address,
            session=upnp,
        )

    async def discover(self, local_address: str) -> Optional[GatewayHandle]:
        # Allow the SSDP delay plus a margin for description fetch and IGD selection
        timeout = self.discovery_timeout + self.control_timeout
        try:
            gateway = await self._call(self._discover_blocking, local_address, timeout=timeout)
        except asyncio.TimeoutError:
            raise NoGatewayFound(
                f"Discovery from {local_address} timed out after {timeout:.1f}s",
                local_address=local_address,
            ) from None
        except Exception as e:
            raise DiscoveryError(
                f"Discovery from {local_address} failed: {e}",
                local_address=local_address,
            ) from e

        if gateway:
            self.logger.debug(
                "gateway_discovered",
                local_address=local_address,
                gateway=gateway.identifier,
                external_address=gateway.external_address,
            )
        return gateway

    async def remove_mapping(
        self,
        gateway: GatewayHandle,
        port: int,
        protocol: Protocol
    ) -> RemoveResult:
        upnp = gateway.session
        try:
            await self._call(upnp.deleteportmapping, port, protocol.value, timeout=self.control_timeout)
        except asyncio.TimeoutError:
            raise GatewayRejected(
                f"Remove {port}/{protocol.value} timed out",
                operation="remove",
                gateway=gateway.identifier,
            ) from None
        except Exception as e:
            if any(marker in str(e) for marker in NOT_FOUND_MARKERS):
                return RemoveResult.NOT_FOUND
            raise GatewayRejected(
                f"Remove {port}/{protocol.value} rejected: {e}",
                operation="remove",
                gateway=gateway.identifier,
            ) from e
        return RemoveResult.REMOVED

    async def add_mapping(
        self,
        gateway: GatewayHandle,
        local_address: str,
        port: int,
        protocol: Protocol,
        lease_seconds: int,
        comment: str
    ) -> None:
        upnp = gateway.session
        try:
            result = await self._call(
                upnp.addportmapping,
                port,
                protocol.value,
                local_address,
                port,
                comment,
                "",
                lease_seconds,
                timeout=self.control_timeout,
            )
        except asyncio.TimeoutError:
            raise GatewayRejected(
                f"Add {port}/{protocol.value} timed out",
                operation="add",
                gateway=gateway.identifier,
            ) from None
        except Exception as e:
            raise GatewayRejected(
                f"Add {port}/{protocol.value} rejected: {e}",
                operation="add",
                gateway=gateway.identifier,
            ) from e

        if not result:
            raise GatewayRejected(
                f"Add {port}/{protocol.value} returned failure",
                operation="add",
                gateway=gateway.identifier,
            )

    def _list_blocking(self, upnp: Any) -> List[ExistingMapping]:
        mappings = []
        index = 0
        while True:
            entry = upnp.getgenericportmapping(index)
            if entry is None:
                break
            # (eport, proto, (ihost, iport), desc, enabled, rhost, duration)
            eport, proto, (ihost, iport), desc, enabled, rhost, duration = entry
            mappings.append(ExistingMapping(
                external_port=int(eport),
                protocol=Protocol.parse(proto),
                internal_client=ihost,
                internal_port=int(iport),
                description=desc or "",
                enabled=bool(enabled),
                lease_seconds=int(duration or 0),
                remote_host=rhost or "",
            ))
            index += 1
        return mappings

    async def list_mappings(self, gateway: GatewayHandle) -> List[ExistingMapping]:
        try:
            return await self._call(self._list_blocking, gateway.session, timeout=self.control_timeout)
        except asyncio.TimeoutError:
            raise GatewayRejected(
                "Listing mappings timed out",
                operation="list",
                gateway=gateway.identifier,
            ) from None
        except Exception as e:
            raise GatewayRejected(
                f"Listing mappings failed: {e}",
                operation="list",
                gateway=gateway.identifier,
            ) from e

"""
Local interface enumeration.
"""
import ipaddress
import socket
from abc import ABC, abstractmethod
from typing import List, Sequence

import psutil


class InterfaceEnumerator(ABC):
    """Lists candidate local addresses for gateway discovery."""

    @abstractmethod
    def list_local_addresses(self) -> List[str]:
        """Return local addresses in enumeration order."""


class PsutilInterfaceEnumerator(InterfaceEnumerator):
    """
    Enumerates IPv4 addresses of the machine's interfaces via psutil.

    Loopback addresses are skipped since no gateway is reachable through them.
    """

    def __init__(self, include_down: bool = False):
        self.include_down = include_down

    def _is_up(self, name: str, stats: dict) -> bool:
        if self.include_down or name not in stats:
            return True
        return stats[name].isup

    def list_local_addresses(self) -> List[str]:
        addresses: List[str] = []
        stats = psutil.net_if_stats()

        for name, snics in psutil.net_if_addrs().items():
            if not self._is_up(name, stats):
                continue
            for snic in snics:
                if snic.family != socket.AF_INET:
                    continue
                address = ipaddress.IPv4Address(snic.address)
                if address.is_loopback or address.is_unspecified:
                    continue
                text = str(address)
                if text not in addresses:
                    addresses.append(text)

        return addresses


class StaticInterfaceEnumerator(InterfaceEnumerator):
    """Returns a fixed list of addresses."""

    def __init__(self, addresses: Sequence[str]):
        self.addresses = list(addresses)

    def list_local_addresses(self) -> List[str]:
        return list(self.addresses)

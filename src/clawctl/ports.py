"""Port allocation helpers for clawctl."""
from __future__ import annotations

import socket
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .state import PortRegistry, RegistryEntry

PAIR_STRIDE = 2
LOOPBACK_HOST = "127.0.0.1"


@dataclass(frozen=True, slots=True)
class PortPair:
    """Gateway/bridge ports reserved for one instance."""

    gateway: int
    bridge: int

    def __iter__(self) -> Iterator[int]:
        """Yield the gateway then the bridge port."""
        yield self.gateway
        yield self.bridge


def next_port_pair(entries: Iterable[RegistryEntry], default_gateway: int) -> PortPair:
    """Return the pair following the highest gateway port in *entries*.

    Ports are never recycled: a destroyed instance's pair is only handed out
    again if it happened to hold the maximum gateway port.
    """
    gateways = [entry.gateway_port for entry in entries]
    highest = max(gateways) if gateways else default_gateway
    gateway = highest + PAIR_STRIDE
    return PortPair(gateway=gateway, bridge=gateway + 1)


@dataclass(slots=True)
class PortAllocator:
    """Compute port pairs for new instances from the registry contents."""

    default_gateway: int
    host: str = LOOPBACK_HOST

    def allocate(self, registry: PortRegistry) -> PortPair:
        """Return the next free pair based solely on *registry*."""
        return next_port_pair(registry.entries(), self.default_gateway)

    def probe(self, pair: PortPair) -> list[int]:
        """Return the ports of *pair* currently bound on the loopback host.

        The result is advisory; allocation trusts the registry alone.
        """
        return [port for port in pair if _port_in_use(self.host, port)]


def _port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
        except OSError:
            return True
    return False


__all__ = ["PAIR_STRIDE", "PortAllocator", "PortPair", "next_port_pair"]

"""
Host and device address selection.

The host address is the first IPv4 address of an up, non-loopback
interface; the device gets the first address after it on the same subnet
that does not answer a TCP probe.
"""

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

import psutil

logger = logging.getLogger(__name__)


class AddressAllocationError(Exception):
    """No usable host address could be found"""
    pass


@dataclass(frozen=True)
class HostAddress:
    """IPv4 address of a local interface."""
    interface: str
    address: str
    netmask: str

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Interface(f"{self.address}/{self.netmask}").network


def host_addresses() -> List[HostAddress]:
    """List IPv4 addresses of interfaces that are up, loopback excluded."""
    stats = psutil.net_if_stats()
    found = []
    for name, addrs in psutil.net_if_addrs().items():
        if name in stats and not stats[name].isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            ip = ipaddress.IPv4Address(addr.address)
            if ip.is_loopback:
                continue
            found.append(HostAddress(name, addr.address, addr.netmask or "255.255.255.0"))
    return found


def candidate_hosts(
    exclude: Optional[str] = None,
    addresses: Optional[Iterable[HostAddress]] = None,
) -> List[HostAddress]:
    """
    Host addresses in the order they should be tried.

    The excluded address (the one a failed attempt used) goes last, so a
    single interface is reused rather than failing the retry.

    Raises:
        AddressAllocationError: If no interface has a usable address
    """
    candidates = list(host_addresses() if addresses is None else addresses)
    if not candidates:
        raise AddressAllocationError("are you connected to the network?")
    preferred = [host for host in candidates if host.address != exclude]
    reused = [host for host in candidates if host.address == exclude]
    return preferred + reused


def external_ip(
    exclude: Optional[str] = None,
    addresses: Optional[Iterable[HostAddress]] = None,
) -> HostAddress:
    """
    Pick the host address the device should download from.

    Args:
        exclude: Address to skip (the one a failed attempt used)
        addresses: Candidate addresses (default: host_addresses())

    Raises:
        AddressAllocationError: If no interface has a usable address
    """
    host = candidate_hosts(exclude, addresses)[0]
    if host.address == exclude:
        logger.warning(f"No other interface available, reusing {host.address}")
    return host


def address_in_use(address: str, port: int = 80, timeout: float = 2.0) -> bool:
    """
    Probe a candidate device address.

    A host that accepts or actively refuses the connection is in use;
    silence (timeout, unreachable) means the address is free.
    """
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except ConnectionRefusedError:
        return True
    except OSError:
        return False


def free_device_address(
    host: HostAddress,
    in_use: Callable[[str], bool] = address_in_use,
) -> str:
    """
    First address after the host address, inside its subnet, that is free.

    Raises:
        AddressAllocationError: If the subnet has no free address left
    """
    network = host.network
    server = ipaddress.IPv4Address(host.address)
    broadcast = network.broadcast_address
    candidate = server + 1
    while candidate < broadcast and candidate in network:
        if not in_use(str(candidate)):
            return str(candidate)
        logger.debug(f"{candidate} is taken")
        candidate += 1
    raise AddressAllocationError(f"No free address left after {server} in {network}")


class AddressAllocator:
    """
    Picks (server, device) address pairs.

    Example:
        allocate = AddressAllocator()
        server, device = allocate()
        server, device = allocate(server)  # different interface if any
    """

    def __init__(
        self,
        probe_port: int = 80,
        probe_timeout: float = 2.0,
        addresses: Optional[Callable[[], List[HostAddress]]] = None,
        in_use: Optional[Callable[[str], bool]] = None,
    ):
        self.addresses = addresses or host_addresses
        self.in_use = in_use or (lambda ip: address_in_use(ip, probe_port, probe_timeout))

    def __call__(self, previous_server: Optional[str] = None) -> Tuple[str, str]:
        """
        Pick a server address and a free device address next to it.

        Interfaces whose subnet has no room for the board (/32 VPN links,
        point-to-point) are skipped.

        Raises:
            AddressAllocationError: If no interface has a free device address
        """
        hosts = candidate_hosts(exclude=previous_server, addresses=self.addresses())
        for host in hosts:
            try:
                device = free_device_address(host, self.in_use)
            except AddressAllocationError as e:
                logger.warning(f"Skipping {host.interface}: {e}")
                continue
            if host.address == previous_server:
                logger.warning(f"No other interface available, reusing {host.address}")
            logger.info(f"Using {host.address} as server address and {device} as board address")
            return host.address, device
        raise AddressAllocationError(
            f"No free board address on any interface ({', '.join(h.interface for h in hosts)})"
        )

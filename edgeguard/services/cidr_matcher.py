#  EdgeGuard - CIDR Matcher
#
#  Subnet containment checks against the banned CIDR set.
#  IPv4 and IPv6 are parsed and compared independently; an address is
#  only ever compared with networks of its own family.
#
#  Depends on: store/connection.py, exceptions.py
#  Used by:    container.py, services/ban_registry.py

import ipaddress
import logging

from edgeguard.exceptions import InvalidCidrError, StoreUnavailableError
from edgeguard.store.connection import BAN_CIDRS, KeyValueStore

logger = logging.getLogger("edgeguard.cidr")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_address(value: str) -> IPAddress | None:
    """Parse as IPv4, then IPv6. Returns None for anything else."""
    value = value.strip()
    try:
        return ipaddress.IPv4Address(value)
    except ValueError:
        pass
    try:
        return ipaddress.IPv6Address(value)
    except ValueError:
        return None


def parse_network(value: str) -> IPNetwork | None:
    """Parse a CIDR as an IPv4 network, then IPv6. Host bits are allowed."""
    value = str(value).strip()
    try:
        return ipaddress.IPv4Network(value, strict=False)
    except ValueError:
        pass
    try:
        return ipaddress.IPv6Network(value, strict=False)
    except ValueError:
        return None


def parse_cidr(cidr: str) -> str:
    """Validate a CIDR string and return it stripped. Raises InvalidCidrError."""
    if not cidr or parse_network(cidr) is None:
        raise InvalidCidrError(f"Invalid CIDR format: {cidr}")
    return cidr.strip()


def is_loopback(identifier: str) -> bool:
    if identifier in ("127.0.0.1", "::1", "localhost"):
        return True
    addr = parse_address(identifier)
    return addr is not None and addr.is_loopback


class CidrMatcher:
    """Checks addresses against the CIDR ban set in the store.

    The set is re-read on every call so ban list changes apply to the very
    next request.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    async def is_in_any_banned_cidr(self, ip: str) -> bool:
        if not ip or is_loopback(ip):
            return False

        try:
            cidrs = await self._store.smembers(BAN_CIDRS)
        except StoreUnavailableError as e:
            logger.error("Error loading CIDR ban list for %s: %s", ip, e)
            return False
        if not cidrs:
            return False

        address = parse_address(ip)
        if address is None:
            logger.warning("Invalid IP address format: %r", ip)
            return False

        for cidr in cidrs:
            try:
                network = parse_network(cidr)
                if network is None:
                    logger.warning("Invalid CIDR format in ban list: %r", cidr)
                    continue
                if network.version != address.version:
                    continue
                if address in network:
                    logger.info("IP %s matched banned CIDR range %s", ip, cidr)
                    return True
            except Exception as e:
                logger.error("Error checking CIDR match for %s against %r: %s", ip, cidr, e)

        return False

"""
IP address helpers shared by identity resolution, abuse detection and logging.
"""

import hashlib
import ipaddress


def parse_ip(value: str | None) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse an address, tolerating surrounding whitespace and IPv4-mapped IPv6."""
    if not value:
        return None
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return address.ipv4_mapped
    return address


def mask_ip(value: str | None) -> str:
    """
    Mask an IP address for logging.

    IPv4 keeps the first three octets, IPv6 the first four groups.
    """
    address = parse_ip(value)
    if address is None:
        return "unknown"
    if address.version == 4:
        octets = str(address).split(".")
        return ".".join(octets[:3]) + ".xxx"
    groups = address.exploded.split(":")
    return ":".join(groups[:4]) + ":xxxx"


def ip_prefix(value: str | None) -> str | None:
    """Network prefix used as a coarse abuse-correlation signal (/24 or /64)."""
    address = parse_ip(value)
    if address is None:
        return None
    prefix_len = 24 if address.version == 4 else 64
    return str(ipaddress.ip_network(f"{address}/{prefix_len}", strict=False))


def hash_signal(value: str | None) -> str | None:
    """SHA-256 of a client signal, truncated to 32 hex chars."""
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]

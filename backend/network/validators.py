"""
CIDR parsing helpers for LAN network routing.

network_ip and subnet_mask are always derived from network_cidr through
``cidr_to_network`` so the stored columns cannot disagree with the CIDR.
"""
from ipaddress import IPv4Network


def is_valid_cidr(cidr: str) -> bool:
    """Check that a string is IPv4 CIDR notation (``a.b.c.d/n``)."""
    if not isinstance(cidr, str) or "/" not in cidr:
        return False
    try:
        IPv4Network(cidr.strip(), strict=False)
        return True
    except (ValueError, TypeError):
        return False


def cidr_to_network(cidr: str) -> tuple[str, str]:
    """
    Convert CIDR notation to a (network_ip, subnet_mask) pair.

    Host bits are masked off, so ``192.168.1.7/24`` yields ``192.168.1.0``.

    Raises:
        ValueError: if ``cidr`` is not IPv4 CIDR notation
    """
    if not is_valid_cidr(cidr):
        raise ValueError(f"Invalid CIDR notation: {cidr}")
    network = IPv4Network(cidr.strip(), strict=False)
    return str(network.network_address), str(network.netmask)


def normalize_cidr(cidr: str) -> str:
    """
    Canonical ``network/prefixlen`` form of a CIDR, used as the de-duplication key.

    Netmask suffixes are accepted: ``10.1.0.0/255.255.0.0`` yields ``10.1.0.0/16``.

    Raises:
        ValueError: if ``cidr`` is not IPv4 CIDR notation
    """
    if not is_valid_cidr(cidr):
        raise ValueError(f"Invalid CIDR notation: {cidr}")
    return IPv4Network(cidr.strip(), strict=False).with_prefixlen

"""MAC and IP address normalization."""

import ipaddress
import re
from typing import Optional

_MAC_PATTERN = re.compile(r"^([0-9a-f]{2}[:-]){5}[0-9a-f]{2}$")


def normalize_mac(mac_address: str) -> str:
    """Return the canonical lower-case, colon-separated form of a MAC address.

    Accepts upper or lower case with ``:`` or ``-`` separators.

    Raises:
        ValueError: If the value is not a 48-bit hardware address.
    """
    if not isinstance(mac_address, str):
        raise ValueError(f"Invalid MAC address: {mac_address!r}")
    value = mac_address.strip().lower()
    if not _MAC_PATTERN.match(value):
        raise ValueError(f"Invalid MAC address: '{mac_address}'")
    return value.replace("-", ":")


def normalize_ip(ip_address: Optional[str]) -> Optional[str]:
    """Validate an IPv4/IPv6 address; empty values become None."""
    if ip_address is None:
        return None
    value = str(ip_address).strip()
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        raise ValueError(f"Invalid IP address: '{ip_address}'")

"""IP address parsing and range classification used by the SSRF guard."""

import ipaddress
import re
from enum import Enum

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class AddressRange(str, Enum):
    """Range an IP address falls into. Only PUBLIC is fetchable."""

    PUBLIC = "public"
    PRIVATE = "private"
    LOOPBACK = "loopback"
    LINK_LOCAL = "link-local"
    UNIQUE_LOCAL = "unique-local"
    UNSPECIFIED = "unspecified"
    CARRIER_GRADE_NAT = "carrier-grade-nat"
    IPV4_MAPPED = "ipv4-mapped-ipv6"
    IPV4_COMPATIBLE = "ipv4-compatible-ipv6"
    NAT64 = "nat64"


# Checked in order; first containing network wins
IPV4_RANGES: list[tuple[ipaddress.IPv4Network, AddressRange]] = [
    (ipaddress.ip_network("127.0.0.0/8"), AddressRange.LOOPBACK),
    (ipaddress.ip_network("10.0.0.0/8"), AddressRange.PRIVATE),
    (ipaddress.ip_network("172.16.0.0/12"), AddressRange.PRIVATE),
    (ipaddress.ip_network("192.168.0.0/16"), AddressRange.PRIVATE),
    (ipaddress.ip_network("169.254.0.0/16"), AddressRange.LINK_LOCAL),  # cloud metadata
    (ipaddress.ip_network("0.0.0.0/8"), AddressRange.UNSPECIFIED),
    (ipaddress.ip_network("100.64.0.0/10"), AddressRange.CARRIER_GRADE_NAT),
]

IPV6_RANGES: list[tuple[ipaddress.IPv6Network, AddressRange]] = [
    (ipaddress.ip_network("::1/128"), AddressRange.LOOPBACK),
    (ipaddress.ip_network("::/128"), AddressRange.UNSPECIFIED),
    (ipaddress.ip_network("::ffff:0:0/96"), AddressRange.IPV4_MAPPED),
    (ipaddress.ip_network("::/96"), AddressRange.IPV4_COMPATIBLE),
    (ipaddress.ip_network("64:ff9b::/96"), AddressRange.NAT64),
    (ipaddress.ip_network("fc00::/7"), AddressRange.UNIQUE_LOCAL),
    (ipaddress.ip_network("fe80::/10"), AddressRange.LINK_LOCAL),
]

# Digits, dots and "x": short-form (127.1), octal-looking (0177.0.0.1),
# decimal-integer (2130706433) and 0x-prefixed forms.
_NUMERIC_CHARS = re.compile(r"^[0-9.x]+$")
# inet_aton() style labels, including hex digits after a 0x prefix (0xa.0.0.1)
_NUMERIC_LABEL = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$")


def parse_strict_ip(host: str) -> IPAddress | None:
    """Parse ``host`` as a canonical IPv4 or IPv6 address.

    Only dotted-quad IPv4 without leading zeros and standard IPv6 text are
    accepted. Returns None for anything else.
    """
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def looks_like_ip(host: str) -> bool:
    """Return True if ``host`` is, or could be read by some resolver as, an IP."""
    if parse_strict_ip(host) is not None:
        return True
    if _NUMERIC_CHARS.match(host):
        return True
    labels = host.split(".")
    return all(_NUMERIC_LABEL.match(label) for label in labels)


def classify_address(addr: IPAddress) -> AddressRange:
    """Classify ``addr`` by numeric range.

    IPv6 addresses that embed an IPv4 address are reported by embedding
    kind; callers unwrap them with embedded_ipv4() and classify the result.
    """
    ranges = IPV4_RANGES if addr.version == 4 else IPV6_RANGES
    for network, kind in ranges:
        if addr in network:
            return kind
    return AddressRange.PUBLIC


# IPv6 ranges whose low 32 bits carry an IPv4 address
EMBEDDED_IPV4_RANGES = (
    AddressRange.IPV4_MAPPED,
    AddressRange.IPV4_COMPATIBLE,
    AddressRange.NAT64,
)


def embedded_ipv4(addr: IPAddress) -> ipaddress.IPv4Address | None:
    """Return the IPv4 address embedded in a mapped, compatible or NAT64 IPv6 address."""
    if addr.version != 6 or classify_address(addr) not in EMBEDDED_IPV4_RANGES:
        return None
    return ipaddress.IPv4Address(int(addr) & 0xFFFFFFFF)

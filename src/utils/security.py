"""Shared security utilities: SSRF validation.

The guard works on the URL text only. It never resolves DNS, so a public
hostname that later resolves to an internal address (DNS rebinding) is not
caught here.
"""

import unicodedata
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote, urlsplit

from src.exceptions import UnsafeUrlError
from src.utils.addresses import (
    AddressRange,
    classify_address,
    embedded_ipv4,
    looks_like_ip,
    parse_strict_ip,
)

ALLOWED_SCHEMES = ("http", "https")

LOCAL_HOSTNAMES = {"localhost"}
LOCAL_SUFFIXES = (".local", ".localhost")

# Full stops that IDNA processing folds into "."
_IDNA_DOTS = str.maketrans({"。": ".", "．": ".", "｡": "."})

# Characters that cannot appear in a registered host name
_FORBIDDEN_HOST_CHARS = frozenset(" \t\r\n\x00#%/:<>?@[\\]^|")


class UnsafeReason(str, Enum):
    """Why a URL was refused."""

    INVALID_FORMAT = "invalid_format"
    DISALLOWED_SCHEME = "disallowed_scheme"
    LOCALHOST_OR_LOCAL_DOMAIN = "localhost_or_local_domain"
    PRIVATE_NETWORK = "private_network"
    AMBIGUOUS_IP_FORMAT = "ambiguous_ip_format"


REASON_MESSAGES = {
    UnsafeReason.INVALID_FORMAT: "Invalid URL format.",
    UnsafeReason.DISALLOWED_SCHEME: "Invalid protocol. Only http and https allowed.",
    UnsafeReason.LOCALHOST_OR_LOCAL_DOMAIN: "Access to localhost is forbidden.",
    UnsafeReason.PRIVATE_NETWORK: "Access to private IP addresses is forbidden.",
    UnsafeReason.AMBIGUOUS_IP_FORMAT: "Ambiguous IP format blocked.",
}


@dataclass(frozen=True)
class UrlVerdict:
    """Outcome of evaluate(): safe, or unsafe with a reason."""

    safe: bool
    reason: UnsafeReason | None = None
    hostname: str | None = None

    @classmethod
    def ok(cls, hostname: str) -> "UrlVerdict":
        return cls(safe=True, hostname=hostname)

    @classmethod
    def unsafe(cls, reason: UnsafeReason, hostname: str | None = None) -> "UrlVerdict":
        return cls(safe=False, reason=reason, hostname=hostname)

    def __bool__(self) -> bool:
        return self.safe

    @property
    def message(self) -> str | None:
        if self.reason is None:
            return None
        return REASON_MESSAGES[self.reason]


def normalize_hostname(host: str) -> str:
    """Fold a URL host into the form used for classification.

    Percent-decodes, applies NFKC and IDNA dot folding, lowercases, drops a
    single trailing root dot and strips IPv6 brackets.
    """
    host = unquote(host)
    host = unicodedata.normalize("NFKC", host).translate(_IDNA_DOTS).lower()
    if host.endswith("."):
        host = host[:-1]
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host


def evaluate(url: str) -> UrlVerdict:
    """Decide whether the server may fetch ``url``.

    Never raises: malformed input is an INVALID_FORMAT verdict. Any host
    that looks numeric but is not a canonical IP address is refused rather
    than reinterpreted, since HTTP clients and resolvers disagree on how to
    read forms like ``127.1`` or ``0x7f.0.0.1``.
    """
    if not isinstance(url, str):
        return UrlVerdict.unsafe(UnsafeReason.INVALID_FORMAT)

    try:
        parsed = urlsplit(url.strip())
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        return UrlVerdict.unsafe(UnsafeReason.INVALID_FORMAT)

    if not parsed.scheme:
        return UrlVerdict.unsafe(UnsafeReason.INVALID_FORMAT)
    if parsed.scheme not in ALLOWED_SCHEMES:
        return UrlVerdict.unsafe(UnsafeReason.DISALLOWED_SCHEME)

    # Clients disagree on whether "\" ends the authority
    if "\\" in parsed.netloc or not parsed.hostname:
        return UrlVerdict.unsafe(UnsafeReason.INVALID_FORMAT)

    host = normalize_hostname(parsed.hostname)
    if not host:
        return UrlVerdict.unsafe(UnsafeReason.INVALID_FORMAT)

    if host in LOCAL_HOSTNAMES or host.endswith(LOCAL_SUFFIXES):
        return UrlVerdict.unsafe(UnsafeReason.LOCALHOST_OR_LOCAL_DOMAIN, host)

    addr = parse_strict_ip(host)
    if addr is not None:
        embedded = embedded_ipv4(addr)
        kind = classify_address(embedded if embedded is not None else addr)
        if kind is not AddressRange.PUBLIC:
            return UrlVerdict.unsafe(UnsafeReason.PRIVATE_NETWORK, host)
        return UrlVerdict.ok(host)

    if looks_like_ip(host):
        return UrlVerdict.unsafe(UnsafeReason.AMBIGUOUS_IP_FORMAT, host)

    if any(c in _FORBIDDEN_HOST_CHARS for c in host):
        return UrlVerdict.unsafe(UnsafeReason.INVALID_FORMAT, host)

    return UrlVerdict.ok(host)


def validate_url_not_ssrf(url: str) -> str:
    """Return the stripped URL, or raise UnsafeUrlError if evaluate() refuses it."""
    verdict = evaluate(url)
    if not verdict:
        raise UnsafeUrlError(
            url=str(url),
            reason=verdict.reason.value,
            message=f"{verdict.message} ({url})",
        )
    return url.strip()

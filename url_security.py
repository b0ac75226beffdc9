"""
URL security checks applied before any remote image is fetched.

A URL is accepted only when its host is on the static allow-list, its scheme is
https, and every address the host resolves to is publicly routable. The
resolved addresses are returned with the URL so the fetch can be pinned to them.
"""
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Iterable, List, Tuple
from urllib.parse import urlsplit

from errors import (
    DnsResolutionFailed,
    HostNotAllowed,
    InvalidUrl,
    PrivateAddressBlocked,
    SchemeNotAllowed,
)

logger = logging.getLogger(__name__)

REQUIRED_SCHEME = 'https'
DEFAULT_PORTS = {'http': 80, 'https': 443}

_BLOCKED_V4 = [ipaddress.ip_network(net) for net in (
    '0.0.0.0/8',        # "this" network
    '10.0.0.0/8',       # RFC1918
    '100.64.0.0/10',    # carrier-grade NAT
    '127.0.0.0/8',      # loopback
    '169.254.0.0/16',   # link-local
    '172.16.0.0/12',    # RFC1918
    '192.0.0.0/24',     # IETF protocol assignments
    '192.168.0.0/16',   # RFC1918
    '198.18.0.0/15',    # benchmarking
    '224.0.0.0/4',      # multicast
    '240.0.0.0/4',      # reserved + broadcast
)]

_BLOCKED_V6 = [ipaddress.ip_network(net) for net in (
    '::/96',            # unspecified, loopback, IPv4-compatible
    'fc00::/7',         # unique local
    'fe80::/10',        # link-local
    'fec0::/10',        # site-local (deprecated)
    'ff00::/8',         # multicast
    '2001::/32',        # Teredo, embeds an address we cannot trust
)]

_NAT64 = ipaddress.ip_network('64:ff9b::/96')


def is_disallowed_address(ip) -> bool:
    """
    Decide whether an address must never be contacted.

    Args:
        ip: An IPv4/IPv6 address as a string or ipaddress object

    Returns:
        True for private, loopback, link-local and other non-public ranges,
        and for anything that does not parse as an address.
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True

    if addr.version == 6:
        # Addresses that carry an embedded IPv4 are judged by that IPv4
        if addr.ipv4_mapped is not None:
            return is_disallowed_address(addr.ipv4_mapped)
        if addr.sixtofour is not None:
            return is_disallowed_address(addr.sixtofour)
        if addr in _NAT64:
            return is_disallowed_address(ipaddress.IPv4Address(int(addr) & 0xFFFFFFFF))
        return any(addr in net for net in _BLOCKED_V6)

    return any(addr in net for net in _BLOCKED_V4)


def resolve_host(hostname: str, port: int) -> List[str]:
    """Return every A/AAAA answer for ``hostname``, in resolver order, without duplicates."""
    try:
        infos = socket.getaddrinfo(hostname, port, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as e:
        raise DnsResolutionFailed(f"DNS lookup for {hostname} failed: {e}")

    addresses = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        address = sockaddr[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


@dataclass(frozen=True)
class ValidatedURL:
    """A URL that passed validation, together with the addresses it was checked against."""

    url: str
    hostname: str
    port: int
    path: str
    addresses: Tuple[str, ...]
    scheme: str = REQUIRED_SCHEME

    @property
    def host_header(self) -> str:
        if self.port == DEFAULT_PORTS.get(self.scheme):
            return self.hostname
        return f"{self.hostname}:{self.port}"


class UrlValidator:
    """Checks image URLs against the allow-list and the private-network policy."""

    def __init__(self, allowed_hosts: Iterable[str],
                 resolver: Callable[[str, int], List[str]] = resolve_host):
        self.allowed_hosts = frozenset(h.lower() for h in allowed_hosts)
        self.resolver = resolver

    def validate(self, raw_url: str) -> ValidatedURL:
        """
        Validate a caller-supplied image URL.

        The host is checked before the scheme, so a host outside the
        allow-list is always reported as HostNotAllowed. DNS is resolved on
        every call and all answers must be public.

        Args:
            raw_url: URL string taken from the request body

        Returns:
            ValidatedURL carrying the resolved addresses to pin the fetch to

        Raises:
            InvalidUrl, HostNotAllowed, SchemeNotAllowed,
            DnsResolutionFailed, PrivateAddressBlocked
        """
        if not isinstance(raw_url, str) or not raw_url.strip():
            raise InvalidUrl('URL must be a non-empty string')

        url = raw_url.strip()
        if any(ch.isspace() for ch in url):
            raise InvalidUrl(f"URL contains whitespace: {url!r}")

        try:
            parsed = urlsplit(url)
            port = parsed.port
        except ValueError as e:
            raise InvalidUrl(f"Cannot parse URL {url!r}: {e}")

        if parsed.username is not None or parsed.password is not None:
            raise InvalidUrl('URLs with credentials are not accepted')

        hostname = (parsed.hostname or '').rstrip('.')
        if not hostname:
            raise InvalidUrl(f"URL has no hostname: {url!r}")

        if hostname not in self.allowed_hosts:
            raise HostNotAllowed(f"Host {hostname} is not in the allow-list")

        if parsed.scheme.lower() != REQUIRED_SCHEME:
            raise SchemeNotAllowed(f"Scheme {parsed.scheme!r} is not allowed for {hostname}")

        port = port or 443
        addresses = self.resolver(hostname, port)
        if not addresses:
            raise DnsResolutionFailed(f"DNS lookup for {hostname} returned no addresses")

        blocked = [a for a in addresses if is_disallowed_address(a)]
        if blocked:
            raise PrivateAddressBlocked(
                f"Host {hostname} resolves to disallowed address(es): {', '.join(blocked)}"
            )

        path = parsed.path or '/'
        if parsed.query:
            path = f"{path}?{parsed.query}"

        logger.debug("Validated %s -> %s", hostname, addresses)
        return ValidatedURL(
            url=url,
            hostname=hostname,
            port=port,
            path=path,
            addresses=tuple(addresses),
        )

"""Rate limiting for the Fixer backend.

Requests are keyed by client IP. X-Forwarded-For is honoured only when the
direct peer is one of the configured trusted proxies, so clients cannot
spoof their way into someone else's bucket.
"""

import ipaddress
import logging
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from .config import get_settings

logger = logging.getLogger("fixer.rate_limit")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_trusted_networks(cidrs: list[str]) -> list[IPNetwork]:
    """Parse CIDR strings, dropping invalid entries with a warning."""
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            logger.warning("Ignoring invalid trusted proxy CIDR: %s", cidr)
    return networks


@lru_cache
def _trusted_networks() -> tuple[IPNetwork, ...]:
    return tuple(parse_trusted_networks(get_settings().trusted_proxy_cidrs))


def is_trusted_proxy(ip_str: str, networks: tuple[IPNetwork, ...] | None = None) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in (networks if networks is not None else _trusted_networks()))


def get_client_ip(request: Request) -> str:
    """Resolve the client IP, using the leftmost forwarded address behind a trusted proxy."""
    direct_ip = get_remote_address(request)
    if is_trusted_proxy(direct_ip):
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()
            if client_ip:
                return client_ip
    return direct_ip


limiter = Limiter(key_func=get_client_ip)
